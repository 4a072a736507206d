"""Mock OpenTherm Gateway for exercising the bridge without hardware."""

from .config import MockGatewayConfig, load_config
from .core import MockGateway
from .server import MockGatewayServer

__all__ = [
    "MockGateway",
    "MockGatewayConfig",
    "MockGatewayServer",
    "load_config",
]
