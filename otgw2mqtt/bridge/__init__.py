"""OpenTherm Gateway bridge - exposes gateway data points on MQTT.

The bridge keeps a resilient TCP link to the gateway, decodes its status
lines, republishes changed values on MQTT, routes MQTT commands back to the
gateway, and offers a raw passthrough listener for other tools.
"""

from .bridge import GatewayBridge
from .config import BridgeConfig, load_config
from .downstream import DeviceLink, LinkEvent, LinkState
from .exceptions import BridgeError, ConfigurationError
from .mqtt import MqttBus
from .protocol import (
    DATA_POINTS,
    Command,
    CommandResponse,
    DataPoint,
    Encoding,
    FrameCodec,
    MessageKind,
    StatusFrame,
    Target,
    render_value,
)
from .store import DataChanged, ValueStore
from .upstream import ClientSession, PassthroughServer

__all__ = [
    "GatewayBridge",
    "BridgeConfig",
    "load_config",
    "DeviceLink",
    "LinkEvent",
    "LinkState",
    "BridgeError",
    "ConfigurationError",
    "MqttBus",
    "DATA_POINTS",
    "Command",
    "CommandResponse",
    "DataPoint",
    "Encoding",
    "FrameCodec",
    "MessageKind",
    "StatusFrame",
    "Target",
    "render_value",
    "DataChanged",
    "ValueStore",
    "ClientSession",
    "PassthroughServer",
]
