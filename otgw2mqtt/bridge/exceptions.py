"""Exceptions raised by the gateway bridge."""
from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigurationError(BridgeError):
    """Raised when the bridge configuration cannot be loaded or is invalid."""
