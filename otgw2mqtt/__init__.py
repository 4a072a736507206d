"""OpenTherm Gateway to MQTT bridge."""

__version__ = "1.0.0"
