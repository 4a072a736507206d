from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .exceptions import ConfigurationError

ENV_PREFIX = "OTGW_"

# Original appsettings.json keys (under the "Config" section)
_LEGACY_KEYS = {
    "TcpHost": "tcp_host",
    "TcpPort": "tcp_port",
    "MqttBroker": "mqtt_broker",
    "MqttPort": "mqtt_port",
    "MqttUsername": "mqtt_username",
    "MqttPassword": "mqtt_password",
    "MqttPrefix": "mqtt_prefix",
    "ListenHost": "listen_host",
    "ListenPort": "listen_port",
    "ReconnectDelay": "reconnect_delay",
}

# Serilog level names are accepted alongside the logging module's
_LOG_LEVELS = {
    "verbose": logging.DEBUG,
    "debug": logging.DEBUG,
    "information": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}


@dataclass(slots=True)
class BridgeConfig:
    """Settings for the gateway link, the MQTT bus and the passthrough listener."""

    tcp_host: Optional[str] = None
    tcp_port: int = 2323
    mqtt_broker: Optional[str] = None
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_prefix: str = ""
    listen_host: str = "0.0.0.0"
    listen_port: Optional[int] = 2323
    reconnect_delay: float = 15.0

    def missing(self) -> List[str]:
        """Names of required settings that are not set."""
        out = []
        if not self.mqtt_broker:
            out.append("mqtt_broker")
        if not self.tcp_host:
            out.append("tcp_host")
        return out

    def merged(self, **overrides: Any) -> "BridgeConfig":
        """Return a copy with every non-None override applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return _coerce(replace(self, **values))


def _coerce(cfg: BridgeConfig) -> BridgeConfig:
    try:
        cfg.tcp_port = int(cfg.tcp_port)
        cfg.mqtt_port = int(cfg.mqtt_port)
        cfg.reconnect_delay = float(cfg.reconnect_delay)
        if cfg.listen_port in ("", None):
            cfg.listen_port = None
        else:
            cfg.listen_port = int(cfg.listen_port) or None
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}") from e
    cfg.mqtt_prefix = cfg.mqtt_prefix or ""
    if cfg.reconnect_delay < 0:
        raise ConfigurationError("reconnect_delay must not be negative")
    return cfg


def _read_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            raw = yaml.safe_load(text) or {}
        else:
            raw = json.loads(text or "{}")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Unable to parse {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration must be an object/dict")

    # appsettings.json layout: {"Config": {"TcpHost": ...}}
    section = raw.get("Config", raw)
    if not isinstance(section, dict):
        raise ConfigurationError("'Config' section must be an object/dict")

    known = {f.name for f in fields(BridgeConfig)}
    values: Dict[str, Any] = {}
    for key, value in section.items():
        name = _LEGACY_KEYS.get(key, key)
        if name in known:
            values[name] = value
    return values


def _read_environ(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for f in fields(BridgeConfig):
        key = ENV_PREFIX + f.name.upper()
        if key in environ:
            values[f.name] = environ[key]
    return values


def load_config(
    path: Optional[str | Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BridgeConfig:
    """Build the configuration from an optional JSON/YAML file and OTGW_* variables.

    Environment variables take precedence over the file.
    """
    if environ is None:
        environ = os.environ

    values: Dict[str, Any] = {}
    if path is not None:
        values.update(_read_file(Path(path)))
    values.update(_read_environ(environ))

    return _coerce(BridgeConfig(**values))


def log_level_from_env(environ: Optional[Mapping[str, str]] = None, default: int = logging.INFO) -> int:
    """Parse LOG_LEVEL; unknown or missing values fall back to ``default``."""
    if environ is None:
        environ = os.environ
    name = (environ.get("LOG_LEVEL") or "").strip().lower()
    return _LOG_LEVELS.get(name, default)
