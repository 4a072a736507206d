from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from otgw2mqtt.bridge.config import BridgeConfig, load_config, log_level_from_env
from otgw2mqtt.bridge.exceptions import BridgeError, ConfigurationError


def test_defaults() -> None:
    cfg = load_config(environ={})
    assert cfg == BridgeConfig()
    assert cfg.tcp_port == 2323
    assert cfg.mqtt_port == 1883
    assert cfg.listen_port == 2323
    assert cfg.reconnect_delay == 15.0
    assert cfg.missing() == ["mqtt_broker", "tcp_host"]


def test_appsettings_layout(tmp_path: Path) -> None:
    path = tmp_path / "appsettings.json"
    path.write_text(
        json.dumps(
            {
                "Serilog": {"MinimumLevel": "Information"},
                "Config": {
                    "TcpHost": "otgw.local",
                    "TcpPort": 2324,
                    "MqttBroker": "broker",
                    "MqttUsername": "user",
                    "MqttPassword": "secret",
                    "MqttPrefix": "home/",
                },
            }
        ),
        encoding="utf-8",
    )

    cfg = load_config(path, environ={})
    assert cfg.tcp_host == "otgw.local"
    assert cfg.tcp_port == 2324
    assert cfg.mqtt_broker == "broker"
    assert cfg.mqtt_username == "user"
    assert cfg.mqtt_password == "secret"
    assert cfg.mqtt_prefix == "home/"
    assert cfg.missing() == []


def test_yaml_file(tmp_path: Path) -> None:
    path = tmp_path / "bridge.yaml"
    path.write_text(
        "tcp_host: otgw.local\nmqtt_broker: broker\nlisten_port: 0\nreconnect_delay: 5\n",
        encoding="utf-8",
    )

    cfg = load_config(path, environ={})
    assert cfg.tcp_host == "otgw.local"
    # Port 0 disables the passthrough listener
    assert cfg.listen_port is None
    assert cfg.reconnect_delay == 5.0


def test_environment_overrides_file(tmp_path: Path) -> None:
    path = tmp_path / "bridge.json"
    path.write_text(json.dumps({"tcp_host": "file-host", "tcp_port": 1000}), encoding="utf-8")

    cfg = load_config(path, environ={"OTGW_TCP_HOST": "env-host", "OTGW_MQTT_PORT": "8883"})
    assert cfg.tcp_host == "env-host"
    assert cfg.tcp_port == 1000
    assert cfg.mqtt_port == 8883


def test_merged_applies_only_given_overrides() -> None:
    cfg = BridgeConfig(tcp_host="a", mqtt_broker="b")
    merged = cfg.merged(tcp_host="c", tcp_port=None, listen_port="0")
    assert merged.tcp_host == "c"
    assert merged.tcp_port == 2323
    assert merged.mqtt_broker == "b"
    assert merged.listen_port is None
    # The original is untouched
    assert cfg.tcp_host == "a"


@pytest.mark.parametrize(
    "environ",
    [
        {"OTGW_TCP_PORT": "not-a-port"},
        {"OTGW_RECONNECT_DELAY": "-1"},
    ],
)
def test_invalid_values(environ) -> None:
    with pytest.raises(ConfigurationError):
        load_config(environ=environ)


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "nope.json", environ={})


def test_unparsable_file(tmp_path: Path) -> None:
    path = tmp_path / "bad.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError) as excinfo:
        load_config(path, environ={})
    assert isinstance(excinfo.value, BridgeError)


def test_non_mapping_file(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(path, environ={})


@pytest.mark.parametrize(
    "value, expected",
    [
        ("Debug", logging.DEBUG),
        ("Verbose", logging.DEBUG),
        ("Information", logging.INFO),
        ("warning", logging.WARNING),
        ("Fatal", logging.CRITICAL),
        ("bogus", logging.INFO),
        ("", logging.INFO),
    ],
)
def test_log_level_from_env(value, expected) -> None:
    assert log_level_from_env({"LOG_LEVEL": value}) == expected


def test_log_level_default() -> None:
    assert log_level_from_env({}, default=logging.WARNING) == logging.WARNING
