from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml

from otgw2mqtt.bridge.protocol import DATA_POINTS_BY_NAME


@dataclass(slots=True)
class MockGatewayConfig:
    """Scenario for the mock OpenTherm Gateway."""

    host: str = "127.0.0.1"
    port: int = 2323
    interval: float = 1.0
    values: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        for name in self.values:
            point = DATA_POINTS_BY_NAME.get(name)
            if point is None:
                raise ValueError(f"Unknown data point: {name}")
            if point.is_derived:
                raise ValueError(f"Derived data point cannot be set directly: {name}")
        if self.interval <= 0:
            raise ValueError("interval must be positive")


def load_config(path: str | Path) -> MockGatewayConfig:
    """Parse a YAML/JSON scenario file into a structured config object."""

    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(file_path)

    text = file_path.read_text(encoding="utf-8")
    if file_path.suffix.lower() in {".yaml", ".yml"}:
        raw = yaml.safe_load(text)
    else:
        raw = json.loads(text)

    if not isinstance(raw, dict):
        raise ValueError("Configuration must be an object/dict")

    config = MockGatewayConfig(
        host=str(raw.get("host", "127.0.0.1")),
        port=int(raw.get("port", 2323)),
        interval=float(raw.get("interval", 1.0)),
        values=dict(raw.get("values", {}) or {}),
    )
    config.validate()
    return config
