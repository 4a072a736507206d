from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

from otgw2mqtt.bridge.protocol import (
    DATA_POINTS,
    DATA_POINTS_BY_NAME,
    FrameCodec,
    Target,
)

from .config import MockGatewayConfig

_COMMAND_RE = re.compile(r"^([A-Z]{2})=(.*)$")

# Commands that change a data point, as the real gateway does
_SETPOINT_COMMANDS = {
    "TT": "room_setpoint",
    "TC": "room_setpoint",
    "SW": "dhw_setpoint",
    "SH": "max_ch_water_setpoint",
}

READ_ACK = "4"


class MockGateway:
    """In-memory OpenTherm Gateway producing status lines and answering commands."""

    def __init__(self, config: Optional[MockGatewayConfig] = None) -> None:
        self._config = config or MockGatewayConfig()
        self._codec = FrameCodec()
        self._values: Dict[str, Any] = {}
        self.commands: List[Tuple[str, str]] = []
        self.summary_mode = False
        for name, value in self._config.values.items():
            self.set_value(name, value)

    def set_value(self, name: str, value: Any) -> None:
        point = DATA_POINTS_BY_NAME.get(name)
        if point is None or point.is_derived:
            raise ValueError(f"Cannot set data point: {name}")
        # Validates range and format
        FrameCodec.encode_payload(point.encoding, value)
        self._values[name] = value

    def get_value(self, name: str) -> Any:
        return self._values.get(name)

    def status_lines(self) -> List[str]:
        """One boiler read-ack line per set data point, in declaration order."""
        lines = []
        for point in DATA_POINTS:
            if point.name not in self._values:
                continue
            lines.append(
                self._codec.build_status_line(
                    Target.BOILER, READ_ACK, point.data_id, self._values[point.name]
                )
            )
        return lines

    def handle_command(self, line: str) -> str:
        """Apply a ``CODE=value`` command and return the gateway's response line."""
        match = _COMMAND_RE.match(line.strip())
        if not match:
            return "SE"
        code, value = match.groups()
        self.commands.append((code, value))

        if code == "PS":
            self.summary_mode = value == "1"
        elif code in _SETPOINT_COMMANDS:
            try:
                self.set_value(_SETPOINT_COMMANDS[code], float(value))
            except ValueError:
                return "BV"
        return f"{code}: {value}"

    def snapshot(self) -> Dict[str, Any]:
        return {
            "values": dict(self._values),
            "summary_mode": self.summary_mode,
            "commands": len(self.commands),
        }
