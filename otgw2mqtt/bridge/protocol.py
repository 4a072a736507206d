"""OpenTherm Gateway protocol utilities for line decoding and encoding.

Handles the two line shapes emitted by the gateway: 9-character status
frames (``B40191580``) carrying one OpenTherm data point, and command
responses (``PS: 1``) acknowledging a command written to the gateway.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

logger = logging.getLogger("otgw2mqtt.bridge.protocol")

LINE_TERMINATOR = "\r\n"
STATUS_FRAME_LENGTH = 9

_HEX_RE = re.compile(r"^[0-9A-Fa-f]+$")


class Encoding(str, Enum):
    """How the 16-bit payload of a data point is interpreted."""
    FLAG8 = "flag8"   # two 8-bit bitfields
    F8_8 = "f8.8"     # signed fixed point, 8 fractional bits
    U16 = "u16"       # unsigned 16-bit integer


class Target(str, Enum):
    """Originator of a status frame, as marked by the gateway."""
    BOILER = "B"
    THERMOSTAT = "T"
    ALTERNATIVE = "A"
    ERROR = "E"


class MessageKind(Enum):
    """OpenTherm message type, the low 3 bits of the kind marker nibble."""
    READ_DATA = 0
    WRITE_DATA = 1
    INVALID_DATA = 2
    RESERVED = 3
    READ_ACK = 4
    WRITE_ACK = 5
    DATA_INVALID = 6
    UNKNOWN_DATA_ID = 7


# The high bit of the marker nibble is the parity bit
ACCEPTED_KIND_MARKERS = frozenset("149C")
DECODED_TARGETS = (Target.BOILER, Target.THERMOSTAT, Target.ALTERNATIVE)


@dataclass(frozen=True)
class DataPoint:
    """A named OpenTherm data point.

    Derived points have no encoding of their own; their value is one
    character of the rendered flag8 string of ``source_id``.
    """
    data_id: int
    name: str
    encoding: Optional[Encoding] = None
    source_id: Optional[int] = None
    offset: Optional[int] = None

    @property
    def is_derived(self) -> bool:
        return self.source_id is not None


def _point(data_id: int, name: str, encoding: Encoding) -> DataPoint:
    return DataPoint(data_id=data_id, name=name, encoding=encoding)


def _flag(data_id: int, name: str, offset: int) -> DataPoint:
    return DataPoint(data_id=data_id, name=name, source_id=0, offset=offset)


DATA_POINTS: Tuple[DataPoint, ...] = (
    _point(0, "flame_status", Encoding.FLAG8),
    _point(1, "control_setpoint", Encoding.F8_8),
    _point(9, "remote_override_setpoint", Encoding.F8_8),
    _point(14, "max_relative_modulation_level", Encoding.F8_8),
    _point(16, "room_setpoint", Encoding.F8_8),
    _point(17, "relative_modulation_level", Encoding.F8_8),
    _point(18, "ch_water_pressure", Encoding.F8_8),
    _point(24, "room_temperature", Encoding.F8_8),
    _point(25, "boiler_water_temperature", Encoding.F8_8),
    _point(26, "dhw_temperature", Encoding.F8_8),
    _point(27, "outside_temperature", Encoding.F8_8),
    _point(28, "return_water_temperature", Encoding.F8_8),
    _point(56, "dhw_setpoint", Encoding.F8_8),
    _point(57, "max_ch_water_setpoint", Encoding.F8_8),
    _point(116, "burner_starts", Encoding.U16),
    _point(117, "ch_pump_starts", Encoding.U16),
    _point(118, "dhw_pump_starts", Encoding.U16),
    _point(119, "dhw_burner_starts", Encoding.U16),
    _point(120, "burner_operation_hours", Encoding.U16),
    _point(121, "ch_pump_operation_hours", Encoding.U16),
    _point(122, "dhw_pump_valve_operation_hours", Encoding.U16),
    _point(123, "dhw_burner_operation_hours", Encoding.U16),
    # Offsets index "HHHHHHHH/LLLLLLLL"; slave status is the low byte
    _flag(1001, "cooling_mode", 12),
    _flag(1002, "burner_on", 13),
    _flag(1003, "central_heating_mode", 15),
    _flag(1004, "domestic_hot_water_mode", 14),
    _flag(1005, "domestic_hot_water_enabled", 6),
    _flag(1006, "fault_indication", 16),
)

DATA_POINTS_BY_ID: Dict[int, DataPoint] = {p.data_id: p for p in DATA_POINTS}
DATA_POINTS_BY_NAME: Dict[str, DataPoint] = {p.name: p for p in DATA_POINTS}


@dataclass(frozen=True)
class Command:
    """A command written to the gateway as ``CODE=value``."""
    code: str
    value: str

    def to_line(self) -> str:
        return f"{self.code}={self.value}"


@dataclass(frozen=True)
class StatusFrame:
    """A decoded status line.

    ``values`` maps data ids to decoded values in declaration order; it holds
    the primary point and, for the flame status, the derived flag points.
    """
    target: Target
    kind: MessageKind
    data_id: int
    payload: str
    values: Dict[int, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return DATA_POINTS_BY_ID[self.data_id].name


@dataclass(frozen=True)
class CommandResponse:
    """A decoded command acknowledgement (``XX: result``)."""
    code: str
    result: str
    follow_up: Optional[Command] = None

    @property
    def reportable(self) -> bool:
        # Status summary responses only exist to switch the gateway back
        return self.code != "PS"


DecodedEvent = Union[StatusFrame, CommandResponse]


def render_value(value: Any) -> str:
    """Render a decoded value as bus payload text."""
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def _parse_hex(text: str) -> int:
    if not _HEX_RE.match(text):
        raise ValueError(f"Invalid hex digits: {text!r}")
    return int(text, 16)


class FrameCodec:
    """Decode gateway lines into typed events and build lines back."""

    def __init__(self, data_points: Tuple[DataPoint, ...] = DATA_POINTS):
        self._points = {p.data_id: p for p in data_points}
        self._derived = tuple(p for p in data_points if p.is_derived)

    def decode(self, line: str) -> Optional[DecodedEvent]:
        """Decode one line; returns None for lines that carry nothing of interest.

        Never raises: malformed lines are logged and dropped.
        """
        data = line.replace("\r", "")
        try:
            if ":" in data:
                return self._decode_command_response(data)
            return self._decode_status(data)
        except Exception:
            logger.exception("An error occurred parsing message '%s'", data)
            return None

    # --- Decoding ---

    def _decode_command_response(self, data: str) -> CommandResponse:
        if len(data) < 4:
            raise ValueError(f"Command response too short: {data!r}")
        code = data[:2]
        result = data[4:]
        follow_up = None
        if code == "PS" and result == "1":
            # Summary mode was switched on, return to continuous status
            follow_up = Command("PS", "0")
        return CommandResponse(code=code, result=result, follow_up=follow_up)

    def _decode_status(self, data: str) -> Optional[StatusFrame]:
        if len(data) != STATUS_FRAME_LENGTH:
            logger.debug("Ignoring line of unexpected shape: '%s'", data)
            return None

        try:
            target = Target(data[0])
        except ValueError:
            return None
        if target not in DECODED_TARGETS:
            return None

        marker = data[1]
        if marker not in ACCEPTED_KIND_MARKERS:
            return None
        kind = MessageKind(_parse_hex(marker) & 0x7)

        data_id = _parse_hex(data[3:5])
        point = self._points.get(data_id)
        if point is None or point.is_derived:
            return None

        payload = data[-4:]
        values: Dict[int, Any] = {}

        if point.encoding == Encoding.FLAG8:
            if target != Target.ALTERNATIVE:
                flags = self.decode_flag8(payload)
                values[data_id] = flags
                for derived in self._derived:
                    if derived.source_id == data_id:
                        values[derived.data_id] = flags[derived.offset]
        elif point.encoding == Encoding.F8_8:
            values[data_id] = self.decode_f8_8(payload)
        elif point.encoding == Encoding.U16:
            values[data_id] = self.decode_u16(payload)

        return StatusFrame(
            target=target,
            kind=kind,
            data_id=data_id,
            payload=payload,
            values=values,
        )

    @staticmethod
    def decode_flag8(payload: str) -> str:
        """Render two hex bytes as ``HHHHHHHH/LLLLLLLL``."""
        high = _parse_hex(payload[0:2])
        low = _parse_hex(payload[2:4])
        return f"{high:08b}/{low:08b}"

    @staticmethod
    def decode_f8_8(payload: str) -> float:
        raw = _parse_hex(payload)
        if raw & 0x8000:
            raw -= 0x10000
        return round(raw / 256, 2)

    @staticmethod
    def decode_u16(payload: str) -> int:
        return _parse_hex(payload) & 0xFFFF

    # --- Encoding ---

    @staticmethod
    def encode_payload(encoding: Encoding, value: Any) -> str:
        """Encode a value as the 4 hex digit payload of a status frame."""
        if encoding == Encoding.FLAG8:
            high, low = str(value).split("/")
            if len(high) != 8 or len(low) != 8:
                raise ValueError(f"Invalid flag8 value: {value}")
            return f"{int(high, 2):02X}{int(low, 2):02X}"
        if encoding == Encoding.F8_8:
            raw = int(round(float(value) * 256))
            if not -0x8000 <= raw <= 0x7FFF:
                raise ValueError(f"Value out of f8.8 range: {value}")
            return f"{raw & 0xFFFF:04X}"
        if encoding == Encoding.U16:
            raw = int(value)
            if not 0 <= raw <= 0xFFFF:
                raise ValueError(f"Value out of u16 range: {value}")
            return f"{raw:04X}"
        raise ValueError(f"Unsupported encoding: {encoding}")

    def build_status_line(
        self,
        target: Target,
        marker: str,
        data_id: int,
        value: Any,
    ) -> str:
        """Build a 9-character status line for a primary data point."""
        point = self._points[data_id]
        if point.is_derived or point.encoding is None:
            raise ValueError(f"Data point {point.name} cannot be sent on the wire")
        payload = self.encode_payload(point.encoding, value)
        return f"{target.value}{marker}0{data_id:02X}{payload}"
