"""Value store with change detection for decoded data points."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .protocol import DATA_POINTS, DataPoint

logger = logging.getLogger("otgw2mqtt.bridge.store")


@dataclass(slots=True)
class DataPointState:
    """Current and last published value of one data point."""
    point: DataPoint
    current: Any = None
    previous: Any = None


@dataclass(frozen=True, slots=True)
class DataChanged:
    """Emitted when a data point takes a value different from the last one emitted."""
    data_id: int
    name: str
    value: Any


class ValueStore:
    """Holds the latest value of every known data point.

    ``previous`` always equals the value of the last change event emitted for
    a point, so re-applying an unchanged value emits nothing.
    """

    def __init__(self, data_points: Tuple[DataPoint, ...] = DATA_POINTS):
        # Insertion order is declaration order; change scans rely on it
        self._entries: Dict[int, DataPointState] = {
            point.data_id: DataPointState(point) for point in data_points
        }

    def apply(self, data_id: int, value: Any) -> Optional[DataChanged]:
        """Set the value of one data point and return its change event, if any."""
        entry = self._entries[data_id]
        entry.current = value
        return self._check(entry)

    def apply_all(self, values: Mapping[int, Any]) -> List[DataChanged]:
        """Set several values at once and return the change events in declaration order."""
        for data_id, value in values.items():
            if data_id not in self._entries:
                logger.debug("Ignoring value for unknown data point %d", data_id)
                continue
            self._entries[data_id].current = value

        changes = []
        for entry in self._entries.values():
            change = self._check(entry)
            if change is not None:
                changes.append(change)
        return changes

    def _check(self, entry: DataPointState) -> Optional[DataChanged]:
        if entry.current is None or entry.current == entry.previous:
            return None
        entry.previous = entry.current
        return DataChanged(
            data_id=entry.point.data_id,
            name=entry.point.name,
            value=entry.current,
        )

    def get(self, data_id: int) -> Any:
        return self._entries[data_id].current

    def state(self, data_id: int) -> DataPointState:
        return self._entries[data_id]

    def snapshot(self) -> Dict[str, Any]:
        """Current values keyed by data point name, unset points included."""
        return {entry.point.name: entry.current for entry in self._entries.values()}

    def reset(self) -> None:
        for entry in self._entries.values():
            entry.current = None
            entry.previous = None

    def __contains__(self, data_id: int) -> bool:
        return data_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
