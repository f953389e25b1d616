"""In-memory latest-state cache, one snapshot per device."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TelemetrySnapshot:
    device_id: str
    data: Mapping[str, Any]
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        # detach from the caller's dict so the snapshot can't change after publication
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    @property
    def iso_timestamp(self) -> str:
        return self.timestamp.isoformat()

    def as_dict(self) -> dict[str, Any]:
        """Payload fields plus ``device_id`` and the ISO-8601 ingestion timestamp."""
        out = dict(self.data)
        out["device_id"] = self.device_id
        out["timestamp"] = self.iso_timestamp
        return out


class StateCache:
    """Latest snapshot per device id.

    The ingestor is the only writer. ``put`` swaps the whole entry, so a
    reader sees either the previous snapshot or the new one.
    """

    def __init__(self) -> None:
        self._snapshots: dict[str, TelemetrySnapshot] = {}

    def put(self, snapshot: TelemetrySnapshot) -> None:
        self._snapshots[snapshot.device_id] = snapshot

    def get(self, device_id: str) -> TelemetrySnapshot | None:
        return self._snapshots.get(device_id)

    def latest(self, device_id: str) -> dict[str, Any]:
        snap = self._snapshots.get(device_id)
        if snap is None:
            return {"device_id": device_id, "timestamp": None}
        return snap.as_dict()

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)
