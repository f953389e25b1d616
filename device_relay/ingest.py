import json
import logging

from .registry import DeviceRegistry
from .state import StateCache, TelemetrySnapshot

log = logging.getLogger("ingest")

def _reject_constant(name: str):
    # NaN and Infinity are not JSON; browsers cannot parse them on the push channel
    raise ValueError(f"non-finite number {name}")

class TelemetryIngestor:
    """Turns inbound telemetry messages into snapshots and fans them out.

    Nothing raised here reaches the transport: unknown devices and
    undecodable payloads are counted, logged and dropped.
    """

    def __init__(self, registry: DeviceRegistry, cache: StateCache, hub) -> None:
        self._registry = registry
        self._cache = cache
        self._hub = hub
        self.stats = {"rx_total": 0, "ingested": 0, "dropped_unknown": 0, "dropped_malformed": 0}

    def topics(self) -> list[str]:
        return self._registry.telemetry_topics()

    async def handle_message(self, topic: str, payload: bytes | str) -> TelemetrySnapshot | None:
        self.stats["rx_total"] += 1

        match = self._registry.parse_topic(topic)
        if match is None:
            self.stats["dropped_unknown"] += 1
            return None
        device_id, kind = match
        if kind not in self._registry.type_of(device_id).telemetry:
            # command echo on a topic we publish to
            return None

        try:
            raw = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
            data = json.loads(raw, parse_constant=_reject_constant)
        except (UnicodeDecodeError, ValueError) as e:
            self.stats["dropped_malformed"] += 1
            log.warning("[INGEST] undecodable payload on %s: %s", topic, e)
            return None
        if not isinstance(data, dict):
            self.stats["dropped_malformed"] += 1
            log.warning("[INGEST] payload on %s is not an object", topic)
            return None

        snapshot = TelemetrySnapshot(device_id=device_id, data=data)
        self._cache.put(snapshot)
        self.stats["ingested"] += 1

        try:
            await self._hub.notify(device_id, snapshot)
        except Exception:
            log.exception("[INGEST] fan-out for %s failed", device_id)
        return snapshot
