"""Short-term per-bus ping buffer.

Holds validated pings between fusion cycles and until a trip is archived.
Each bus keeps a bounded deque (oldest evicted first); the sweep purges
anything past the retention window.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta

from busfusion.config import FusionConfig
from busfusion.models.ping import RawPing, ValidatedPing, ValidationFlag

_logger = logging.getLogger(__name__)


class PingBuffer:
    """Validated pings grouped by bus, plus the lookups validation and fusion need."""

    def __init__(self, config: FusionConfig) -> None:
        self._maxlen = config.max_pings_per_bus
        self._by_bus: dict[str, deque[ValidatedPing]] = {}
        self._prior: dict[str, RawPing] = {}
        self._last_valid_at: dict[str, datetime] = {}
        self._pending: set[str] = set()
        self._scored: set[str] = set()

    def __len__(self) -> int:
        return sum(len(pings) for pings in self._by_bus.values())

    def add(self, validated: ValidatedPing) -> None:
        bus_id = validated.bus_id
        pings = self._by_bus.get(bus_id)
        if pings is None:
            pings = deque(maxlen=self._maxlen)
            self._by_bus[bus_id] = pings
        pings.append(validated)

        if not validated.is_valid:
            return
        ping = validated.ping
        self._prior[ping.device_id] = ping
        previous = self._last_valid_at.get(bus_id)
        if previous is None or ping.server_timestamp > previous:
            self._last_valid_at[bus_id] = ping.server_timestamp
        self._pending.add(bus_id)

    def prior_ping(self, device_id: str) -> RawPing | None:
        """Last *valid* ping of a device, the reference for the speed check."""
        return self._prior.get(device_id)

    def drain_pending(self) -> set[str]:
        """Buses that received valid pings since the previous call."""
        pending, self._pending = self._pending, set()
        return pending

    def window(self, bus_id: str, *, now: datetime, max_age: float) -> list[ValidatedPing]:
        """Valid pings of *bus_id* received within the last *max_age* seconds."""
        cutoff = now - timedelta(seconds=max_age)
        return [v for v in self._by_bus.get(bus_id, ()) if v.is_valid and v.ping.server_timestamp >= cutoff]

    def pings(self, bus_id: str) -> tuple[ValidatedPing, ...]:
        return tuple(self._by_bus.get(bus_id, ()))

    def last_valid_ping_at(self, bus_id: str) -> datetime | None:
        return self._last_valid_at.get(bus_id)

    def bus_ids(self) -> set[str]:
        return set(self._by_bus) | set(self._last_valid_at)

    def is_scored(self, ping_id: str) -> bool:
        return ping_id in self._scored

    def mark_scored(self, ping_id: str) -> None:
        self._scored.add(ping_id)

    def add_flag(self, bus_id: str, ping_id: str, flag: ValidationFlag) -> bool:
        """Attach a flag raised after buffering (fusion outliers); False if the ping is gone."""
        pings = self._by_bus.get(bus_id)
        if not pings:
            return False
        # Flagged pings are recent, so search from the newest end.
        for index in range(len(pings) - 1, -1, -1):
            validated = pings[index]
            if validated.ping_id != ping_id:
                continue
            if flag not in validated.result.flags:
                result = validated.result.model_copy(update={"flags": validated.result.flags | {flag}})
                pings[index] = validated.model_copy(update={"result": result})
            return True
        return False


    def drain(self, bus_id: str) -> tuple[ValidatedPing, ...]:
        """Remove and return everything buffered for a bus (trip archival)."""
        pings = tuple(self._by_bus.pop(bus_id, ()))
        self._last_valid_at.pop(bus_id, None)
        self._pending.discard(bus_id)
        self._scored.difference_update(v.ping_id for v in pings)
        return pings

    def purge(self, now: datetime, retention: float) -> int:
        """Drop pings received before ``now - retention``; returns the number removed."""
        cutoff = now - timedelta(seconds=retention)
        removed = 0
        for bus_id, pings in list(self._by_bus.items()):
            while pings and pings[0].ping.server_timestamp < cutoff:
                pings.popleft()
                removed += 1
            if not pings:
                del self._by_bus[bus_id]

        for device_id, ping in list(self._prior.items()):
            if ping.server_timestamp < cutoff:
                del self._prior[device_id]
        for bus_id, seen_at in list(self._last_valid_at.items()):
            if seen_at < cutoff:
                del self._last_valid_at[bus_id]

        live = {v.ping_id for pings in self._by_bus.values() for v in pings}
        self._scored.intersection_update(live)
        if removed:
            _logger.debug("Purged %d buffered ping(s) older than %s", removed, cutoff.isoformat())
        return removed
