"""In-memory trip history."""

from __future__ import annotations

import logging

from busfusion.models.trip import TripRecord

_logger = logging.getLogger(__name__)


class TripArchive:
    """Completed trips per bus, newest last.

    Records are immutable and written once; the archive only appends.
    """

    def __init__(self, *, max_per_bus: int = 50) -> None:
        self._max_per_bus = max_per_bus
        self._records: dict[str, list[TripRecord]] = {}

    def __len__(self) -> int:
        return sum(len(records) for records in self._records.values())

    def add(self, record: TripRecord) -> None:
        records = self._records.setdefault(record.bus_id, [])
        records.append(record)
        if len(records) > self._max_per_bus:
            del records[: len(records) - self._max_per_bus]
        _logger.debug("Archived trip record=%s bus=%s", record.record_id, record.bus_id)

    def latest(self, bus_id: str) -> TripRecord | None:
        records = self._records.get(bus_id)
        return records[-1] if records else None

    def history(self, bus_id: str) -> list[TripRecord]:
        return list(self._records.get(bus_id, ()))
