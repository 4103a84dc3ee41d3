"""Last-known-location fallback for buses without live contributors."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from busfusion.config import FusionConfig
from busfusion.models._base import utcnow
from busfusion.models.position import FallbackSource, FallbackView, GapSeverity, PositionStatus
from busfusion.state.archive import TripArchive
from busfusion.state.policy import gap_severity
from busfusion.state.positions import PositionStore

_logger = logging.getLogger(__name__)

_MESSAGES = {
    GapSeverity.MINOR: "Showing the last known location; tracking resumes when riders share again.",
    GapSeverity.MODERATE: "Last known location is getting old.",
    GapSeverity.SEVERE: "Last known location is outdated.",
    GapSeverity.UNKNOWN: "No location has been recorded for this bus yet.",
}


class FallbackResolver:
    """Builds a :class:`FallbackView` from the newest thing known about a bus.

    Never invents a position: with nothing recorded the view has no coordinates.
    """

    def __init__(
        self,
        config: FusionConfig,
        *,
        positions: PositionStore,
        archive: TripArchive,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._positions = positions
        self._archive = archive
        self._clock = clock

    def resolve(self, bus_id: str, *, now: datetime | None = None) -> FallbackView:
        now = now or self._clock()

        candidates: list[tuple[datetime, float, float, FallbackSource]] = []
        position = self._positions.get(bus_id)
        if position is not None:
            candidates.append((position.last_updated, position.lat, position.lng, FallbackSource.FUSED_POSITION))
        record = self._archive.latest(bus_id)
        point = record.last_known_point() if record is not None else None
        if point is not None:
            lat, lng, seen_at = point
            candidates.append((seen_at, lat, lng, FallbackSource.TRIP_RECORD))

        if not candidates:
            return FallbackView(bus_id=bus_id, message=_MESSAGES[GapSeverity.UNKNOWN])

        # Newest wins; a live position beats an archived point from the same instant.
        seen_at, lat, lng, source = max(candidates, key=lambda c: (c[0], c[3] == FallbackSource.FUSED_POSITION))
        age = max(0.0, (now - seen_at).total_seconds())
        severity = gap_severity(age, minor_max=self._config.gap_minor_max, moderate_max=self._config.gap_moderate_max)
        _logger.debug("Fallback for bus=%s source=%s age=%.0fs severity=%s", bus_id, source, age, severity)
        return FallbackView(
            bus_id=bus_id,
            lat=lat,
            lng=lng,
            status=PositionStatus.STALE,
            age_seconds=age,
            gap_severity=severity,
            last_seen_at=seen_at,
            source=source,
            message=_MESSAGES[severity],
        )
