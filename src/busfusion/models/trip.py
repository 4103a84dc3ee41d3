"""Trip completion and archival models."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import Field

from busfusion.models._base import FusionBaseModel, UtcTimestamp
from busfusion.models.ping import ValidatedPing
from busfusion.models.position import FusedPosition


class CompletionReason(StrEnum):
    REACHED_TERMINUS = "reached_terminus"
    SCHEDULE_ELAPSED = "schedule_elapsed"
    NO_RECENT_ACTIVITY = "no_recent_activity"


class CompletionResult(FusionBaseModel):
    bus_id: str
    completed: bool = False
    reason: CompletionReason | None = None
    checked_at: UtcTimestamp


class TripSummary(FusionBaseModel):
    """Summary statistics of a completed trip."""

    total_pings: int = 0
    valid_pings: int = 0
    outlier_pings: int = 0
    unique_devices: int = 0
    average_confidence: float | None = None
    first_ping_at: UtcTimestamp | None = None
    last_ping_at: UtcTimestamp | None = None
    duration_seconds: float = 0.0
    total_distance_m: float = 0.0
    average_speed_kmh: float | None = None
    max_speed_kmh: float | None = None
    stops_visited: tuple[str, ...] = ()


class TripRecord(FusionBaseModel):
    """Immutable archive entry written once when a trip completes."""

    record_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    trip_id: str | None = None
    bus_id: str
    reason: CompletionReason
    completed_at: UtcTimestamp
    pings: tuple[ValidatedPing, ...] = ()
    summary: TripSummary
    final_position: FusedPosition | None = None

    def last_known_point(self) -> tuple[float, float, datetime] | None:
        """Best last-known location: the final fused position, else the last valid ping."""
        if self.final_position is not None:
            return self.final_position.lat, self.final_position.lng, self.final_position.last_updated
        for validated in reversed(self.pings):
            if validated.is_valid:
                ping = validated.ping
                return ping.lat, ping.lng, ping.server_timestamp
        return None


class TripProgress(FusionBaseModel):
    """Where a bus is along its planned stops.

    Stops are reached in order: once the bus has been inside a stop's
    geofence, that stop and every earlier one count as passed.
    """

    bus_id: str
    trip_id: str
    stops_passed: tuple[str, ...] = ()
    current_stop: str | None = None
    next_stop: str | None = None
    completed_fraction: float = Field(default=0.0, ge=0.0, le=1.0)
    departed_origin: bool = False
    observed_at: UtcTimestamp | None = None
