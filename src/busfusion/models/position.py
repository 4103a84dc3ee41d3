"""Fused position, fallback view and emitted position update."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import Field, model_validator

from busfusion.models._base import FusionBaseModel, UtcTimestamp


class PositionStatus(StrEnum):
    ACTIVE = "active"
    DEGRADED = "degraded"
    STALE = "stale"
    UNKNOWN = "unknown"


class GapSeverity(StrEnum):
    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"
    UNKNOWN = "unknown"


class FallbackSource(StrEnum):
    FUSED_POSITION = "fused_position"
    TRIP_RECORD = "trip_record"
    NONE = "none"


class FusedPosition(FusionBaseModel):
    """Authoritative position of a bus, fused from its riders' pings."""

    bus_id: str
    lat: float
    lng: float
    confidence_level: float = Field(ge=0.0, le=1.0)
    active_trackers: int = Field(ge=0)
    trusted_trackers: int = Field(ge=0)
    average_trust_score: float = Field(ge=0.0, le=1.0)
    movement_consistency: float = Field(ge=0.0, le=1.0)
    status: PositionStatus
    last_updated: UtcTimestamp
    total_weight: float = Field(default=0.0, ge=0.0)
    outliers_suppressed: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_trackers(self) -> FusedPosition:
        if self.trusted_trackers > self.active_trackers:
            raise ValueError("trusted_trackers cannot exceed active_trackers")
        return self

    def age_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.last_updated).total_seconds())


class FallbackView(FusionBaseModel):
    """Degraded answer served when a bus has no live contributors.

    Coordinates are only present when something was actually recorded for
    the bus; a view with ``source == FallbackSource.NONE`` never carries a
    position.
    """

    bus_id: str
    has_live_data: bool = False
    lat: float | None = None
    lng: float | None = None
    status: PositionStatus = PositionStatus.UNKNOWN
    age_seconds: float | None = None
    gap_severity: GapSeverity = GapSeverity.UNKNOWN
    last_seen_at: UtcTimestamp | None = None
    source: FallbackSource = FallbackSource.NONE
    message: str = ""

    @model_validator(mode="after")
    def _check_no_fabrication(self) -> FallbackView:
        if self.source == FallbackSource.NONE and (self.lat is not None or self.lng is not None):
            raise ValueError("a fallback view without a source cannot carry coordinates")
        return self


class PositionUpdate(FusionBaseModel):
    """Payload emitted to the broadcaster when a bus position changes materially."""

    bus_id: str
    lat: float
    lng: float
    confidence_level: float
    active_trackers: int
    status: PositionStatus
    timestamp: UtcTimestamp

    @classmethod
    def from_position(cls, position: FusedPosition) -> PositionUpdate:
        return cls(
            bus_id=position.bus_id,
            lat=position.lat,
            lng=position.lng,
            confidence_level=position.confidence_level,
            active_trackers=position.active_trackers,
            status=position.status,
            timestamp=position.last_updated,
        )
