"""Tracking session model."""

from __future__ import annotations

import uuid
from enum import StrEnum

from pydantic import Field, model_validator

from busfusion.models._base import FusionBaseModel, UtcTimestamp


class SessionState(StrEnum):
    ACTIVE = "active"
    ENDED = "ended"


class SessionEndReason(StrEnum):
    STOPPED = "stopped"
    TIMEOUT = "timeout"
    TRIP_COMPLETED = "trip_completed"
    SWITCHED_BUS = "switched_bus"
    STATIC_GPS = "static_gps"
    OFF_ROUTE = "off_route"


class TrackingSession(FusionBaseModel):
    """A rider's "I'm on this bus" session for one (device, bus) pair."""

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    device_id: str
    bus_id: str
    started_at: UtcTimestamp
    ended_at: UtcTimestamp | None = None
    state: SessionState = SessionState.ACTIVE
    end_reason: SessionEndReason | None = None
    locations_contributed: int = Field(default=0, ge=0)
    valid_locations: int = Field(default=0, ge=0)
    off_route_locations: int = Field(default=0, ge=0)
    last_ping_at: UtcTimestamp | None = None

    @model_validator(mode="after")
    def _check_invariants(self) -> TrackingSession:
        if self.valid_locations > self.locations_contributed:
            raise ValueError("valid_locations cannot exceed locations_contributed")
        if self.off_route_locations > self.locations_contributed:
            raise ValueError("off_route_locations cannot exceed locations_contributed")
        if self.state == SessionState.ENDED and self.ended_at is None:
            raise ValueError("ended sessions must carry ended_at")
        return self

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE
