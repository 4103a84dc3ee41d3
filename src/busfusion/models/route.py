"""Route context supplied by the schedule collaborator."""

from __future__ import annotations

import uuid

from pydantic import Field, model_validator

from busfusion.models._base import FusionBaseModel, UtcTimestamp


class Stop(FusionBaseModel):
    """A stop with its arrival geofence."""

    name: str
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)
    radius_m: float = Field(default=100.0, gt=0.0)


class RouteContext(FusionBaseModel):
    """Known stops and corridor used by the route-proximity check."""

    stops: tuple[Stop, ...] = ()
    corridor: tuple[tuple[float, float], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.stops and not self.corridor


class TripPlan(FusionBaseModel):
    """A scheduled run of one bus along an ordered list of stops."""

    trip_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    bus_id: str
    stops: tuple[Stop, ...] = ()
    corridor: tuple[tuple[float, float], ...] = ()
    scheduled_start: UtcTimestamp
    scheduled_end: UtcTimestamp

    @model_validator(mode="after")
    def _check_window(self) -> TripPlan:
        if self.scheduled_end < self.scheduled_start:
            raise ValueError("scheduled_end must not precede scheduled_start")
        return self

    @property
    def origin(self) -> Stop | None:
        return self.stops[0] if self.stops else None

    @property
    def terminus(self) -> Stop | None:
        return self.stops[-1] if self.stops else None

    def route_context(self) -> RouteContext:
        return RouteContext(stops=self.stops, corridor=self.corridor)
