"""Trip completion detection and archival.

A trip completes for one of three reasons, checked in this order:

1. ``schedule_elapsed``: the scheduled end plus the grace period has passed.
2. ``reached_terminus``: the bus is inside the final stop's geofence after
   having actually travelled the route.
3. ``no_recent_activity``: the bus has had no valid ping for a long time.

Completing a trip ends its sessions and freezes its buffered pings into an
immutable :class:`~busfusion.models.TripRecord`.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from busfusion._constants import MAX_SEGMENT_JUMP_M
from busfusion.config import FusionConfig
from busfusion.geo import LatLng, haversine_m, within_radius
from busfusion.models._base import utcnow
from busfusion.models.ping import ValidatedPing, ValidationFlag
from busfusion.models.position import FusedPosition
from busfusion.models.route import RouteContext, Stop, TripPlan
from busfusion.models.session import SessionEndReason
from busfusion.models.trip import CompletionReason, CompletionResult, TripProgress, TripRecord, TripSummary
from busfusion.state.archive import TripArchive
from busfusion.state.pings import PingBuffer
from busfusion.state.positions import PositionStore
from busfusion.state.sessions import TrackingSessionManager

_logger = logging.getLogger(__name__)


@dataclasses.dataclass
class _RouteProgress:
    departed_origin: bool = False
    visited: set[str] = dataclasses.field(default_factory=set)
    last_point: LatLng | None = None
    # Index of the furthest stop reached so far; -1 before the first.
    reached: int = -1
    current: str | None = None
    observed_at: datetime | None = None



def _in_stop(point: LatLng, stop: Stop) -> bool:
    return within_radius(point[0], point[1], stop.lat, stop.lng, stop.radius_m)


def build_summary(pings: Sequence[ValidatedPing], stops: Sequence[Stop] = ()) -> TripSummary:
    """Summary statistics over a trip's buffered pings.

    Distance follows the valid pings in client-time order and skips any
    segment longer than :data:`MAX_SEGMENT_JUMP_M` as a GPS jump.
    """
    if not pings:
        return TripSummary()

    valid = sorted((v for v in pings if v.is_valid), key=lambda v: v.ping.client_timestamp)
    received = [v.ping.server_timestamp for v in pings]
    first_at, last_at = min(received), max(received)

    distance = 0.0
    for previous, current in zip(valid, valid[1:], strict=False):
        segment = haversine_m(previous.ping.lat, previous.ping.lng, current.ping.lat, current.ping.lng)
        if segment <= MAX_SEGMENT_JUMP_M:
            distance += segment

    speeds = [v.ping.speed for v in valid if v.ping.speed is not None]
    visited = tuple(
        stop.name for stop in stops if any(_in_stop((v.ping.lat, v.ping.lng), stop) for v in valid)
    )

    return TripSummary(
        total_pings=len(pings),
        valid_pings=len(valid),
        outlier_pings=sum(1 for v in pings if ValidationFlag.OUTLIER in v.result.flags),
        unique_devices=len({v.device_id for v in pings}),
        average_confidence=sum(v.confidence_weight for v in valid) / len(valid) if valid else None,
        first_ping_at=first_at,
        last_ping_at=last_at,
        duration_seconds=(last_at - first_at).total_seconds(),
        total_distance_m=distance,
        average_speed_kmh=sum(speeds) / len(speeds) if speeds else None,
        max_speed_kmh=max(speeds) if speeds else None,
        stops_visited=visited,
    )


class TripCompletionDetector:
    """Decides when a bus's trip is over and archives it."""

    def __init__(
        self,
        config: FusionConfig,
        *,
        sessions: TrackingSessionManager,
        pings: PingBuffer,
        positions: PositionStore,
        archive: TripArchive,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._pings = pings
        self._positions = positions
        self._archive = archive
        self._clock = clock
        self._plans: dict[str, TripPlan] = {}
        self._completed_trips: set[str] = set()
        self._progress: dict[str, _RouteProgress] = {}

    # ------------------------------------------------------------------
    # Plans and progress
    # ------------------------------------------------------------------

    def set_plan(self, plan: TripPlan) -> None:
        current = self._plans.get(plan.bus_id)
        if current is None or current.trip_id != plan.trip_id:
            self._progress.pop(plan.bus_id, None)
        self._plans[plan.bus_id] = plan
        _logger.debug("Trip plan %s registered for bus=%s (%d stops)", plan.trip_id, plan.bus_id, len(plan.stops))

    def active_plan(self, bus_id: str) -> TripPlan | None:
        """The bus's registered plan, unless that trip has already completed."""
        plan = self._plans.get(bus_id)
        if plan is None or plan.trip_id in self._completed_trips:
            return None
        return plan

    def route_context(self, bus_id: str) -> RouteContext | None:
        plan = self.active_plan(bus_id)
        return plan.route_context() if plan is not None else None

    def observe_position(self, bus_id: str, position: FusedPosition) -> None:
        """Record where the bus has been.

        Feeds both the stop progression reported by :meth:`trip_progress` and
        the progress guard on terminus arrival.
        """
        plan = self.active_plan(bus_id)
        if plan is None or not plan.stops:
            return
        progress = self._progress.setdefault(bus_id, _RouteProgress())
        point = (position.lat, position.lng)
        progress.last_point = point
        progress.observed_at = position.last_updated

        origin = plan.stops[0]
        if not progress.departed_origin and not _in_stop(point, origin):
            progress.departed_origin = True
            progress.reached = max(progress.reached, 0)
        for stop in plan.stops[1:-1]:
            if _in_stop(point, stop):
                progress.visited.add(stop.name)

        inside = [index for index, stop in enumerate(plan.stops) if _in_stop(point, stop)]
        ahead = [index for index in inside if index > progress.reached]
        if ahead:
            progress.reached = ahead[0]
            _logger.info(
                "Bus %s reached stop %s (%d/%d)",
                bus_id,
                plan.stops[progress.reached].name,
                progress.reached + 1,
                len(plan.stops),
            )
        if not inside:
            progress.current = None
        elif progress.reached in inside:
            progress.current = plan.stops[progress.reached].name
        else:
            progress.current = plan.stops[inside[0]].name

    def trip_progress(self, bus_id: str) -> TripProgress | None:
        """Stops passed, current stop and next stop of the bus's active trip."""
        plan = self.active_plan(bus_id)
        if plan is None or not plan.stops:
            return None
        progress = self._progress.get(bus_id) or _RouteProgress()
        following = progress.reached + 1
        return TripProgress(
            bus_id=bus_id,
            trip_id=plan.trip_id,
            stops_passed=tuple(stop.name for stop in plan.stops[:following]),
            current_stop=progress.current,
            next_stop=plan.stops[following].name if following < len(plan.stops) else None,
            completed_fraction=following / len(plan.stops),
            departed_origin=progress.departed_origin,
            observed_at=progress.observed_at,
        )

    def candidate_bus_ids(self) -> set[str]:
        """Buses worth a completion check on this sweep."""
        planned = {bus_id for bus_id in self._plans if self.active_plan(bus_id) is not None}
        return planned | self._pings.bus_ids() | self._sessions.active_bus_ids()

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _reached_terminus(self, bus_id: str, plan: TripPlan) -> bool:
        terminus = plan.terminus
        if terminus is None or len(plan.stops) < 2:
            return False
        progress = self._progress.get(bus_id)
        if progress is None or not progress.departed_origin:
            return False
        if len(plan.stops) > 2 and not progress.visited:
            return False

        position = self._positions.get(bus_id)
        point = (position.lat, position.lng) if position is not None else progress.last_point
        return point is not None and _in_stop(point, terminus)

    def check_completion(self, bus_id: str, *, now: datetime | None = None) -> CompletionResult:
        now = now or self._clock()
        cfg = self._config
        reason: CompletionReason | None = None

        plan = self.active_plan(bus_id)
        if plan is not None and now > plan.scheduled_end + timedelta(seconds=cfg.completion_grace):
            reason = CompletionReason.SCHEDULE_ELAPSED
        elif plan is not None and self._reached_terminus(bus_id, plan):
            reason = CompletionReason.REACHED_TERMINUS
        else:
            last_seen = self._pings.last_valid_ping_at(bus_id)
            if last_seen is not None and (now - last_seen).total_seconds() > cfg.trip_inactivity_timeout:
                reason = CompletionReason.NO_RECENT_ACTIVITY

        return CompletionResult(bus_id=bus_id, completed=reason is not None, reason=reason, checked_at=now)

    def finalize(self, result: CompletionResult, *, now: datetime | None = None) -> TripRecord:
        """Close out a completed trip and archive it.

        The caller holds the bus's position lock.

        Raises
        ------
        ValueError
            If *result* does not report a completion.
        """
        if not result.completed or result.reason is None:
            raise ValueError(f"trip for bus {result.bus_id} has not completed")

        now = now or self._clock()
        bus_id = result.bus_id
        plan = self.active_plan(bus_id)

        ended = self._sessions.end_all_for_bus(bus_id, SessionEndReason.TRIP_COMPLETED, now=now)
        pings = self._pings.drain(bus_id)
        record = TripRecord(
            trip_id=plan.trip_id if plan is not None else None,
            bus_id=bus_id,
            reason=result.reason,
            completed_at=now,
            pings=pings,
            summary=build_summary(pings, plan.stops if plan is not None else ()),
            final_position=self._positions.get(bus_id),
        )
        self._archive.add(record)

        self._progress.pop(bus_id, None)
        if plan is not None:
            self._completed_trips.add(plan.trip_id)
        self._positions.mark_stale(bus_id)

        _logger.info(
            "Trip completed bus=%s reason=%s pings=%d sessions_ended=%d",
            bus_id,
            result.reason,
            len(pings),
            len(ended),
        )
        return record
