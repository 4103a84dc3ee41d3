"""Rider tracking sessions.

A device tracks at most one bus at a time. Sessions move ``ACTIVE -> ENDED``
and never come back; a new ``start`` after an end opens a fresh session.

Besides explicit stops and idle timeouts, the sweep ends sessions whose
source looks unreliable: a GPS fix that has not moved for
``static_gps_timeout`` or a device that is mostly off the bus's route.
"""

from __future__ import annotations

import dataclasses
import logging
from collections import deque
from collections.abc import Callable, Collection
from datetime import datetime, timedelta

from busfusion._redact import short_id
from busfusion.config import FusionConfig
from busfusion.geo import LatLng, haversine_m
from busfusion.models._base import utcnow
from busfusion.models.ping import ValidationFlag
from busfusion.models.session import SessionEndReason, SessionState, TrackingSession

_logger = logging.getLogger(__name__)


@dataclasses.dataclass
class _SourceHistory:
    """Recent motion of one device, for the reliability checks."""

    anchor: LatLng | None = None
    anchor_since: datetime | None = None
    anchor_pings: int = 0
    route_checks: deque[tuple[datetime, bool]] = dataclasses.field(default_factory=deque)

    def observe(self, point: LatLng, off_route: bool, now: datetime, tolerance_m: float) -> None:
        if self.anchor is None or haversine_m(*self.anchor, *point) > tolerance_m:
            self.anchor, self.anchor_since, self.anchor_pings = point, now, 1
        else:
            self.anchor_pings += 1
        self.route_checks.append((now, off_route))

    def off_route_share(self, now: datetime, window: float) -> tuple[int, float]:
        cutoff = now - timedelta(seconds=window)
        while self.route_checks and self.route_checks[0][0] < cutoff:
            self.route_checks.popleft()
        total = len(self.route_checks)
        if total == 0:
            return 0, 0.0
        return total, sum(1 for _, off in self.route_checks if off) / total



class TrackingSessionManager:
    """Owns every tracking session, keyed by device.

    All methods are synchronous: each transition is a single read-modify-write
    with no suspension point, so the event loop serializes them.
    """

    def __init__(self, config: FusionConfig, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._config = config
        self._clock = clock
        self._active: dict[str, TrackingSession] = {}
        # Most recent ended session per (device, bus).
        self._ended: dict[tuple[str, str], TrackingSession] = {}
        self._history: dict[str, _SourceHistory] = {}

    def _end(self, session: TrackingSession, reason: SessionEndReason, now: datetime) -> TrackingSession:
        ended = session.model_copy(update={"state": SessionState.ENDED, "ended_at": now, "end_reason": reason})
        self._active.pop(session.device_id, None)
        self._history.pop(session.device_id, None)
        self._ended[(session.device_id, session.bus_id)] = ended
        _logger.debug(
            "Session ended device=%s bus=%s reason=%s pings=%d valid=%d",
            short_id(session.device_id),
            session.bus_id,
            reason,
            session.locations_contributed,
            session.valid_locations,
        )
        return ended

    def start(self, device_id: str, bus_id: str, *, now: datetime | None = None) -> TrackingSession:
        """Open a session; idempotent for the same bus.

        Starting a different bus ends the device's current session with
        ``switched_bus`` first.
        """
        now = now or self._clock()
        current = self._active.get(device_id)
        if current is not None:
            if current.bus_id == bus_id:
                return current
            self._end(current, SessionEndReason.SWITCHED_BUS, now)

        session = TrackingSession(device_id=device_id, bus_id=bus_id, started_at=now, last_ping_at=None)
        self._active[device_id] = session
        _logger.debug("Session started device=%s bus=%s", short_id(device_id), bus_id)
        return session

    def record_ping(
        self,
        device_id: str,
        bus_id: str,
        was_valid: bool,
        *,
        flags: Collection[ValidationFlag] = (),
        location: LatLng | None = None,
        now: datetime | None = None,
    ) -> TrackingSession:
        """Count a ping against the device's session, starting one if needed.

        *location* feeds the static-GPS and off-route checks; pings with
        unusable coordinates are counted but not observed.
        """
        now = now or self._clock()
        session = self.start(device_id, bus_id, now=now)
        off_route = ValidationFlag.OFF_ROUTE in flags
        session = session.model_copy(
            update={
                "locations_contributed": session.locations_contributed + 1,
                "valid_locations": session.valid_locations + (1 if was_valid else 0),
                "off_route_locations": session.off_route_locations + (1 if off_route else 0),
                "last_ping_at": now,
            }
        )
        self._active[device_id] = session

        if location is not None and ValidationFlag.INVALID_COORDINATES not in flags:
            history = self._history.setdefault(device_id, _SourceHistory())
            history.observe(location, off_route, now, self._config.static_gps_tolerance_m)
        return session

    def stop(
        self,
        device_id: str,
        bus_id: str,
        *,
        reason: SessionEndReason = SessionEndReason.STOPPED,
        now: datetime | None = None,
    ) -> TrackingSession | None:
        """End the device's session on *bus_id*; ``None`` when there is none."""
        session = self._active.get(device_id)
        if session is None or session.bus_id != bus_id:
            return None
        return self._end(session, reason, now or self._clock())

    def expire_inactive(self, now: datetime | None = None) -> list[TrackingSession]:
        """End sessions idle longer than the inactivity timeout."""
        now = now or self._clock()
        timeout = self._config.session_inactivity_timeout
        expired: list[TrackingSession] = []
        for session in list(self._active.values()):
            reference = session.last_ping_at or session.started_at
            if (now - reference).total_seconds() > timeout:
                expired.append(self._end(session, SessionEndReason.TIMEOUT, now))
        if expired:
            _logger.debug("Expired %d idle session(s)", len(expired))
        return expired

    def _unreliable_reason(self, session: TrackingSession, now: datetime) -> SessionEndReason | None:
        history = self._history.get(session.device_id)
        if history is None:
            return None
        cfg = self._config
        if (
            history.anchor_since is not None
            and history.anchor_pings >= cfg.reliability_min_pings
            and session.last_ping_at is not None
            and (session.last_ping_at - history.anchor_since).total_seconds() >= cfg.static_gps_timeout
        ):
            return SessionEndReason.STATIC_GPS
        checked, share = history.off_route_share(now, cfg.off_route_window)
        if checked >= cfg.reliability_min_pings and share > cfg.off_route_ratio:
            return SessionEndReason.OFF_ROUTE
        return None

    def deactivate_unreliable(self, now: datetime | None = None) -> list[TrackingSession]:
        """End sessions whose GPS has been static too long or is consistently off-route."""
        now = now or self._clock()
        ended: list[TrackingSession] = []
        for session in list(self._active.values()):
            reason = self._unreliable_reason(session, now)
            if reason is not None:
                ended.append(self._end(session, reason, now))
        if ended:
            _logger.info(
                "Deactivated %d unreliable session(s): %s",
                len(ended),
                ", ".join(f"{short_id(s.device_id)}@{s.bus_id}={s.end_reason}" for s in ended),
            )
        return ended

    def end_all_for_bus(
        self,
        bus_id: str,
        reason: SessionEndReason,
        *,
        now: datetime | None = None,
    ) -> list[TrackingSession]:
        now = now or self._clock()
        return [self._end(s, reason, now) for s in list(self._active.values()) if s.bus_id == bus_id]

    def get(self, device_id: str, bus_id: str) -> TrackingSession | None:
        """Active session for the pair, else the most recent ended one."""
        session = self._active.get(device_id)
        if session is not None and session.bus_id == bus_id:
            return session
        return self._ended.get((device_id, bus_id))

    def active_sessions(self, bus_id: str | None = None) -> list[TrackingSession]:
        return [s for s in self._active.values() if bus_id is None or s.bus_id == bus_id]

    def active_bus_ids(self) -> set[str]:
        return {s.bus_id for s in self._active.values()}
