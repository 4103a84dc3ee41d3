"""Per-ping plausibility checks.

:class:`GPSValidator` is a pure function of its inputs and configuration: it
never touches a store. Each check either rejects the ping outright (see
:data:`~busfusion.models.ping.HARD_REJECT_FLAGS`) or multiplies a running
confidence weight, recording a :class:`ValidationFlag` for every penalty
applied.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime

from busfusion._constants import MS_TO_KMH, NULL_ISLAND_EPSILON
from busfusion._redact import short_id
from busfusion.config import FusionConfig
from busfusion.geo import distance_to_polyline_m, haversine_m
from busfusion.models._base import clamp_unit
from busfusion.models.ping import HARD_REJECT_FLAGS, RawPing, ValidationFlag, ValidationResult
from busfusion.models.route import RouteContext

_logger = logging.getLogger(__name__)


def _valid_coordinates(lat: float, lng: float) -> bool:
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    if abs(lat) > 90.0 or abs(lng) > 180.0:
        return False
    # (0, 0) and near-zero axes are what broken location providers send.
    return abs(lat) >= NULL_ISLAND_EPSILON and abs(lng) >= NULL_ISLAND_EPSILON


def _route_distance_m(ping: RawPing, route: RouteContext) -> float | None:
    candidates = [haversine_m(ping.lat, ping.lng, stop.lat, stop.lng) for stop in route.stops]
    corridor = distance_to_polyline_m(ping.lat, ping.lng, route.corridor)
    if corridor is not None:
        candidates.append(corridor)
    return min(candidates) if candidates else None


class GPSValidator:
    """Scores a single ping against bounds, accuracy, motion, route and clock checks."""

    def __init__(self, config: FusionConfig) -> None:
        self._config = config

    def validate(
        self,
        ping: RawPing,
        prior_ping: RawPing | None = None,
        route_context: RouteContext | None = None,
        *,
        now: datetime,
    ) -> ValidationResult:
        """Validate *ping*.

        Parameters
        ----------
        ping
            The ping to score.
        prior_ping
            The device's previous valid ping, used for the speed check.
        route_context
            Stops and corridor of the bus's current trip, if known.
        now
            Reference time for the freshness check.

        Returns
        -------
        ValidationResult
            ``is_valid`` is true when the final weight reaches the rejection
            threshold.
        """
        cfg = self._config

        if not _valid_coordinates(ping.lat, ping.lng):
            return self._reject(ping, ValidationFlag.INVALID_COORDINATES)
        if not cfg.bounds.contains(ping.lat, ping.lng):
            return self._reject(ping, ValidationFlag.OUT_OF_BOUNDS)

        weight = 1.0
        flags: set[ValidationFlag] = set()

        if ping.accuracy > cfg.max_accuracy_m:
            weight *= max(cfg.min_accuracy_factor, min(1.0, cfg.max_accuracy_m / ping.accuracy))
            flags.add(ValidationFlag.LOW_ACCURACY)

        computed_speed: float | None = None
        if prior_ping is not None and prior_ping.device_id == ping.device_id:
            elapsed = (ping.client_timestamp - prior_ping.client_timestamp).total_seconds()
            if elapsed <= 0:
                return self._reject(ping, ValidationFlag.OUT_OF_ORDER)
            distance = haversine_m(prior_ping.lat, prior_ping.lng, ping.lat, ping.lng)
            computed_speed = distance / elapsed * MS_TO_KMH
            if computed_speed > cfg.max_plausible_speed_kmh:
                return self._reject(ping, ValidationFlag.IMPLAUSIBLE_SPEED, computed_speed_kmh=computed_speed)

        if route_context is not None and not route_context.is_empty:
            distance = _route_distance_m(ping, route_context)
            if distance is not None and distance > cfg.corridor_radius_m:
                weight *= cfg.off_route_factor
                flags.add(ValidationFlag.OFF_ROUTE)

        if abs((now - ping.client_timestamp).total_seconds()) > cfg.stale_window:
            weight *= cfg.stale_factor
            flags.add(ValidationFlag.STALE_TIMESTAMP)

        weight = clamp_unit(weight)
        is_valid = weight >= cfg.rejection_threshold
        if not is_valid:
            flags.add(ValidationFlag.BELOW_THRESHOLD)

        if flags:
            _logger.debug(
                "Ping %s device=%s bus=%s weight=%.3f flags=%s",
                ping.ping_id,
                short_id(ping.device_id),
                ping.bus_id,
                weight,
                sorted(flags),
            )
        return ValidationResult(
            is_valid=is_valid,
            confidence_weight=weight,
            flags=frozenset(flags),
            computed_speed_kmh=computed_speed,
        )

    def _reject(
        self, ping: RawPing, flag: ValidationFlag, *, computed_speed_kmh: float | None = None
    ) -> ValidationResult:
        if flag not in HARD_REJECT_FLAGS:
            raise ValueError(f"{flag} does not reject a ping on its own")
        _logger.debug("Ping %s device=%s rejected: %s", ping.ping_id, short_id(ping.device_id), flag)
        return ValidationResult.rejected(flag, computed_speed_kmh=computed_speed_kmh)
