"""Confidence-weighted fusion of rider pings into one bus position.

The computation is split in two:

- :meth:`LocationFusionEngine.compute` is pure: pings and a trust lookup in,
  a :class:`FusionOutcome` out.
- :meth:`LocationFusionEngine.fuse` runs ``compute`` against the live trust
  store and feeds each contributor's agreement back into it.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime

from busfusion._redact import short_id
from busfusion.config import FusionConfig
from busfusion.geo import haversine_m, weighted_centroid
from busfusion.models._base import clamp_unit
from busfusion.models.ping import ValidatedPing, ValidationFlag
from busfusion.models.position import FusedPosition, PositionStatus
from busfusion.state.pings import PingBuffer
from busfusion.state.policy import recency_weight
from busfusion.state.trust import DeviceTrustStore

_logger = logging.getLogger(__name__)

TrustLookup = Callable[[str], tuple[float, bool]]
"""``device_id -> (trust_score, is_trusted)``."""


@dataclasses.dataclass(frozen=True)
class Contribution:
    """One device's vote in a fusion round."""

    validated: ValidatedPing
    trust: float
    trusted: bool
    weight: float
    outlier: bool = False
    distance_m: float = 0.0

    @property
    def device_id(self) -> str:
        return self.validated.device_id


@dataclasses.dataclass(frozen=True)
class FusionOutcome:
    position: FusedPosition
    contributions: tuple[Contribution, ...]
    threshold_m: float

    def agreement(self, contribution: Contribution) -> float:
        """How well a contributor agreed with the fused position, in ``[0, 1]``."""
        if contribution.outlier:
            return 0.0
        return clamp_unit(1.0 - contribution.distance_m / (2.0 * self.threshold_m))


def latest_per_device(pings: Iterable[ValidatedPing]) -> list[ValidatedPing]:
    """Keep only each device's newest valid ping."""
    latest: dict[str, ValidatedPing] = {}
    for validated in pings:
        if not validated.is_valid:
            continue
        current = latest.get(validated.device_id)
        key = (validated.ping.server_timestamp, validated.ping.client_timestamp)
        if current is None or key > (current.ping.server_timestamp, current.ping.client_timestamp):
            latest[validated.device_id] = validated
    return list(latest.values())


def _weighted_rms(contributions: Sequence[Contribution], lat: float, lng: float) -> float:
    total = sum(c.weight for c in contributions)
    if total <= 0.0:
        return 0.0
    squared = 0.0
    for c in contributions:
        squared += c.weight * haversine_m(lat, lng, c.validated.ping.lat, c.validated.ping.lng) ** 2
    return math.sqrt(squared / total)


def _heading_dispersion(headings: Sequence[float]) -> float | None:
    if len(headings) < 2:
        return None
    sin_sum = sum(math.sin(math.radians(h)) for h in headings)
    cos_sum = sum(math.cos(math.radians(h)) for h in headings)
    resultant = math.hypot(sin_sum, cos_sum) / len(headings)
    return clamp_unit(1.0 - resultant)


def _speed_dispersion(speeds: Sequence[float]) -> float | None:
    if len(speeds) < 2:
        return None
    mean = sum(speeds) / len(speeds)
    if mean <= 0.0:
        # Everyone reports standing still.
        return 0.0
    variance = sum((s - mean) ** 2 for s in speeds) / len(speeds)
    return clamp_unit(math.sqrt(variance) / mean)


class LocationFusionEngine:
    def __init__(self, config: FusionConfig, trust_store: DeviceTrustStore, pings: PingBuffer) -> None:
        self._config = config
        self._trust = trust_store
        self._pings = pings

    def compute(
        self,
        bus_id: str,
        validated_pings: Iterable[ValidatedPing],
        trust_lookup: TrustLookup,
        *,
        now: datetime,
    ) -> FusionOutcome | None:
        """Fuse the pings of one bus.

        Parameters
        ----------
        bus_id
            Bus being fused.
        validated_pings
            Candidate pings; invalid ones and all but each device's newest are ignored.
        trust_lookup
            Returns ``(trust_score, is_trusted)`` for a device id.
        now
            Reference time for recency weighting.

        Returns
        -------
        FusionOutcome or None
            ``None`` when no ping carries any weight.
        """
        cfg = self._config

        contributions: list[Contribution] = []
        for validated in latest_per_device(validated_pings):
            trust, trusted = trust_lookup(validated.device_id)
            age = (now - validated.ping.server_timestamp).total_seconds()
            weight = clamp_unit(trust) * validated.confidence_weight * recency_weight(age, cfg.max_ping_age)
            if weight > 0.0:
                contributions.append(Contribution(validated=validated, trust=trust, trusted=trusted, weight=weight))

        first = weighted_centroid((c.validated.ping.lat, c.validated.ping.lng, c.weight) for c in contributions)
        if first is None:
            return None

        # Single pass: the threshold is derived from the unsuppressed spread.
        rms = _weighted_rms(contributions, first[0], first[1])
        threshold = max(cfg.outlier_min_distance_m, min(cfg.outlier_k * rms, cfg.outlier_max_distance_m))

        flagged = [
            haversine_m(first[0], first[1], c.validated.ping.lat, c.validated.ping.lng) > threshold
            for c in contributions
        ]
        if all(flagged):
            keep = max(range(len(contributions)), key=lambda i: contributions[i].weight)
            flagged[keep] = False

        adjusted = [
            dataclasses.replace(c, weight=c.weight * cfg.outlier_weight_factor, outlier=True) if is_outlier else c
            for c, is_outlier in zip(contributions, flagged, strict=True)
        ]
        centroid = weighted_centroid((c.validated.ping.lat, c.validated.ping.lng, c.weight) for c in adjusted)
        if centroid is None:
            return None
        lat, lng = centroid

        contributions = [
            dataclasses.replace(c, distance_m=haversine_m(lat, lng, c.validated.ping.lat, c.validated.ping.lng))
            for c in adjusted
        ]
        inliers = [c for c in contributions if not c.outlier]
        count = len(inliers)
        total_weight = sum(c.weight for c in contributions)
        average_trust = clamp_unit(sum(c.trust for c in inliers) / count)

        rms_inliers = _weighted_rms(inliers, lat, lng)
        spatial_dispersion = clamp_unit(rms_inliers / cfg.outlier_max_distance_m)
        headings = [c.validated.ping.heading for c in inliers if c.validated.ping.heading is not None]
        speeds = [c.validated.ping.speed for c in inliers if c.validated.ping.speed is not None]
        dispersions = [d for d in (_heading_dispersion(headings), _speed_dispersion(speeds)) if d is not None]
        if not dispersions:
            dispersions = [spatial_dispersion]
        movement_consistency = clamp_unit(1.0 - sum(dispersions) / len(dispersions))

        count_factor = min(1.0, count / cfg.target_contributors)
        confidence = clamp_unit(average_trust * (0.5 + 0.5 * count_factor) * (0.5 + 0.5 * (1.0 - spatial_dispersion)))

        if (
            count >= cfg.min_active_contributors
            and total_weight >= cfg.min_active_weight
            and average_trust >= cfg.low_trust_threshold
        ):
            status = PositionStatus.ACTIVE
        else:
            status = PositionStatus.DEGRADED

        position = FusedPosition(
            bus_id=bus_id,
            lat=lat,
            lng=lng,
            confidence_level=confidence,
            active_trackers=count,
            trusted_trackers=sum(1 for c in inliers if c.trusted),
            average_trust_score=average_trust,
            movement_consistency=movement_consistency,
            status=status,
            last_updated=now,
            total_weight=total_weight,
            outliers_suppressed=len(contributions) - count,
        )
        return FusionOutcome(position=position, contributions=tuple(contributions), threshold_m=threshold)

    async def fuse(
        self,
        bus_id: str,
        validated_pings: Iterable[ValidatedPing],
        *,
        now: datetime,
    ) -> FusedPosition | None:
        """Fuse against live trust and record each contributor's agreement.

        Each ping is scored at most once, however many cycles it stays in the
        window. A lone contributor is never scored against itself. Suppressed
        pings are flagged ``outlier`` in the buffer so the archived trip keeps
        the verdict.
        """
        outcome = self.compute(bus_id, validated_pings, lambda device_id: self._trust.lookup(device_id, now), now=now)
        if outcome is None:
            _logger.debug("No weighted contributors for bus=%s", bus_id)
            return None

        position = outcome.position
        _logger.debug(
            "Fused bus=%s trackers=%d outliers=%d confidence=%.3f status=%s",
            bus_id,
            position.active_trackers,
            position.outliers_suppressed,
            position.confidence_level,
            position.status,
        )

        if len(outcome.contributions) > 1:
            for contribution in outcome.contributions:
                ping_id = contribution.validated.ping_id
                if self._pings.is_scored(ping_id):
                    continue
                self._pings.mark_scored(ping_id)
                agreement = outcome.agreement(contribution)
                if contribution.outlier:
                    self._pings.add_flag(bus_id, ping_id, ValidationFlag.OUTLIER)
                    _logger.debug(
                        "Outlier device=%s bus=%s distance=%.1fm threshold=%.1fm",
                        short_id(contribution.device_id),
                        bus_id,
                        contribution.distance_m,
                        outcome.threshold_m,
                    )
                await self._trust.record_outcome(contribution.device_id, True, agreement, now=now)
        return position
