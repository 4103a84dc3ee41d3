"""Deterministic scoring and lifecycle policy.

This module intentionally contains *no* state. The stores call into it so
that every threshold decision lives in one place and is trivially testable.
"""

from __future__ import annotations

import math

from busfusion._constants import NEUTRAL_TRUST
from busfusion.geo import haversine_m
from busfusion.models._base import clamp_unit
from busfusion.models.position import FusedPosition, GapSeverity


def recency_weight(age_seconds: float, max_age: float) -> float:
    """Linear falloff from 1 (just received) to 0 (``max_age`` old or older)."""
    if age_seconds <= 0:
        return 1.0
    if age_seconds >= max_age:
        return 0.0
    return 1.0 - age_seconds / max_age


def update_reputation(old: float, outcome: float, smoothing: float) -> float:
    """Exponentially-weighted update so one outcome can neither crash nor launder a history."""
    return clamp_unit(old * (1.0 - smoothing) + clamp_unit(outcome) * smoothing)


def decay_factor(idle_seconds: float, window: float, time_constant: float) -> float:
    """1 while active within *window*, then exponential decay with *time_constant*."""
    if idle_seconds <= window:
        return 1.0
    return math.exp(-(idle_seconds - window) / time_constant)


def derive_trust(
    reputation: float,
    idle_seconds: float,
    *,
    window: float,
    time_constant: float,
    floor: float,
    baseline: float = NEUTRAL_TRUST,
) -> float:
    """Combine reputation with recency decay.

    Only the part of reputation above the neutral baseline decays: dormant
    trusted devices drift back to neutral, dormant untrusted devices do not
    drift up.
    """
    reputation = clamp_unit(reputation)
    if reputation > baseline:
        reputation = baseline + (reputation - baseline) * decay_factor(idle_seconds, window, time_constant)
    return clamp_unit(max(floor, reputation))


def gap_severity(age_seconds: float | None, *, minor_max: float, moderate_max: float) -> GapSeverity:
    if age_seconds is None:
        return GapSeverity.UNKNOWN
    if age_seconds <= minor_max:
        return GapSeverity.MINOR
    if age_seconds <= moderate_max:
        return GapSeverity.MODERATE
    return GapSeverity.SEVERE


def is_material_change(
    previous: FusedPosition | None,
    current: FusedPosition,
    *,
    distance_m: float,
    confidence_delta: float,
) -> bool:
    """Whether *current* is worth broadcasting over *previous*."""
    if previous is None:
        return True
    if previous.status != current.status:
        return True
    if previous.active_trackers != current.active_trackers:
        return True
    if abs(previous.confidence_level - current.confidence_level) >= confidence_delta:
        return True
    return haversine_m(previous.lat, previous.lng, current.lat, current.lng) >= distance_m
