from __future__ import annotations

import math
from datetime import UTC, datetime

import pytest

from busfusion.geo import offset_m
from busfusion.models.position import FusedPosition, GapSeverity, PositionStatus
from busfusion.state.policy import (
    decay_factor,
    derive_trust,
    gap_severity,
    is_material_change,
    recency_weight,
    update_reputation,
)

_DECAY = {"window": 86_400.0, "time_constant": 259_200.0, "floor": 0.1}


def _position(lat: float = 23.7808, lng: float = 90.4, **overrides: object) -> FusedPosition:
    fields: dict[str, object] = {
        "bus_id": "B1",
        "lat": lat,
        "lng": lng,
        "confidence_level": 0.8,
        "active_trackers": 3,
        "trusted_trackers": 1,
        "average_trust_score": 0.7,
        "movement_consistency": 0.9,
        "status": PositionStatus.ACTIVE,
        "last_updated": datetime(2026, 1, 5, 8, 0, tzinfo=UTC),
    }
    fields.update(overrides)
    return FusedPosition(**fields)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("age", "expected"),
    [(-5.0, 1.0), (0.0, 1.0), (60.0, 0.5), (90.0, 0.25), (120.0, 0.0), (500.0, 0.0)],
)
def test_recency_weight_is_linear(age: float, expected: float) -> None:
    assert recency_weight(age, 120.0) == pytest.approx(expected)


def test_update_reputation_is_an_ewma() -> None:
    assert update_reputation(0.5, 1.0, 0.1) == pytest.approx(0.55)
    assert update_reputation(0.5, 0.0, 0.1) == pytest.approx(0.45)


def test_update_reputation_clamps_inputs() -> None:
    assert update_reputation(2.0, 5.0, 0.1) == 1.0
    assert update_reputation(-1.0, -3.0, 0.1) == 0.0


def test_decay_factor_is_flat_inside_window() -> None:
    assert decay_factor(3600.0, 86_400.0, 259_200.0) == 1.0
    assert decay_factor(86_400.0 + 259_200.0, 86_400.0, 259_200.0) == pytest.approx(math.exp(-1))


class TestDeriveTrust:
    def test_active_device_trust_equals_reputation(self) -> None:
        assert derive_trust(0.9, 0.0, **_DECAY) == pytest.approx(0.9)

    def test_idle_trusted_device_decays_toward_neutral(self) -> None:
        trust = derive_trust(0.9, 86_400.0 + 259_200.0, **_DECAY)
        assert trust == pytest.approx(0.5 + 0.4 * math.exp(-1))

    def test_idle_untrusted_device_does_not_drift_up(self) -> None:
        assert derive_trust(0.2, 365 * 86_400.0, **_DECAY) == pytest.approx(0.2)

    def test_never_below_floor(self) -> None:
        assert derive_trust(0.02, 0.0, **_DECAY) == pytest.approx(0.1)

    def test_long_idle_converges_to_baseline(self) -> None:
        assert derive_trust(1.0, 365 * 86_400.0, **_DECAY) == pytest.approx(0.5, abs=1e-6)


@pytest.mark.parametrize(
    ("age", "expected"),
    [
        (None, GapSeverity.UNKNOWN),
        (0.0, GapSeverity.MINOR),
        (1800.0, GapSeverity.MINOR),
        (1801.0, GapSeverity.MODERATE),
        (3600.0, GapSeverity.MODERATE),
        (3601.0, GapSeverity.SEVERE),
    ],
)
def test_gap_severity_thresholds(age: float | None, expected: GapSeverity) -> None:
    assert gap_severity(age, minor_max=1800.0, moderate_max=3600.0) == expected


class TestMaterialChange:
    def _changed(self, previous: FusedPosition | None, current: FusedPosition) -> bool:
        return is_material_change(previous, current, distance_m=5.0, confidence_delta=0.05)

    def test_first_position_is_material(self) -> None:
        assert self._changed(None, _position())

    def test_identical_position_is_not_material(self) -> None:
        assert not self._changed(_position(), _position())

    def test_small_confidence_wobble_is_not_material(self) -> None:
        assert not self._changed(_position(), _position(confidence_level=0.83))

    def test_confidence_jump_is_material(self) -> None:
        assert self._changed(_position(), _position(confidence_level=0.7))

    def test_movement_beyond_distance_is_material(self) -> None:
        lat, lng = offset_m(23.7808, 90.4, 10.0, 0.0)
        assert self._changed(_position(), _position(lat, lng))

    def test_movement_within_distance_is_not_material(self) -> None:
        lat, lng = offset_m(23.7808, 90.4, 2.0, 0.0)
        assert not self._changed(_position(), _position(lat, lng))

    def test_status_or_tracker_change_is_material(self) -> None:
        assert self._changed(_position(), _position(status=PositionStatus.DEGRADED))
        assert self._changed(_position(), _position(active_trackers=4))
