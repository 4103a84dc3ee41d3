"""Tests for model invariants and field coercion."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from busfusion.models import (
    CompletionReason,
    DeviceRecord,
    FallbackSource,
    FallbackView,
    FusedPosition,
    PositionStatus,
    PositionUpdate,
    RawPing,
    SessionState,
    Stop,
    TrackingSession,
    TripPlan,
    TripRecord,
    TripSummary,
    ValidatedPing,
    ValidationResult,
)

T0 = datetime(2026, 1, 5, 8, 0, tzinfo=UTC)


def _ping(lat: float, lng: float, at: datetime) -> RawPing:
    return RawPing(
        bus_id="B1", device_id="dev-a", lat=lat, lng=lng, accuracy=5, client_timestamp=at, server_timestamp=at
    )


def _position(**overrides: object) -> FusedPosition:
    fields: dict[str, object] = {
        "bus_id": "B1",
        "lat": 23.78,
        "lng": 90.40,
        "confidence_level": 0.8,
        "active_trackers": 2,
        "trusted_trackers": 1,
        "average_trust_score": 0.7,
        "movement_consistency": 0.9,
        "status": PositionStatus.ACTIVE,
        "last_updated": T0,
    }
    fields.update(overrides)
    return FusedPosition(**fields)  # type: ignore[arg-type]


# ------------------------------------------------------------------
# Timestamps
# ------------------------------------------------------------------


class TestTimestamps:
    def test_naive_datetime_is_utc(self) -> None:
        ping = _ping(23.78, 90.40, datetime(2026, 1, 5, 8, 0))
        assert ping.client_timestamp == T0
        assert ping.client_timestamp.tzinfo is not None

    def test_aware_datetime_is_converted(self) -> None:
        dhaka = timezone(timedelta(hours=6))
        ping = _ping(23.78, 90.40, datetime(2026, 1, 5, 14, 0, tzinfo=dhaka))
        assert ping.client_timestamp == T0
        assert ping.client_timestamp.utcoffset() == timedelta(0)

    def test_epoch_seconds_and_milliseconds_agree(self) -> None:
        seconds = RawPing.model_validate(
            {"bus_id": "B1", "device_id": "d", "lat": 23.7, "lng": 90.4, "accuracy": 1, "timestamp": 1_767_600_000}
        )
        millis = RawPing.model_validate(
            {"bus_id": "B1", "device_id": "d", "lat": 23.7, "lng": 90.4, "accuracy": 1, "timestamp": 1_767_600_000_000}
        )
        assert seconds.client_timestamp == millis.client_timestamp

    def test_non_positive_epoch_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RawPing.model_validate({"bus_id": "B1", "device_id": "d", "lat": 1, "lng": 1, "accuracy": 1, "time": 0})

    @pytest.mark.parametrize("value", [1e300, 10**400, "inf", "-inf", float("inf")])
    def test_unrepresentable_epoch_is_a_validation_error(self, value: object) -> None:
        with pytest.raises(ValidationError):
            RawPing.model_validate({"bus_id": "B1", "device_id": "d", "lat": 1, "lng": 1, "accuracy": 1, "time": value})



# ------------------------------------------------------------------
# Records
# ------------------------------------------------------------------


class TestInvariants:
    def test_models_are_frozen(self) -> None:
        ping = _ping(23.78, 90.40, T0)
        with pytest.raises(ValidationError):
            ping.lat = 0.0  # type: ignore[misc]

    def test_fused_position_trusted_cannot_exceed_active(self) -> None:
        with pytest.raises(ValidationError):
            _position(active_trackers=1, trusted_trackers=2)

    def test_session_valid_cannot_exceed_contributed(self) -> None:
        with pytest.raises(ValidationError):
            TrackingSession(device_id="d", bus_id="B1", started_at=T0, locations_contributed=1, valid_locations=2)

    def test_ended_session_requires_ended_at(self) -> None:
        with pytest.raises(ValidationError):
            TrackingSession(device_id="d", bus_id="B1", started_at=T0, state=SessionState.ENDED)

    def test_device_counters(self) -> None:
        with pytest.raises(ValidationError):
            DeviceRecord(device_id="d", total_contributions=1, accurate_contributions=2)
        record = DeviceRecord(device_id="d", total_contributions=4, accurate_contributions=3)
        assert record.accuracy_ratio == 0.75
        assert DeviceRecord(device_id="d").accuracy_ratio is None

    def test_device_record_tolerates_out_of_range_scores(self) -> None:
        record = DeviceRecord(device_id="d", trust_score=1.5, reputation_score=-0.2)
        assert record.trust_score == 1.5

    def test_fallback_without_source_cannot_carry_coordinates(self) -> None:
        with pytest.raises(ValidationError):
            FallbackView(bus_id="B1", lat=23.78, lng=90.40, source=FallbackSource.NONE)

    def test_trip_plan_window(self) -> None:
        with pytest.raises(ValidationError):
            TripPlan(bus_id="B1", scheduled_start=T0, scheduled_end=T0 - timedelta(minutes=1))

    def test_trip_plan_origin_and_terminus(self) -> None:
        stops = (Stop(name="A", lat=23.75, lng=90.39), Stop(name="B", lat=23.74, lng=90.40))
        plan = TripPlan(bus_id="B1", stops=stops, scheduled_start=T0, scheduled_end=T0 + timedelta(hours=1))
        assert plan.origin is not None and plan.origin.name == "A"
        assert plan.terminus is not None and plan.terminus.name == "B"
        assert plan.route_context().stops == stops
        assert TripPlan(bus_id="B1", scheduled_start=T0, scheduled_end=T0).route_context().is_empty


class TestTripRecord:
    def _record(self, pings: tuple[ValidatedPing, ...], final: FusedPosition | None = None) -> TripRecord:
        return TripRecord(
            bus_id="B1",
            reason=CompletionReason.NO_RECENT_ACTIVITY,
            completed_at=T0,
            pings=pings,
            summary=TripSummary(),
            final_position=final,
        )

    def test_last_known_point_prefers_final_position(self) -> None:
        record = self._record((), _position(lat=23.70, lng=90.41))
        assert record.last_known_point() == (23.70, 90.41, T0)

    def test_last_known_point_uses_last_valid_ping(self) -> None:
        good = ValidatedPing(
            ping=_ping(23.71, 90.42, T0 - timedelta(minutes=2)),
            result=ValidationResult(is_valid=True, confidence_weight=1.0),
        )
        bad = ValidatedPing(ping=_ping(23.72, 90.43, T0), result=ValidationResult.rejected())
        record = self._record((good, bad))
        assert record.last_known_point() == (23.71, 90.42, T0 - timedelta(minutes=2))

    def test_no_point_when_nothing_valid(self) -> None:
        assert self._record(()).last_known_point() is None


def test_position_update_from_position() -> None:
    update = PositionUpdate.from_position(_position())
    assert update.bus_id == "B1"
    assert update.timestamp == T0
    assert update.active_trackers == 2
    assert '"status":"active"' in update.model_dump_json()
