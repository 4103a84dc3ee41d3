from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from busfusion.config import FusionConfig
from busfusion.fallback import FallbackResolver
from busfusion.models.position import FallbackSource, FusedPosition, GapSeverity, PositionStatus
from busfusion.models.trip import CompletionReason, TripRecord, TripSummary
from busfusion.state.archive import TripArchive
from busfusion.state.positions import PositionStore

T0 = datetime(2026, 1, 5, 8, 0, tzinfo=UTC)


def _position(at: datetime, *, lat: float = 23.78, lng: float = 90.40) -> FusedPosition:
    return FusedPosition(
        bus_id="B1",
        lat=lat,
        lng=lng,
        confidence_level=0.7,
        active_trackers=2,
        trusted_trackers=1,
        average_trust_score=0.7,
        movement_consistency=0.9,
        status=PositionStatus.ACTIVE,
        last_updated=at,
    )


def _resolver() -> tuple[FallbackResolver, PositionStore, TripArchive]:
    config = FusionConfig()
    positions = PositionStore(config)
    archive = TripArchive()
    return FallbackResolver(config, positions=positions, archive=archive, clock=lambda: T0), positions, archive


def test_unknown_bus_has_no_coordinates() -> None:
    resolver, _, _ = _resolver()
    view = resolver.resolve("B1")

    assert view.status == PositionStatus.UNKNOWN
    assert view.gap_severity == GapSeverity.UNKNOWN
    assert view.source == FallbackSource.NONE
    assert view.lat is None and view.lng is None
    assert view.message
    assert not view.has_live_data


@pytest.mark.parametrize(
    ("age", "severity"),
    [
        (timedelta(minutes=10), GapSeverity.MINOR),
        (timedelta(minutes=45), GapSeverity.MODERATE),
        (timedelta(hours=2), GapSeverity.SEVERE),
    ],
)
def test_gap_severity_follows_age(age: timedelta, severity: GapSeverity) -> None:
    resolver, positions, _ = _resolver()
    positions.update(_position(T0 - age))

    view = resolver.resolve("B1")

    assert view.status == PositionStatus.STALE
    assert view.gap_severity == severity
    assert view.age_seconds == pytest.approx(age.total_seconds())
    assert view.source == FallbackSource.FUSED_POSITION
    assert (view.lat, view.lng) == (23.78, 90.40)


def test_newer_trip_record_beats_older_position() -> None:
    resolver, positions, archive = _resolver()
    positions.update(_position(T0 - timedelta(hours=3)))
    archive.add(
        TripRecord(
            bus_id="B1",
            reason=CompletionReason.REACHED_TERMINUS,
            completed_at=T0 - timedelta(minutes=20),
            summary=TripSummary(),
            final_position=_position(T0 - timedelta(minutes=25), lat=23.74, lng=90.39),
        )
    )

    view = resolver.resolve("B1")

    assert view.source == FallbackSource.TRIP_RECORD
    assert (view.lat, view.lng) == (23.74, 90.39)
    assert view.last_seen_at == T0 - timedelta(minutes=25)
    assert view.gap_severity == GapSeverity.MINOR


def test_trip_record_without_location_is_ignored() -> None:
    resolver, _, archive = _resolver()
    archive.add(
        TripRecord(
            bus_id="B1",
            reason=CompletionReason.SCHEDULE_ELAPSED,
            completed_at=T0,
            summary=TripSummary(),
        )
    )
    assert resolver.resolve("B1").source == FallbackSource.NONE
