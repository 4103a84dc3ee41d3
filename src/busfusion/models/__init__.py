"""Domain models for busfusion."""

from busfusion.models._base import FusionBaseModel, UtcTimestamp, clamp_unit, ensure_utc, parse_timestamp, utcnow
from busfusion.models.device import DeviceRecord
from busfusion.models.ping import (
    HARD_REJECT_FLAGS,
    BatchResult,
    RawPing,
    SubmitResult,
    ValidatedPing,
    ValidationFlag,
    ValidationResult,
)
from busfusion.models.position import (
    FallbackSource,
    FallbackView,
    FusedPosition,
    GapSeverity,
    PositionStatus,
    PositionUpdate,
)
from busfusion.models.route import RouteContext, Stop, TripPlan
from busfusion.models.session import SessionEndReason, SessionState, TrackingSession
from busfusion.models.trip import CompletionReason, CompletionResult, TripProgress, TripRecord, TripSummary

__all__ = [
    "HARD_REJECT_FLAGS",
    "BatchResult",
    "CompletionReason",
    "CompletionResult",
    "DeviceRecord",
    "FallbackSource",
    "FallbackView",
    "FusedPosition",
    "FusionBaseModel",
    "GapSeverity",
    "PositionStatus",
    "PositionUpdate",
    "RawPing",
    "RouteContext",
    "SessionEndReason",
    "SessionState",
    "Stop",
    "SubmitResult",
    "TrackingSession",
    "TripPlan",
    "TripProgress",
    "TripRecord",
    "TripSummary",
    "UtcTimestamp",
    "ValidatedPing",
    "ValidationFlag",
    "ValidationResult",
    "clamp_unit",
    "ensure_utc",
    "parse_timestamp",
    "utcnow",
]
