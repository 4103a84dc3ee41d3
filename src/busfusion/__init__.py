"""busfusion: crowd-sourced bus position fusion."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("busfusion")
except PackageNotFoundError:
    __version__ = "0+local"
from busfusion.config import FusionConfig, GeoBounds
from busfusion.engine import FusionEngine
from busfusion.exceptions import (
    BusFusionConfigError,
    BusFusionError,
    MalformedPingError,
    StorageUnavailableError,
    TrustStoreCorruptionError,
)
from busfusion.models import (
    BatchResult,
    CompletionReason,
    CompletionResult,
    DeviceRecord,
    FallbackView,
    FusedPosition,
    GapSeverity,
    PositionStatus,
    PositionUpdate,
    RawPing,
    SessionEndReason,
    Stop,
    SubmitResult,
    TrackingSession,
    TripPlan,
    TripProgress,
    TripRecord,
    ValidationFlag,
    ValidationResult,
)
from busfusion.sinks import (
    ArchiveSink,
    HttpArchiveSink,
    InMemoryArchiveSink,
    InMemoryBroadcaster,
    MqttPositionBroadcaster,
    PositionBroadcaster,
)

__all__ = [
    "ArchiveSink",
    "BatchResult",
    "BusFusionConfigError",
    "BusFusionError",
    "CompletionReason",
    "CompletionResult",
    "DeviceRecord",
    "FallbackView",
    "FusedPosition",
    "FusionConfig",
    "FusionEngine",
    "GapSeverity",
    "GeoBounds",
    "HttpArchiveSink",
    "InMemoryArchiveSink",
    "InMemoryBroadcaster",
    "MalformedPingError",
    "MqttPositionBroadcaster",
    "PositionBroadcaster",
    "PositionStatus",
    "PositionUpdate",
    "RawPing",
    "SessionEndReason",
    "Stop",
    "StorageUnavailableError",
    "SubmitResult",
    "TrackingSession",
    "TripPlan",
    "TripProgress",
    "TripRecord",
    "TrustStoreCorruptionError",
    "ValidationFlag",
    "ValidationResult",
    "__version__",
]
