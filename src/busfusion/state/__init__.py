"""In-memory state owned by the engine.

Each store owns one kind of record: device trust, tracking sessions,
buffered pings, fused positions and archived trips. Keyed locks serialize
writers per device or per bus.
"""

from busfusion.state.archive import TripArchive
from busfusion.state.locks import KeyedLocks
from busfusion.state.pings import PingBuffer
from busfusion.state.positions import PositionStore
from busfusion.state.sessions import TrackingSessionManager
from busfusion.state.trust import DeviceTrustStore

__all__ = [
    "DeviceTrustStore",
    "KeyedLocks",
    "PingBuffer",
    "PositionStore",
    "TrackingSessionManager",
    "TripArchive",
]
