"""Downstream collaborators: position broadcasting and trip archival.

The engine only depends on the two protocols below. Concrete sinks:

- :class:`InMemoryBroadcaster` / :class:`InMemoryArchiveSink` for tests and
  embedding,
- :class:`~busfusion.sinks.mqtt.MqttPositionBroadcaster` (paho-mqtt),
- :class:`~busfusion.sinks.http.HttpArchiveSink` (aiohttp).
"""

from __future__ import annotations

from typing import Protocol

import aiohttp

from busfusion.config import FusionConfig
from busfusion.models.position import PositionUpdate
from busfusion.models.trip import TripRecord
from busfusion.sinks.http import HttpArchiveSink
from busfusion.sinks.mqtt import MqttPositionBroadcaster


class PositionBroadcaster(Protocol):
    """Receives materially changed bus positions.

    Implementations raise :class:`~busfusion.exceptions.StorageUnavailableError`
    when the update could not be delivered.
    """

    async def start(self) -> None: ...

    async def publish(self, update: PositionUpdate) -> None: ...

    async def close(self) -> None: ...


class ArchiveSink(Protocol):
    """Receives each completed trip exactly once per successful call.

    Implementations must be idempotent on ``record.record_id``: the engine
    may retry a record after a failure.
    """

    async def start(self) -> None: ...

    async def archive(self, record: TripRecord) -> None: ...

    async def close(self) -> None: ...


class InMemoryBroadcaster:
    """Keeps every published update, newest last."""

    def __init__(self) -> None:
        self.updates: list[PositionUpdate] = []

    async def start(self) -> None:
        return None

    async def publish(self, update: PositionUpdate) -> None:
        self.updates.append(update)

    async def close(self) -> None:
        return None

    def for_bus(self, bus_id: str) -> list[PositionUpdate]:
        return [u for u in self.updates if u.bus_id == bus_id]


class InMemoryArchiveSink:
    """Keeps archived records keyed by ``record_id``; re-archiving is a no-op."""

    def __init__(self) -> None:
        self.records: dict[str, TripRecord] = {}

    async def start(self) -> None:
        return None

    async def archive(self, record: TripRecord) -> None:
        self.records.setdefault(record.record_id, record)

    async def close(self) -> None:
        return None


def broadcaster_from_config(config: FusionConfig) -> PositionBroadcaster:
    """MQTT broadcaster when a broker is configured, else in-memory."""
    if config.mqtt_host:
        return MqttPositionBroadcaster(
            host=config.mqtt_host,
            port=config.mqtt_port,
            topic_prefix=config.mqtt_topic_prefix,
            tls=config.mqtt_tls,
        )
    return InMemoryBroadcaster()


def archive_sink_from_config(
    config: FusionConfig,
    *,
    session: aiohttp.ClientSession | None = None,
) -> ArchiveSink:
    """HTTP archive sink when an endpoint is configured, else in-memory."""
    if config.archive_url:
        return HttpArchiveSink(config.archive_url, session=session, timeout=config.archive_timeout)
    return InMemoryArchiveSink()


__all__ = [
    "ArchiveSink",
    "HttpArchiveSink",
    "InMemoryArchiveSink",
    "InMemoryBroadcaster",
    "MqttPositionBroadcaster",
    "PositionBroadcaster",
    "archive_sink_from_config",
    "broadcaster_from_config",
]
