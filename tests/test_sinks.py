from __future__ import annotations

import json
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import aiohttp
import pytest

from busfusion.config import FusionConfig
from busfusion.exceptions import StorageUnavailableError
from busfusion.models.position import PositionStatus, PositionUpdate
from busfusion.models.trip import CompletionReason, TripRecord, TripSummary
from busfusion.sinks import (
    HttpArchiveSink,
    InMemoryArchiveSink,
    InMemoryBroadcaster,
    MqttPositionBroadcaster,
    archive_sink_from_config,
    broadcaster_from_config,
)

T0 = datetime(2026, 1, 5, 8, 0, tzinfo=UTC)


def _update(bus_id: str = "B1") -> PositionUpdate:
    return PositionUpdate(
        bus_id=bus_id,
        lat=23.78,
        lng=90.40,
        confidence_level=0.8,
        active_trackers=3,
        status=PositionStatus.ACTIVE,
        timestamp=T0,
    )


def _record() -> TripRecord:
    return TripRecord(bus_id="B1", reason=CompletionReason.NO_RECENT_ACTIVITY, completed_at=T0, summary=TripSummary())


# ------------------------------------------------------------------
# In-memory sinks and builders
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_in_memory_archive_is_idempotent() -> None:
    sink = InMemoryArchiveSink()
    record = _record()
    await sink.archive(record)
    await sink.archive(record)
    assert list(sink.records) == [record.record_id]


@pytest.mark.asyncio
async def test_in_memory_broadcaster_filters_by_bus() -> None:
    broadcaster = InMemoryBroadcaster()
    await broadcaster.publish(_update("B1"))
    await broadcaster.publish(_update("B2"))
    assert [u.bus_id for u in broadcaster.for_bus("B2")] == ["B2"]


def test_builders_follow_config() -> None:
    assert isinstance(broadcaster_from_config(FusionConfig()), InMemoryBroadcaster)
    assert isinstance(archive_sink_from_config(FusionConfig()), InMemoryArchiveSink)

    mqtt = broadcaster_from_config(FusionConfig(mqtt_host="broker.local", mqtt_topic_prefix="city/bus/"))
    assert isinstance(mqtt, MqttPositionBroadcaster)
    assert mqtt.topic_for("B7") == "city/bus/B7/position"
    assert not mqtt.is_running

    http = archive_sink_from_config(FusionConfig(archive_url="https://archive.example/trips"))
    assert isinstance(http, HttpArchiveSink)


# ------------------------------------------------------------------
# MQTT
# ------------------------------------------------------------------


class _FakeMqttClient:
    def __init__(self, client_id: str, *, rc: int = 0, connect_error: Exception | None = None) -> None:
        self.client_id = client_id
        self.rc = rc
        self.connect_error = connect_error
        self.published: list[tuple[str, str, int, bool]] = []
        self.credentials: tuple[str, str | None] | None = None
        self.tls = False
        self.loop_running = False
        self.on_connect: Any = None
        self.on_disconnect: Any = None

    def enable_logger(self, logger: Any) -> None:
        return None

    def username_pw_set(self, username: str, password: str | None) -> None:
        self.credentials = (username, password)

    def tls_set(self) -> None:
        self.tls = True

    def connect(self, host: str, port: int, keepalive: int) -> None:
        if self.connect_error is not None:
            raise self.connect_error

    def loop_start(self) -> None:
        self.loop_running = True

    def loop_stop(self) -> None:
        self.loop_running = False

    def disconnect(self) -> None:
        return None

    def publish(self, topic: str, payload: str, qos: int, retain: bool) -> SimpleNamespace:
        self.published.append((topic, payload, qos, retain))
        return SimpleNamespace(rc=self.rc, mid=len(self.published))


def _broadcaster(client: _FakeMqttClient, **kwargs: Any) -> MqttPositionBroadcaster:
    return MqttPositionBroadcaster(
        host="broker.local",
        client_factory=lambda _cid: client,  # type: ignore[arg-type,return-value]
        **kwargs,
    )


@pytest.mark.asyncio
async def test_mqtt_publishes_retained_json() -> None:
    client = _FakeMqttClient("fake")
    broadcaster = _broadcaster(client, username="svc", password="pw", tls=True)

    await broadcaster.start()
    assert broadcaster.is_running
    assert client.loop_running
    assert client.credentials == ("svc", "pw")
    assert client.tls

    await broadcaster.publish(_update())
    [(topic, payload, qos, retain)] = client.published
    assert topic == "busfusion/bus/B1/position"
    assert qos == 1
    assert retain is True
    body = json.loads(payload)
    assert body["bus_id"] == "B1"
    assert body["status"] == "active"

    await broadcaster.close()
    assert not broadcaster.is_running
    assert not client.loop_running


@pytest.mark.asyncio
async def test_mqtt_publish_before_start_fails() -> None:
    broadcaster = _broadcaster(_FakeMqttClient("fake"))
    with pytest.raises(StorageUnavailableError):
        await broadcaster.publish(_update())


@pytest.mark.asyncio
async def test_mqtt_publish_error_code_raises() -> None:
    broadcaster = _broadcaster(_FakeMqttClient("fake", rc=4))
    await broadcaster.start()
    with pytest.raises(StorageUnavailableError, match="rc=4"):
        await broadcaster.publish(_update())


@pytest.mark.asyncio
async def test_mqtt_unreachable_broker() -> None:
    broadcaster = _broadcaster(_FakeMqttClient("fake", connect_error=ConnectionRefusedError("refused")))
    with pytest.raises(StorageUnavailableError) as exc_info:
        await broadcaster.start()
    assert exc_info.value.target == "broker.local:1883"
    assert not broadcaster.is_running


# ------------------------------------------------------------------
# HTTP
# ------------------------------------------------------------------


class _FakeResponse:
    def __init__(self, status: int) -> None:
        self.status = status

    async def text(self) -> str:
        return f"status {self.status}"

    async def __aenter__(self) -> _FakeResponse:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None


class _FakeSession:
    def __init__(self, *outcomes: int | Exception) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def post(self, url: str, *, data: str, headers: dict[str, str], timeout: Any) -> _FakeResponse:
        self.calls.append({"url": url, "data": data, "headers": headers})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return _FakeResponse(outcome)

    async def close(self) -> None:
        self.closed = True


def _http(session: _FakeSession) -> HttpArchiveSink:
    return HttpArchiveSink("https://archive.example/trips", session=session, backoff=0.0)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_http_retries_server_errors() -> None:
    session = _FakeSession(503, 200)
    sink = _http(session)
    record = _record()

    await sink.start()
    await sink.archive(record)

    assert len(session.calls) == 2
    headers = session.calls[0]["headers"]
    assert headers["idempotency-key"] == record.record_id
    assert json.loads(session.calls[0]["data"])["record_id"] == record.record_id


@pytest.mark.asyncio
async def test_http_client_error_is_not_retried() -> None:
    session = _FakeSession(400, 200)
    sink = _http(session)
    await sink.start()

    with pytest.raises(StorageUnavailableError) as exc_info:
        await sink.archive(_record())

    assert exc_info.value.status_code == 400
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_http_connection_errors_exhaust_attempts() -> None:
    session = _FakeSession(*(aiohttp.ClientConnectionError("reset") for _ in range(3)))
    sink = _http(session)
    await sink.start()

    with pytest.raises(StorageUnavailableError) as exc_info:
        await sink.archive(_record())

    assert exc_info.value.status_code is None
    assert len(session.calls) == 3


@pytest.mark.asyncio
async def test_http_external_session_is_left_open() -> None:
    session = _FakeSession()
    sink = _http(session)
    await sink.start()
    await sink.close()
    assert not session.closed

    with pytest.raises(StorageUnavailableError):
        await sink.archive(_record())
