"""MQTT position broadcaster.

Runs paho-mqtt's threaded network loop; publishing from the event loop only
enqueues the message, so :meth:`MqttPositionBroadcaster.publish` never blocks
on the broker.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from typing import Any, cast

import paho.mqtt.client as mqtt

from busfusion._constants import DEFAULT_MQTT_TOPIC_PREFIX
from busfusion.exceptions import StorageUnavailableError
from busfusion.models.position import PositionUpdate

_logger = logging.getLogger(__name__)


def _default_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv5,
    )


class MqttPositionBroadcaster:
    """Publishes :class:`PositionUpdate` JSON to ``{prefix}/{bus_id}/position``.

    Messages are QoS 1 and retained, so a subscriber joining late gets the
    latest position of every bus immediately.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 1883,
        topic_prefix: str = DEFAULT_MQTT_TOPIC_PREFIX,
        tls: bool = False,
        username: str | None = None,
        password: str | None = None,
        client_id: str | None = None,
        keepalive: int = 60,
        qos: int = 1,
        retain: bool = True,
        client_factory: Callable[[str], mqtt.Client] = _default_client,
    ) -> None:
        self._host = host
        self._port = port
        self._prefix = topic_prefix.rstrip("/")
        self._tls = tls
        self._username = username
        self._password = password
        self._client_id = client_id or f"busfusion-{uuid.uuid4().hex[:12]}"
        self._keepalive = keepalive
        self._qos = qos
        self._retain = retain
        self._client_factory = client_factory
        self._client: mqtt.Client | None = None
        self._connected = False

    @property
    def is_running(self) -> bool:
        return self._client is not None

    @property
    def is_connected(self) -> bool:
        return self._connected

    def topic_for(self, bus_id: str) -> str:
        return f"{self._prefix}/{bus_id}/position"

    def _connect(self) -> None:
        self._disconnect()
        _logger.debug(
            "MQTT broadcaster connecting host=%s port=%s client_id=%s", self._host, self._port, self._client_id
        )

        client = self._client_factory(self._client_id)
        client.enable_logger(_logger)
        if self._username:
            client.username_pw_set(self._username, self._password)
        if self._tls:
            client.tls_set()

        def on_connect(
            _client: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                _logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._connected = True
            _logger.debug("MQTT broadcaster connected reason=%s", reason_code)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            self._connected = False
            if self._client is not None:
                _logger.debug("MQTT broadcaster disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_disconnect = on_disconnect

        try:
            client.connect(self._host, self._port, keepalive=self._keepalive)
        except OSError as exc:
            raise StorageUnavailableError(
                f"MQTT broker {self._host}:{self._port} unreachable: {exc}",
                target=f"{self._host}:{self._port}",
            ) from exc
        client.loop_start()
        self._client = client
        _logger.debug("MQTT network loop started")

    def _disconnect(self) -> None:
        client = self._client
        self._client = None
        self._connected = False
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
            _logger.debug("MQTT network loop stopped")

    async def start(self) -> None:
        """Connect to the broker (blocking socket work runs in a thread)."""
        await asyncio.to_thread(self._connect)

    async def close(self) -> None:
        await asyncio.to_thread(self._disconnect)

    async def publish(self, update: PositionUpdate) -> None:
        client = self._client
        topic = self.topic_for(update.bus_id)
        if client is None:
            raise StorageUnavailableError("MQTT broadcaster is not started", target=topic)

        info = client.publish(topic, update.model_dump_json(), qos=self._qos, retain=self._retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise StorageUnavailableError(f"MQTT publish to {topic} failed: rc={info.rc}", target=topic)
        _logger.debug("Published position bus=%s topic=%s mid=%s", update.bus_id, topic, info.mid)
