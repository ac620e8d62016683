"""MQTT broker transport.

paho-mqtt runs its network loop on its own thread; every callback is
marshalled onto the asyncio loop with ``call_soon_threadsafe`` so the
channel and the registry only ever run on the loop thread.
"""

from __future__ import annotations

import asyncio
import logging
import math
import secrets
from typing import Any, cast

import paho.mqtt.client as mqtt

from pylocsync._constants import MQTT_DEFAULT_PORT
from pylocsync._transport import FailureHandler, MessageHandler
from pylocsync.config import SyncConfig
from pylocsync.exceptions import LocSyncTransportError

_logger = logging.getLogger(__name__)


def parse_broker(raw_broker: str) -> tuple[str, int]:
    value = raw_broker.strip()
    if not value:
        raise ValueError("Broker value is empty")

    if "://" in value:
        value = value.split("://", 1)[1]
    if "/" in value:
        value = value.split("/", 1)[0]

    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        return host, int(maybe_port)
    return value, MQTT_DEFAULT_PORT


def mqtt_topic(destination: str) -> str:
    """``/topic/locations`` -> ``topic/locations``."""
    return destination.lstrip("/")


def _build_client_id() -> str:
    return f"locsync_{secrets.token_hex(6)}"


class MqttTransport:
    """One MQTT connection attempt, driven from the event loop."""

    def __init__(self, config: SyncConfig, *, client_id: str | None = None) -> None:
        self._config = config
        self._client_id = client_id or _build_client_id()
        self._url = config.broker_url
        self._client: mqtt.Client | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connected: asyncio.Future[None] | None = None
        self._on_failure: FailureHandler | None = None
        self._handlers: dict[str, MessageHandler] = {}
        self._failed = False
        self._closing = False

    @property
    def keepalive(self) -> int:
        # MQTT keepalive is whole seconds; 0 disables it.
        if self._config.heartbeat_outgoing <= 0:
            return 0
        return max(1, math.ceil(self._config.heartbeat_outgoing))

    async def open(self, *, on_failure: FailureHandler) -> None:
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._on_failure = on_failure
        self._connected = loop.create_future()
        try:
            host, port = parse_broker(self._url)
        except ValueError as exc:
            raise LocSyncTransportError(str(exc), url=self._url) from exc

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            protocol=mqtt.MQTTv311,
        )
        if self._config.frame_trace_enabled:
            client.enable_logger(_logger)

        def on_connect(
            _c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            loop.call_soon_threadsafe(self._connect_result, int(reason_code.value), str(reason_code))

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            loop.call_soon_threadsafe(self._deliver, msg.topic, bytes(msg.payload))

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            loop.call_soon_threadsafe(self._lost, str(reason_code))

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect
        self._client = client

        _logger.debug("MQTT connect host=%s port=%s client_id=%s", host, port, self._client_id)
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, lambda: client.connect(host, port, keepalive=self.keepalive)),
                self._config.connect_timeout,
            )
            client.loop_start()
            await asyncio.wait_for(self._connected, self._config.connect_timeout)
        except TimeoutError as exc:
            await self.close()
            raise LocSyncTransportError(f"MQTT connect timed out after {self._config.connect_timeout}s", url=self._url) from exc
        except OSError as exc:
            await self.close()
            raise LocSyncTransportError(f"MQTT connect to {host}:{port} failed: {exc}", url=self._url) from exc
        except LocSyncTransportError:
            await self.close()
            raise

    def _connect_result(self, code: int, reason: str) -> None:
        fut = self._connected
        if fut is None or fut.done():
            return
        if code != 0:
            fut.set_exception(LocSyncTransportError(f"MQTT connect refused: {reason}", url=self._url))
            return
        _logger.debug("MQTT connected reason=%s", reason)
        fut.set_result(None)

    def _deliver(self, topic: str, payload: bytes) -> None:
        if self._closing:
            return
        handler = self._handlers.get(topic)
        if handler is None:
            _logger.debug("MQTT message on unsubscribed topic=%s", topic)
            return
        handler(payload.decode("utf-8", errors="replace"))

    def _lost(self, reason: str) -> None:
        exc = LocSyncTransportError(f"MQTT disconnected: {reason}", url=self._url)
        fut = self._connected
        if fut is not None and not fut.done():
            fut.set_exception(exc)
            return
        if self._failed or self._closing:
            return
        self._failed = True
        _logger.debug("MQTT transport failed: %s", reason)
        if self._on_failure is not None:
            self._on_failure(exc)

    def _require_client(self) -> mqtt.Client:
        if self._client is None:
            raise LocSyncTransportError("MQTT client is not open", url=self._url)
        return self._client

    async def subscribe(self, destination: str, handler: MessageHandler) -> None:
        client = self._require_client()
        topic = mqtt_topic(destination)
        self._handlers[topic] = handler
        result, _mid = client.subscribe(topic, qos=0)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise LocSyncTransportError(f"MQTT subscribe to {topic} failed: rc={result}", url=self._url)
        _logger.debug("MQTT subscribed topic=%s", topic)

    async def send(self, destination: str, body: str) -> None:
        client = self._require_client()
        info = client.publish(mqtt_topic(destination), body.encode("utf-8"), qos=0)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise LocSyncTransportError(f"MQTT publish failed: rc={info.rc}", url=self._url)

    async def close(self) -> None:
        """Disconnect and stop the network thread; safe to call repeatedly."""
        self._closing = True
        self._handlers.clear()
        client = self._client
        self._client = None
        if client is None:
            return
        loop = self._loop or asyncio.get_running_loop()
        try:
            client.disconnect()
        finally:
            await loop.run_in_executor(None, client.loop_stop)
            _logger.debug("MQTT network loop stopped")
