"""Broker transports: STOMP over an aiohttp websocket."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from typing import Protocol
from urllib.parse import urlsplit

import aiohttp

from pylocsync._constants import JSON_CONTENT_TYPE, STOMP_ACCEPT_VERSION, STOMP_SUBPROTOCOLS
from pylocsync._stomp import HEARTBEAT, StompFrame, StompParser, build_frame, negotiate_heartbeat
from pylocsync.config import SyncConfig
from pylocsync.exceptions import LocSyncProtocolError, LocSyncTransportError

_logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], None]
FailureHandler = Callable[[BaseException], None]


class BrokerTransport(Protocol):
    """Structural transport interface used by the sync channel.

    One instance covers one connection attempt. ``on_failure`` is called
    at most once, on the event loop, when an open connection is lost.
    Having a protocol here makes it easy to pass test doubles.
    """

    async def open(self, *, on_failure: FailureHandler) -> None:
        ...

    async def subscribe(self, destination: str, handler: MessageHandler) -> None:
        ...

    async def send(self, destination: str, body: str) -> None:
        ...

    async def close(self) -> None:
        ...


TransportFactory = Callable[[], BrokerTransport]


class StompWebSocketTransport:
    """STOMP client over a websocket, with heart-beat send and liveness monitoring."""

    def __init__(
        self,
        config: SyncConfig,
        http_session: aiohttp.ClientSession,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._http = http_session
        self._clock = clock
        self._url = config.broker_url
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._parser = StompParser()
        self._on_failure: FailureHandler | None = None
        self._handlers: dict[str, MessageHandler] = {}
        self._next_subscription = 0
        self._tasks: list[asyncio.Task[None]] = []
        self._last_received = 0.0
        self._failed = False
        self._closing = False
        self.send_interval_ms = 0
        self.expect_interval_ms = 0

    async def open(self, *, on_failure: FailureHandler) -> None:
        self._on_failure = on_failure
        try:
            await asyncio.wait_for(self._handshake(), self._config.connect_timeout)
        except TimeoutError as exc:
            await self._abort()
            raise LocSyncTransportError(f"STOMP handshake timed out after {self._config.connect_timeout}s", url=self._url) from exc
        except aiohttp.ClientError as exc:
            await self._abort()
            raise LocSyncTransportError(f"Websocket connect to {self._url} failed: {exc}", url=self._url) from exc
        except LocSyncTransportError:
            await self._abort()
            raise

        loop = asyncio.get_running_loop()
        self._tasks.append(loop.create_task(self._read_loop()))
        if self.send_interval_ms:
            self._tasks.append(loop.create_task(self._send_heartbeats(self.send_interval_ms / 1000.0)))
        if self.expect_interval_ms:
            self._tasks.append(loop.create_task(self._watch_heartbeats(self.expect_interval_ms / 1000.0)))

    async def _handshake(self) -> None:
        _logger.debug("Websocket connect url=%s", self._url)
        self._ws = await self._http.ws_connect(self._url, protocols=STOMP_SUBPROTOCOLS, autoping=True)
        host = urlsplit(self._url).hostname or "localhost"
        await self._send_frame(
            "CONNECT",
            {
                "accept-version": STOMP_ACCEPT_VERSION,
                "host": host,
                "heart-beat": f"{self._config.heartbeat_outgoing_ms},{self._config.heartbeat_incoming_ms}",
            },
        )
        while True:
            for frame in await self._receive_frames():
                if frame.command == "CONNECTED":
                    self.send_interval_ms, self.expect_interval_ms = negotiate_heartbeat(
                        self._config.heartbeat_outgoing_ms,
                        self._config.heartbeat_incoming_ms,
                        frame.headers.get("heart-beat"),
                    )
                    _logger.debug(
                        "STOMP connected version=%s heart-beat send=%dms expect=%dms",
                        frame.headers.get("version", "1.0"),
                        self.send_interval_ms,
                        self.expect_interval_ms,
                    )
                    self._last_received = self._clock()
                    return
                if frame.command == "ERROR":
                    raise LocSyncProtocolError(_error_message(frame), url=self._url)

    async def _receive_frames(self) -> list[StompFrame]:
        ws = self._require_ws()
        msg = await ws.receive()
        if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
            return self._decode(msg.data)
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise LocSyncTransportError(f"Websocket error: {ws.exception()}", url=self._url)
        raise LocSyncTransportError(f"Websocket closed during handshake ({msg.type.name})", url=self._url)

    def _decode(self, data: str | bytes) -> list[StompFrame]:
        frames = self._parser.feed(data)
        if self._config.frame_trace_enabled:
            for frame in frames:
                _logger.debug("<<< %s %s %r", frame.command, frame.headers, frame.body[:256])
        return frames

    async def _read_loop(self) -> None:
        ws = self._require_ws()
        try:
            async for msg in ws:
                self._last_received = self._clock()
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    for frame in self._decode(msg.data):
                        self._dispatch(frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise LocSyncTransportError(f"Websocket error: {ws.exception()}", url=self._url)
        except LocSyncTransportError as exc:
            self._fail(exc)
            return
        self._fail(LocSyncTransportError(f"Websocket closed (code={ws.close_code})", url=self._url))

    def _dispatch(self, frame: StompFrame) -> None:
        if frame.command == "MESSAGE":
            handler = self._handlers.get(frame.headers.get("subscription", ""))
            if handler is None:
                _logger.debug("MESSAGE for unknown subscription %s", frame.headers.get("subscription"))
                return
            handler(frame.body.decode("utf-8", errors="replace"))
        elif frame.command == "ERROR":
            raise LocSyncProtocolError(_error_message(frame), url=self._url)
        else:
            _logger.debug("Ignoring STOMP %s frame", frame.command)

    async def _send_heartbeats(self, interval: float) -> None:
        ws = self._require_ws()
        while True:
            await asyncio.sleep(interval)
            try:
                await ws.send_str(HEARTBEAT)
            except (ConnectionError, aiohttp.ClientError) as exc:
                self._fail(LocSyncTransportError(f"Heart-beat send failed: {exc}", url=self._url))
                return

    async def _watch_heartbeats(self, interval: float) -> None:
        limit = interval * self._config.heartbeat_tolerance
        while True:
            await asyncio.sleep(interval)
            silent_for = self._clock() - self._last_received
            if silent_for > limit:
                self._fail(LocSyncTransportError(f"No heart-beat from broker for {silent_for:.1f}s", url=self._url))
                return

    def _fail(self, exc: BaseException) -> None:
        if self._failed or self._closing:
            return
        self._failed = True
        _logger.debug("STOMP transport failed: %s", exc)
        if self._on_failure is not None:
            self._on_failure(exc)

    async def subscribe(self, destination: str, handler: MessageHandler) -> None:
        sub_id = f"sub-{self._next_subscription}"
        self._next_subscription += 1
        self._handlers[sub_id] = handler
        await self._send_frame("SUBSCRIBE", {"id": sub_id, "destination": destination, "ack": "auto"})

    async def send(self, destination: str, body: str) -> None:
        await self._send_frame("SEND", {"destination": destination, "content-type": JSON_CONTENT_TYPE}, body)

    async def _send_frame(self, command: str, headers: dict[str, str], body: str = "") -> None:
        ws = self._require_ws()
        if self._config.frame_trace_enabled:
            _logger.debug(">>> %s %s %r", command, headers, body[:256])
        try:
            await ws.send_str(build_frame(command, headers, body).decode("utf-8"))
        except (ConnectionError, aiohttp.ClientError) as exc:
            raise LocSyncTransportError(f"Sending {command} failed: {exc}", url=self._url) from exc

    def _require_ws(self) -> aiohttp.ClientWebSocketResponse:
        if self._ws is None or self._ws.closed:
            raise LocSyncTransportError("Websocket is not open", url=self._url)
        return self._ws

    async def close(self) -> None:
        """Send DISCONNECT and close the socket; safe to call repeatedly."""
        self._closing = True
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        for task in self._tasks:
            if task is not current:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._tasks.clear()
        self._handlers.clear()

        ws = self._ws
        self._ws = None
        if ws is None or ws.closed:
            return
        try:
            await ws.send_str(build_frame("DISCONNECT").decode("utf-8"))
        except (ConnectionError, aiohttp.ClientError):
            _logger.debug("DISCONNECT send failed", exc_info=True)
        finally:
            await ws.close()

    async def _abort(self) -> None:
        self._closing = True
        ws = self._ws
        self._ws = None
        if ws is not None and not ws.closed:
            await ws.close()


def _error_message(frame: StompFrame) -> str:
    message = frame.headers.get("message") or frame.body.decode("utf-8", errors="replace").strip()
    return f"Broker ERROR frame: {message or 'no message'}"
