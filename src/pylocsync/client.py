"""High-level async client: identity + sync channel + local position pump."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

import aiohttp

from pylocsync._constants import TRANSPORT_MQTT
from pylocsync._mqtt import MqttTransport
from pylocsync._transport import StompWebSocketTransport, TransportFactory
from pylocsync.channel import PeerCallback, StateCallback, SyncChannel
from pylocsync.config import SyncConfig
from pylocsync.exceptions import LocSyncError
from pylocsync.identity import IdentityProvider
from pylocsync.models.connection import ConnectionState
from pylocsync.models.position import Position
from pylocsync.positions import PositionSource, SampleThrottle, throttled

_logger = logging.getLogger(__name__)


class LocSyncClient:
    """Joins the location broadcast as the local peer.

    Usage::

        async with LocSyncClient(config, position_source=gps) as client:
            await client.wait_connected(10)
            peers = client.peers()

    Without a position source, or when permission is denied, the client
    runs receive-only: it still tracks every other peer.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        position_source: PositionSource | None = None,
        identity: IdentityProvider | None = None,
        session: aiohttp.ClientSession | None = None,
        transport_factory: TransportFactory | None = None,
        on_peer_update: PeerCallback | None = None,
        on_state_change: StateCallback | None = None,
    ) -> None:
        self._config = config or SyncConfig()
        self._position_source = position_source
        self._identity = identity or IdentityProvider(peer_id=self._config.peer_id)
        self._external_session = session is not None
        self._http_session = session
        self._transport_factory = transport_factory
        self._on_peer_update = on_peer_update
        self._on_state_change = on_state_change
        self._channel: SyncChannel | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._my_position: Position | None = None
        self._receive_only = position_source is None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> LocSyncClient:
        try:
            await self.start()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def start(self) -> None:
        """Resolve the peer id, connect, and start publishing local fixes."""
        if self._channel is not None:
            return
        peer_id = await self._identity.resolve_id()
        channel = SyncChannel(
            self._config,
            self._transport_factory or self._default_transport_factory(),
            on_state_change=self._on_state_change,
            on_peer_update=self._on_peer_update,
        )
        self._channel = channel
        channel.activate(peer_id)

        if self._position_source is not None:
            self._pump_task = asyncio.get_running_loop().create_task(self._pump(self._position_source, channel))

    async def close(self) -> None:
        """Stop publishing, end the broker session and release owned resources."""
        task = self._pump_task
        self._pump_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        channel = self._channel
        self._channel = None
        try:
            if channel is not None:
                await channel.deactivate()
        finally:
            if not self._external_session and self._http_session is not None:
                await self._http_session.close()
                self._http_session = None

    def _default_transport_factory(self) -> TransportFactory:
        config = self._config
        if config.transport == TRANSPORT_MQTT:
            return lambda: MqttTransport(config)
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        http_session = self._http_session
        return lambda: StompWebSocketTransport(config, http_session)

    # ------------------------------------------------------------------
    # Local position pump
    # ------------------------------------------------------------------

    async def _pump(self, source: PositionSource, channel: SyncChannel) -> None:
        try:
            granted = await source.request_permission()
        except Exception:
            _logger.debug("Permission request failed", exc_info=True)
            granted = False
        if not granted:
            self._receive_only = True
            _logger.warning("Location permission denied; continuing in receive-only mode")
            return

        self._receive_only = False
        throttle = SampleThrottle(
            min_distance_m=self._config.min_distance_m,
            min_interval=self._config.min_interval,
        )
        try:
            async for sample in throttled(source.watch(), throttle):
                self._my_position = sample
                await channel.publish(sample)
        except LocSyncError as exc:
            self._receive_only = True
            _logger.warning("Position stream stopped (%s); continuing in receive-only mode", exc)
        except Exception:
            self._receive_only = True
            _logger.warning("Position stream failed; continuing in receive-only mode", exc_info=True)

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def _require_channel(self) -> SyncChannel:
        if self._channel is None:
            raise LocSyncError("Client not started. Use 'async with LocSyncClient(...) as client:'")
        return self._channel

    @property
    def channel(self) -> SyncChannel:
        return self._require_channel()

    @property
    def peer_id(self) -> str | None:
        return self._identity.resolved

    @property
    def state(self) -> ConnectionState:
        if self._channel is None:
            return ConnectionState.DISCONNECTED
        return self._channel.state

    @property
    def my_position(self) -> Position | None:
        return self._my_position

    @property
    def receive_only(self) -> bool:
        return self._receive_only

    def peers(self) -> dict[str, Position]:
        """Snapshot of every other peer's last-known position."""
        if self._channel is None:
            return {}
        return self._channel.snapshot()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        return await self._require_channel().wait_connected(timeout)
