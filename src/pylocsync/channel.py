"""Sync channel: one broker session per active peer id.

State machine::

    DISCONNECTED --activate--> CONNECTING --handshake ok--> CONNECTED
    CONNECTING / CONNECTED --error/close/heart-beat timeout--> RECONNECTING
    RECONNECTING --reconnect_delay--> CONNECTING            (no retry cap)
    any --deactivate--> DISCONNECTED

Every activation starts a new session generation. Callbacks created for a
session carry its generation and are ignored once it is no longer current,
so nothing that completes late can write into a registry that
``deactivate`` already cleared.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import Callable

from pylocsync._transport import BrokerTransport, TransportFactory
from pylocsync.config import SyncConfig
from pylocsync.exceptions import LocSyncConfigError, LocSyncError, LocSyncTransportError
from pylocsync.models.connection import ConnectionState
from pylocsync.models.position import LocationUpdateMessage, Position
from pylocsync.normalize import now_ms
from pylocsync.state.registry import PeerRegistry

_logger = logging.getLogger(__name__)

StateCallback = Callable[[ConnectionState], None]
PeerCallback = Callable[[str, Position], None]


class SyncChannel:
    """Owns the broker connection, the broadcast subscription and the peer registry.

    Usage::

        channel = SyncChannel(config, transport_factory)
        channel.activate(peer_id)
        await channel.publish(position)
        peers = channel.snapshot()
        await channel.deactivate()
    """

    def __init__(
        self,
        config: SyncConfig,
        transport_factory: TransportFactory,
        *,
        on_state_change: StateCallback | None = None,
        on_peer_update: PeerCallback | None = None,
    ) -> None:
        self._config = config
        self._transport_factory = transport_factory
        self._on_state_change = on_state_change
        self._on_peer_update = on_peer_update
        self._registry = PeerRegistry()
        self._state = ConnectionState.DISCONNECTED
        self._peer_id: str | None = None
        self._generation = 0
        self._task: asyncio.Task[None] | None = None
        self._transport: BrokerTransport | None = None
        self._lost: asyncio.Future[BaseException] | None = None
        self._settled = asyncio.Event()
        self._attempts = 0

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def registry(self) -> PeerRegistry:
        return self._registry

    @property
    def attempts(self) -> int:
        """Connection attempts made since construction."""
        return self._attempts

    def snapshot(self) -> dict[str, Position]:
        return self._registry.snapshot()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def activate(self, peer_id: str) -> None:
        """Start connecting as *peer_id*.

        A no-op while a session is already running. Must be called from
        within a running event loop.
        """
        if self._state.is_active:
            _logger.debug("activate ignored; channel is %s", self._state)
            return
        normalized = (peer_id or "").strip()
        if not normalized:
            raise LocSyncConfigError("activate() requires a non-empty peer id")

        loop = asyncio.get_running_loop()
        self._peer_id = normalized
        self._generation += 1
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        self._task = loop.create_task(self._run(generation), name=f"locsync-session-{generation}")

    async def deactivate(self) -> None:
        """End the session: cancel pending work, release the transport, clear the registry."""
        was_active = self._state.is_active
        self._generation += 1
        self._set_state(ConnectionState.DISCONNECTED)

        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        transport = self._transport
        self._transport = None
        self._lost = None
        if transport is not None:
            await self._close_transport(transport)

        self._registry.clear()
        if was_active:
            _logger.info("Sync channel deactivated peer=%s", self._peer_id)

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait until the channel is connected; ``False`` on timeout or deactivation."""
        if self._state is ConnectionState.CONNECTED:
            return True
        if not self._state.is_active:
            return False
        try:
            await asyncio.wait_for(self._settled.wait(), timeout)
        except TimeoutError:
            return False
        return self._state is ConnectionState.CONNECTED

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._state.is_active

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        _logger.debug("Channel state %s -> %s", self._state, state)
        self._state = state
        if state in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED):
            self._settled.set()
        else:
            self._settled.clear()
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                _logger.debug("on_state_change callback failed", exc_info=True)

    async def _run(self, generation: int) -> None:
        loop = asyncio.get_running_loop()
        while self._is_current(generation):
            self._attempts += 1
            transport = self._transport_factory()
            lost: asyncio.Future[BaseException] = loop.create_future()

            def on_failure(exc: BaseException, lost: asyncio.Future[BaseException] = lost) -> None:
                if not lost.done():
                    lost.set_result(exc)

            try:
                await transport.open(on_failure=on_failure)
                if not self._is_current(generation):
                    return
                await transport.subscribe(
                    self._config.inbound_topic,
                    functools.partial(self._dispatch_inbound, generation),
                )
                self._transport = transport
                self._lost = lost
                self._set_state(ConnectionState.CONNECTED)
                _logger.info("Connected to broker %s as peer=%s", self._config.broker_url, self._peer_id)
                reason = await lost
                _logger.info("Broker connection lost: %s", reason)
            except LocSyncError as exc:
                _logger.info("Broker connection attempt %d failed: %s", self._attempts, exc)
            except Exception:
                _logger.warning("Unexpected transport failure on attempt %d", self._attempts, exc_info=True)
            finally:
                if self._transport is transport:
                    self._transport = None
                    self._lost = None
                await self._close_transport(transport)

            if not self._is_current(generation):
                return
            self._set_state(ConnectionState.RECONNECTING)
            await asyncio.sleep(self._config.reconnect_delay)
            if not self._is_current(generation):
                return
            self._set_state(ConnectionState.CONNECTING)

    async def _close_transport(self, transport: BrokerTransport) -> None:
        try:
            await transport.close()
        except Exception:
            _logger.debug("Transport close failed", exc_info=True)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def publish(self, position: Position) -> bool:
        """Send *position* as the local peer's update.

        Only accepted while connected; otherwise the sample is dropped
        (stale positions are worthless, the next sample will be sent).
        Returns whether the update was handed to the broker.
        """
        transport = self._transport
        peer_id = self._peer_id
        if self._state is not ConnectionState.CONNECTED or transport is None or peer_id is None:
            _logger.debug("Dropping position sample; channel is %s", self._state)
            return False

        message = LocationUpdateMessage.from_position(peer_id, position)
        body = message.to_wire(include_timestamp=self._config.include_timestamp)
        try:
            await transport.send(self._config.outbound_destination, body)
        except LocSyncTransportError as exc:
            _logger.debug("Publish failed, dropping sample: %s", exc)
            lost = self._lost
            if self._transport is transport and lost is not None and not lost.done():
                lost.set_result(exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def on_inbound_message(self, raw: str | bytes) -> bool:
        """Apply one broadcast message; never raises.

        Returns whether the registry was updated. Messages are ignored
        while the channel is disconnected.
        """
        if not self._state.is_active:
            return False
        return self._apply_inbound(raw)

    def _dispatch_inbound(self, generation: int, raw: str | bytes) -> None:
        if not self._is_current(generation):
            _logger.debug("Dropping message from a finished session")
            return
        self._apply_inbound(raw)

    def _apply_inbound(self, raw: str | bytes) -> bool:
        try:
            message = LocationUpdateMessage.from_wire(raw)
        except ValueError as exc:
            _logger.debug("Dropping malformed location update: %s", exc)
            return False

        # Own echoes are always discarded; they would duplicate the local marker.
        if message.peer_id == self._peer_id:
            return False

        position = message.to_position(received_at=now_ms())
        self._registry.upsert(message.peer_id, position)
        if self._on_peer_update is not None:
            try:
                self._on_peer_update(message.peer_id, position)
            except Exception:
                _logger.debug("on_peer_update callback failed", exc_info=True)
        return True
