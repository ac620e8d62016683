from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import pytest

from pylocsync._transport import FailureHandler, MessageHandler
from pylocsync.config import SyncConfig
from pylocsync.exceptions import LocSyncTransportError


class FakeTransport:
    """In-memory transport; the test drives failures and inbound traffic."""

    def __init__(self, broker: FakeBroker) -> None:
        self._broker = broker
        self._on_failure: FailureHandler | None = None
        self.subscriptions: dict[str, MessageHandler] = {}
        self.sent: list[tuple[str, str]] = []
        self.opened = False
        self.closed = False

    async def open(self, *, on_failure: FailureHandler) -> None:
        self._broker.opens += 1
        if self._broker.refuse:
            raise LocSyncTransportError("connection refused")
        self._on_failure = on_failure
        self.opened = True

    async def subscribe(self, destination: str, handler: MessageHandler) -> None:
        self.subscriptions[destination] = handler

    async def send(self, destination: str, body: str) -> None:
        if self._broker.fail_sends:
            raise LocSyncTransportError("broken pipe")
        self.sent.append((destination, body))

    async def close(self) -> None:
        self.closed = True

    def fail(self, reason: str = "connection reset") -> None:
        assert self._on_failure is not None
        self._on_failure(LocSyncTransportError(reason))

    def deliver(self, body: str) -> None:
        for handler in list(self.subscriptions.values()):
            handler(body)


class FakeBroker:
    """Transport factory recording every connection attempt."""

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.opens = 0
        self.refuse = False
        self.fail_sends = False

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]

    @property
    def sent(self) -> list[tuple[str, str]]:
        return [item for transport in self.transports for item in transport.sent]


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def fast_config() -> SyncConfig:
    return SyncConfig(reconnect_delay=0.01, connect_timeout=1.0)


@pytest.fixture
def eventually() -> Callable[[Callable[[], bool]], Awaitable[None]]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not reached before timeout")
            await asyncio.sleep(0.001)

    return _wait
