"""Position sample producers.

A position source yields a lazy, infinite, non-restartable stream of
fixes once permission is granted. Movement/interval throttling lives here,
on the producer side; the sync channel publishes every sample it is given.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from typing import Protocol

from pylocsync.exceptions import LocSyncError, LocSyncPermissionError
from pylocsync.models.position import Position

_logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_008.8


class PositionSource(Protocol):
    """Collaborator producing local position fixes."""

    async def request_permission(self) -> bool:
        ...

    def watch(self) -> AsyncIterator[Position]:
        ...


def haversine_m(a: Position, b: Position) -> float:
    """Great-circle distance between two fixes, in meters."""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


class SampleThrottle:
    """Decides which raw fixes are worth publishing.

    A fix passes when it moved more than ``min_distance_m`` from the last
    accepted fix, or when ``min_interval`` seconds elapsed since it. The
    first fix always passes.
    """

    def __init__(self, *, min_distance_m: float = 5.0, min_interval: float = 3.0) -> None:
        self._min_distance_m = min_distance_m
        self._min_interval_ms = int(min_interval * 1000)
        self._last: Position | None = None

    @property
    def last_accepted(self) -> Position | None:
        return self._last

    def accept(self, sample: Position) -> bool:
        last = self._last
        if last is not None:
            moved = haversine_m(last, sample)
            elapsed = sample.timestamp - last.timestamp
            if moved <= self._min_distance_m and elapsed < self._min_interval_ms:
                return False
        self._last = sample
        return True

    def reset(self) -> None:
        self._last = None


async def throttled(samples: AsyncIterable[Position], throttle: SampleThrottle) -> AsyncIterator[Position]:
    async for sample in samples:
        if throttle.accept(sample):
            yield sample


class ReplayPositionSource:
    """Replays a fixed sequence of fixes, optionally spaced by *interval* seconds.

    Used by tests and the probe script in place of a GPS receiver.
    """

    def __init__(
        self,
        samples: Iterable[Position],
        *,
        interval: float = 0.0,
        granted: bool = True,
    ) -> None:
        self._samples = list(samples)
        self._interval = interval
        self._granted = granted
        self._started = False

    async def request_permission(self) -> bool:
        return self._granted

    def watch(self) -> AsyncIterator[Position]:
        if self._started:
            raise LocSyncError("Position stream already started; sources are not restartable")
        if not self._granted:
            raise LocSyncPermissionError("Position permission not granted")
        self._started = True
        return self._replay()

    async def _replay(self) -> AsyncIterator[Position]:
        for index, sample in enumerate(self._samples):
            if index and self._interval > 0:
                await asyncio.sleep(self._interval)
            yield sample
        _logger.debug("Replay source exhausted after %d samples", len(self._samples))
