#!/usr/bin/env python3
"""Location broadcast probe.

Joins the shared location topic as one peer and periodically prints the
peer registry. With ``--walk`` the probe also publishes a simulated random
walk starting at ``--lat``/``--lon``, so two probes against the same
broker see each other move.

Configuration is read from ``LOCSYNC_*`` environment variables; flags
override them.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import math
import random
import signal
import sys
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pylocsync import LocSyncClient, SyncConfig  # noqa: E402
from pylocsync.exceptions import LocSyncError  # noqa: E402
from pylocsync.models.connection import ConnectionState  # noqa: E402
from pylocsync.models.position import Position  # noqa: E402

_LOG = logging.getLogger("locsync_probe")

# Meters per degree of latitude; longitude degrees shrink with cos(latitude).
_M_PER_DEG = 111_320.0


class RandomWalkSource:
    """Simulated GPS: a bounded random walk, one fix per *interval* seconds."""

    def __init__(self, lat: float, lon: float, *, step_m: float, interval: float) -> None:
        self._lat = lat
        self._lon = lon
        self._step_m = step_m
        self._interval = interval

    async def request_permission(self) -> bool:
        return True

    async def watch(self) -> AsyncIterator[Position]:
        while True:
            yield Position(latitude=self._lat, longitude=self._lon)
            await asyncio.sleep(self._interval)
            heading = random.uniform(0, 2 * math.pi)
            self._lat = max(-90.0, min(90.0, self._lat + self._step_m * math.cos(heading) / _M_PER_DEG))
            lon_scale = _M_PER_DEG * max(math.cos(math.radians(self._lat)), 1e-6)
            self._lon = ((self._lon + self._step_m * math.sin(heading) / lon_scale + 180.0) % 360.0) - 180.0


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Join the location broadcast and print every peer's position.",
    )
    parser.add_argument("--broker-url", help="Broker URL (ws://host:8080/ws/websocket or mqtt://host:1883).")
    parser.add_argument("--transport", choices=("stomp", "mqtt"), help="Broker transport.")
    parser.add_argument("--peer-id", help="Explicit peer id (default: derived from the machine id).")
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--report-seconds",
        type=float,
        default=5.0,
        help="Print the peer registry every N seconds.",
    )
    parser.add_argument("--walk", action="store_true", help="Publish a simulated random walk.")
    parser.add_argument("--lat", type=float, default=-12.0464, help="Walk start latitude.")
    parser.add_argument("--lon", type=float, default=-77.0428, help="Walk start longitude.")
    parser.add_argument("--step-m", type=float, default=8.0, help="Walk step length in meters.")
    parser.add_argument("--interval", type=float, default=3.0, help="Seconds between walk fixes.")
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs (including broker frames).",
    )
    return parser.parse_args()


def _build_config(args: argparse.Namespace) -> SyncConfig:
    overrides: dict[str, Any] = {}
    if args.broker_url:
        overrides["broker_url"] = args.broker_url
    if args.transport:
        overrides["transport"] = args.transport
    if args.peer_id:
        overrides["peer_id"] = args.peer_id
    if args.verbose:
        overrides["frame_trace_enabled"] = True
    return SyncConfig.from_env(**overrides)


def _print_peers(client: LocSyncClient) -> None:
    peers = client.peers()
    mine = client.my_position
    print(f"[probe] {client.peer_id} state={client.state} peers={len(peers)}")
    if mine is not None:
        print(f"[probe]   (me) {mine.latitude:.6f},{mine.longitude:.6f}")
    for peer_id, position in sorted(peers.items()):
        age = max(0.0, time.time() - position.timestamp / 1000.0)
        print(f"[probe]   {peer_id:<24} {position.latitude:.6f},{position.longitude:.6f}  age={age:.1f}s")


def _on_state_change(state: ConnectionState) -> None:
    print(f"[probe] connection -> {state}")


async def _run(args: argparse.Namespace, config: SyncConfig) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:  # pragma: no cover - Windows
            pass

    source = None
    if args.walk:
        source = RandomWalkSource(args.lat, args.lon, step_m=args.step_m, interval=args.interval)

    deadline = time.monotonic() + args.duration if args.duration > 0 else None
    async with LocSyncClient(config, position_source=source, on_state_change=_on_state_change) as client:
        print(f"[probe] Joined as {client.peer_id} via {config.transport} {config.broker_url}")
        while not stop.is_set():
            timeout = args.report_seconds
            if deadline is not None:
                timeout = min(timeout, max(0.0, deadline - time.monotonic()))
            try:
                await asyncio.wait_for(stop.wait(), timeout)
            except TimeoutError:
                pass
            _print_peers(client)
            if deadline is not None and time.monotonic() >= deadline:
                break
    print("[probe] Left the broadcast.")
    return 0


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = _build_config(args)
    except LocSyncError as exc:
        print(f"[probe] Invalid configuration: {exc}", file=sys.stderr)
        return 2

    try:
        return asyncio.run(_run(args, config))
    except LocSyncError as exc:  # pragma: no cover - network/system interaction
        _LOG.debug("Probe failed", exc_info=True)
        print(f"[probe] Failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(_main())
