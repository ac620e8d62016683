from __future__ import annotations

import asyncio
import json

import pytest

from pylocsync.channel import SyncChannel
from pylocsync.config import SyncConfig
from pylocsync.exceptions import LocSyncConfigError
from pylocsync.models.connection import ConnectionState
from pylocsync.models.position import Position

LOCAL_ID = "linux_b0b"


def _msg(peer_id: str, lat: float, lon: float, ts: int | None = 1000) -> str:
    payload: dict[str, object] = {"userId": peer_id, "latitude": lat, "longitude": lon}
    if ts is not None:
        payload["timestamp"] = ts
    return json.dumps(payload)


async def _connected_channel(config: SyncConfig, broker, eventually, states=None) -> SyncChannel:
    channel = SyncChannel(config, broker, on_state_change=None if states is None else states.append)
    channel.activate(LOCAL_ID)
    assert await channel.wait_connected(1.0)
    return channel


@pytest.mark.asyncio
async def test_inbound_message_from_other_peer_lands_in_registry(fast_config, broker, eventually) -> None:
    channel = await _connected_channel(fast_config, broker, eventually)

    broker.latest.deliver(_msg("ios_42", -12.05, -77.04))

    snapshot = channel.snapshot()
    assert set(snapshot) == {"ios_42"}
    assert snapshot["ios_42"].coordinates == (-12.05, -77.04)
    assert snapshot["ios_42"].timestamp == 1000
    assert LOCAL_ID not in snapshot
    await channel.deactivate()


@pytest.mark.asyncio
async def test_self_echo_is_discarded(fast_config, broker, eventually) -> None:
    channel = await _connected_channel(fast_config, broker, eventually)

    assert channel.on_inbound_message(_msg(LOCAL_ID, 1.0, 2.0)) is False
    assert channel.on_inbound_message(_msg(f"  {LOCAL_ID} ", 1.0, 2.0)) is False

    assert channel.snapshot() == {}
    await channel.deactivate()


@pytest.mark.asyncio
async def test_last_write_wins_regardless_of_timestamps(fast_config, broker, eventually) -> None:
    channel = await _connected_channel(fast_config, broker, eventually)

    channel.on_inbound_message(_msg("android_7", 10.0, 20.0, ts=5000))
    channel.on_inbound_message(_msg("android_7", 11.0, 21.0, ts=1000))

    assert channel.snapshot()["android_7"].coordinates == (11.0, 21.0)
    await channel.deactivate()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw",
    [
        '{"userId": "ios_1", "longitude": -77.04, "timestamp": 1}',
        '{"userId": "ios_1", "latitude": 95.0, "longitude": 0}',
        '{"latitude": 1.0, "longitude": 2.0}',
        '{"userId": "", "latitude": 1.0, "longitude": 2.0}',
        "not json at all",
        "[1, 2, 3]",
        "",
    ],
)
async def test_malformed_payload_is_dropped_without_raising(fast_config, broker, eventually, raw: str) -> None:
    channel = await _connected_channel(fast_config, broker, eventually)
    channel.on_inbound_message(_msg("ios_9", 1.0, 1.0))

    broker.latest.deliver(raw)

    snapshot = channel.snapshot()
    assert set(snapshot) == {"ios_9"}
    assert snapshot["ios_9"].coordinates == (1.0, 1.0)
    assert channel.state is ConnectionState.CONNECTED
    await channel.deactivate()


@pytest.mark.asyncio
async def test_missing_timestamp_uses_receive_time(fast_config, broker, eventually) -> None:
    channel = await _connected_channel(fast_config, broker, eventually)

    assert channel.on_inbound_message(_msg("web_3", 0.0, 0.0, ts=None))

    position = channel.snapshot()["web_3"]
    assert position.coordinates == (0.0, 0.0)
    assert position.timestamp > 1_600_000_000_000
    await channel.deactivate()


@pytest.mark.asyncio
async def test_publish_while_not_connected_is_dropped(fast_config, broker, eventually) -> None:
    channel = SyncChannel(fast_config, broker)
    position = Position(latitude=1.0, longitude=2.0, timestamp=10)

    assert await channel.publish(position) is False

    broker.refuse = True
    channel.activate(LOCAL_ID)
    assert await channel.publish(position) is False
    await eventually(lambda: channel.state is ConnectionState.RECONNECTING)
    assert await channel.publish(position) is False

    broker.refuse = False
    assert await channel.wait_connected(1.0)
    await asyncio.sleep(0.02)
    # Nothing that was dropped shows up after connecting.
    assert broker.sent == []
    await channel.deactivate()


@pytest.mark.asyncio
async def test_publish_sends_update_with_local_id(fast_config, broker, eventually) -> None:
    channel = await _connected_channel(fast_config, broker, eventually)

    sent = await channel.publish(Position(latitude=-12.05, longitude=-77.04, timestamp=1000))

    assert sent is True
    destination, body = broker.latest.sent[0]
    assert destination == "/app/update-location"
    assert json.loads(body) == {"userId": LOCAL_ID, "latitude": -12.05, "longitude": -77.04, "timestamp": 1000}
    await channel.deactivate()


@pytest.mark.asyncio
async def test_publish_can_omit_timestamp(broker, eventually) -> None:
    config = SyncConfig(reconnect_delay=0.01, include_timestamp=False)
    channel = await _connected_channel(config, broker, eventually)

    await channel.publish(Position(latitude=1.5, longitude=2.5, timestamp=1000))

    assert json.loads(broker.latest.sent[0][1]) == {"userId": LOCAL_ID, "latitude": 1.5, "longitude": 2.5}
    await channel.deactivate()


@pytest.mark.asyncio
async def test_publish_failure_triggers_reconnect(fast_config, broker, eventually) -> None:
    states: list[ConnectionState] = []
    channel = await _connected_channel(fast_config, broker, eventually, states)
    broker.fail_sends = True

    assert await channel.publish(Position(latitude=1.0, longitude=1.0)) is False

    await eventually(lambda: len(broker.transports) >= 2)
    assert ConnectionState.RECONNECTING in states
    assert broker.transports[0].closed
    await channel.deactivate()


@pytest.mark.asyncio
async def test_activate_twice_creates_one_session(fast_config, broker, eventually) -> None:
    states: list[ConnectionState] = []
    channel = SyncChannel(fast_config, broker, on_state_change=states.append)

    channel.activate(LOCAL_ID)
    channel.activate(LOCAL_ID)
    assert await channel.wait_connected(1.0)
    channel.activate("someone_else")

    assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
    assert len(broker.transports) == 1
    assert list(broker.latest.subscriptions) == ["/topic/locations"]
    assert channel.peer_id == LOCAL_ID
    await channel.deactivate()


@pytest.mark.asyncio
async def test_activate_requires_peer_id(fast_config, broker) -> None:
    channel = SyncChannel(fast_config, broker)

    with pytest.raises(LocSyncConfigError):
        channel.activate("   ")

    assert channel.state is ConnectionState.DISCONNECTED
    assert broker.transports == []


@pytest.mark.asyncio
async def test_transport_error_drives_reconnect_cycle(fast_config, broker, eventually) -> None:
    states: list[ConnectionState] = []
    channel = await _connected_channel(fast_config, broker, eventually, states)

    broker.latest.fail()
    await eventually(lambda: len(broker.transports) == 2 and channel.state is ConnectionState.CONNECTED)

    assert states == [
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
    ]
    assert broker.transports[0].closed
    await channel.deactivate()


@pytest.mark.asyncio
async def test_retries_never_give_up(fast_config, broker, eventually) -> None:
    broker.refuse = True
    channel = SyncChannel(fast_config, broker)
    channel.activate(LOCAL_ID)

    await eventually(lambda: broker.opens >= 10)
    assert channel.state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING)

    broker.refuse = False
    assert await channel.wait_connected(1.0)
    await channel.deactivate()


@pytest.mark.asyncio
async def test_deactivate_releases_everything_and_clears_registry(fast_config, broker, eventually) -> None:
    channel = await _connected_channel(fast_config, broker, eventually)
    transport = broker.latest
    transport.deliver(_msg("ios_42", 1.0, 2.0))
    assert len(channel.registry) == 1

    await channel.deactivate()

    assert channel.state is ConnectionState.DISCONNECTED
    assert transport.closed
    assert channel.snapshot() == {}
    # Late callbacks from the finished session cannot repopulate the registry.
    transport.deliver(_msg("ios_42", 3.0, 4.0))
    assert channel.on_inbound_message(_msg("ios_43", 3.0, 4.0)) is False
    assert channel.snapshot() == {}
    assert await channel.publish(Position(latitude=1.0, longitude=1.0)) is False

    await channel.deactivate()
    assert channel.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_deactivate_during_backoff_stops_retries(broker, eventually) -> None:
    config = SyncConfig(reconnect_delay=0.05)
    broker.refuse = True
    channel = SyncChannel(config, broker)
    channel.activate(LOCAL_ID)
    await eventually(lambda: channel.state is ConnectionState.RECONNECTING)

    await channel.deactivate()
    opens = broker.opens
    await asyncio.sleep(0.12)

    assert broker.opens == opens
    assert channel.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_reactivation_after_deactivate_starts_fresh_session(fast_config, broker, eventually) -> None:
    channel = await _connected_channel(fast_config, broker, eventually)
    old = broker.latest
    await channel.deactivate()

    channel.activate(LOCAL_ID)
    assert await channel.wait_connected(1.0)
    old.deliver(_msg("ios_42", 1.0, 2.0))
    assert channel.snapshot() == {}

    broker.latest.deliver(_msg("ios_42", 1.0, 2.0))
    assert "ios_42" in channel.snapshot()
    await channel.deactivate()


@pytest.mark.asyncio
async def test_peer_listener_errors_do_not_break_the_channel(fast_config, broker, eventually) -> None:
    def listener(peer_id: str, position: Position) -> None:
        raise RuntimeError("render failed")

    channel = SyncChannel(fast_config, broker, on_peer_update=listener)
    channel.activate(LOCAL_ID)
    assert await channel.wait_connected(1.0)

    broker.latest.deliver(_msg("ios_42", 1.0, 2.0))

    assert "ios_42" in channel.snapshot()
    assert channel.state is ConnectionState.CONNECTED
    await channel.deactivate()


@pytest.mark.asyncio
async def test_snapshot_is_isolated_from_later_updates(fast_config, broker, eventually) -> None:
    channel = await _connected_channel(fast_config, broker, eventually)
    channel.on_inbound_message(_msg("ios_42", 1.0, 2.0))

    before = channel.snapshot()
    channel.on_inbound_message(_msg("ios_42", 5.0, 6.0))
    channel.on_inbound_message(_msg("ios_43", 7.0, 8.0))

    assert set(before) == {"ios_42"}
    assert before["ios_42"].coordinates == (1.0, 2.0)
    await channel.deactivate()
