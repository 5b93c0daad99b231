import asyncio
import json

import pytest

from mission_control.broadcast import (
    CONNECTED_FRAME, HEARTBEAT_FRAME, ConnectionState, LiveBroadcastChannel, LiveConnection, encode_event,
)
from mission_control.errors import DeliveryChannelError


def _drain(conn: LiveConnection) -> list:
    frames = []
    while not conn._queue.empty():
        frames.append(conn._queue.get_nowait())
    return frames


def _broken(conn: LiveConnection) -> LiveConnection:
    def send(frame):
        raise DeliveryChannelError(conn.id, "socket reset")
    conn.send = send
    return conn


def test_encode_event_is_sse_data_frame():
    assert encode_event({"type": "heartbeat"}) == 'data: {"type": "heartbeat"}\n\n'


@pytest.mark.asyncio
async def test_register_sends_connected_frame():
    channel = LiveBroadcastChannel(heartbeat_interval=0)
    conn = channel.register(LiveConnection())

    assert conn.state is ConnectionState.OPEN
    assert channel.connection_count == 1
    assert _drain(conn) == [CONNECTED_FRAME]


@pytest.mark.asyncio
async def test_broadcast_reaches_every_connection():
    channel = LiveBroadcastChannel(heartbeat_interval=0)
    conns = [channel.register(LiveConnection()) for _ in range(3)]
    for c in conns:
        _drain(c)

    delivered = channel.broadcast({"type": "activity", "n": 1})

    assert delivered == 3
    for c in conns:
        [frame] = _drain(c)
        assert json.loads(frame[len("data: "):]) == {"type": "activity", "n": 1}


@pytest.mark.asyncio
async def test_failing_connections_are_removed_and_others_still_served():
    channel = LiveBroadcastChannel(heartbeat_interval=0)
    healthy = [channel.register(LiveConnection()) for _ in range(3)]
    failing = [_broken(channel.register(LiveConnection())) for _ in range(2)]

    delivered = channel.broadcast({"type": "activity"})

    assert delivered == 3
    assert channel.connection_count == 3
    for c in failing:
        assert c.state is ConnectionState.ERRORED
        assert not channel.is_registered(c)
    for c in healthy:
        assert channel.is_registered(c)


@pytest.mark.asyncio
async def test_full_buffer_counts_as_failure():
    channel = LiveBroadcastChannel(heartbeat_interval=0)
    slow = channel.register(LiveConnection(queue_size=1))   # connected frame fills it
    fast = channel.register(LiveConnection())

    assert channel.broadcast({"type": "activity"}) == 1
    assert not channel.is_registered(slow)
    assert channel.is_registered(fast)


@pytest.mark.asyncio
async def test_unregister_is_idempotent():
    channel = LiveBroadcastChannel(heartbeat_interval=0)
    conn = channel.register(LiveConnection())

    assert channel.unregister(conn) is True
    assert channel.unregister(conn) is False
    assert conn.state is ConnectionState.CLOSED
    assert channel.connection_count == 0


@pytest.mark.asyncio
async def test_closed_connection_rejects_sends_and_ends_stream():
    channel = LiveBroadcastChannel(heartbeat_interval=0)
    conn = channel.register(LiveConnection())
    channel.unregister(conn)

    with pytest.raises(DeliveryChannelError):
        conn.send("data: {}\n\n")
    frames = [f async for f in conn.frames()]
    assert frames == [CONNECTED_FRAME]


@pytest.mark.asyncio
async def test_heartbeat_runs_until_unregistered():
    channel = LiveBroadcastChannel(heartbeat_interval=0.01)
    conn = channel.register(LiveConnection())
    await asyncio.sleep(0.05)

    task = conn.heartbeat_task
    channel.unregister(conn)
    await asyncio.sleep(0.01)

    frames = _drain(conn)
    assert frames[0] == CONNECTED_FRAME
    assert HEARTBEAT_FRAME in frames
    assert conn.heartbeat_task is None
    assert task.cancelled() or task.done()


@pytest.mark.asyncio
async def test_heartbeat_failure_unregisters():
    channel = LiveBroadcastChannel(heartbeat_interval=0.01)
    conn = channel.register(LiveConnection())
    _broken(conn)
    await asyncio.sleep(0.05)

    assert not channel.is_registered(conn)
    assert conn.state is ConnectionState.ERRORED


@pytest.mark.asyncio
async def test_broadcast_with_no_connections():
    channel = LiveBroadcastChannel(heartbeat_interval=0)
    assert channel.broadcast({"type": "activity"}) == 0


@pytest.mark.asyncio
async def test_close_all_refuses_new_connections():
    channel = LiveBroadcastChannel(heartbeat_interval=0)
    conn = channel.register(LiveConnection())
    channel.close_all()

    assert conn.state is ConnectionState.CLOSED
    with pytest.raises(DeliveryChannelError):
        channel.register(LiveConnection())


@pytest.mark.asyncio
async def test_killed_connection_misses_subsequent_broadcasts():
    channel = LiveBroadcastChannel(heartbeat_interval=0)
    survivor = channel.register(LiveConnection())
    victim = _broken(channel.register(LiveConnection()))

    assert channel.broadcast({"type": "activity", "n": 1}) == 1
    assert channel.broadcast({"type": "activity", "n": 2}) == 1

    frames = _drain(survivor)
    assert [json.loads(f[len("data: "):]).get("n") for f in frames[1:]] == [1, 2]
    assert not channel.is_registered(victim)
