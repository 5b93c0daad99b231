import json
import sqlite3

import pytest

from mission_control.broadcast import LiveBroadcastChannel, LiveConnection
from mission_control.db import crud
from mission_control.db.models import ActivityKind, NotificationKind
from mission_control.errors import PersistenceError, ValidationError
from mission_control.publisher import ActivityPublisher, build_context


def _activity_frames(conn: LiveConnection) -> list[dict]:
    events = []
    while not conn._queue.empty():
        frame = conn._queue.get_nowait()
        if frame is None:
            break
        event = json.loads(frame[len("data: "):])
        if event["type"] == "activity":
            events.append(event["activity"])
    return events


@pytest.fixture
def channel():
    return LiveBroadcastChannel(heartbeat_interval=0)


@pytest.fixture
def publisher(channel, db):
    async def provider():
        return db
    return ActivityPublisher(channel, db_provider=provider)


@pytest.mark.asyncio
async def test_publish_broadcasts_to_every_connection(channel, publisher):
    conns = [channel.register(LiveConnection()) for _ in range(2)]

    activity = await publisher.publish("system", "Deploy finished", "ci-bot")

    assert activity.kind is ActivityKind.SYSTEM
    for c in conns:
        [event] = _activity_frames(c)
        assert event["id"] == activity.id
        assert event["message"] == "Deploy finished"
        assert event["actor"] == "ci-bot"


@pytest.mark.asyncio
async def test_publish_with_mention_notifies_and_broadcasts(db, agents, channel, publisher):
    conn = channel.register(LiveConnection())

    await publisher.publish(
        "task", "@bob please review", "Alice",
        context={"taskId": "T1", "taskTitle": "Login bug"},
    )

    [n] = await crud.notification_list(db, agents["bob"].id)
    assert n.kind is NotificationKind.MENTION
    assert n.title == "Mentioned in Login bug"
    assert n.body == "@bob please review"
    assert n.metadata["task_id"] == "T1"
    assert n.metadata["mentioned_by"] == "Alice"
    assert n.metadata["link"] == "/tasks/T1"
    assert len(_activity_frames(conn)) == 1


@pytest.mark.asyncio
async def test_mentions_need_task_context(db, agents, publisher):
    await publisher.publish("agent", "@bob hello", "Alice")
    await publisher.publish("agent", "@bob hello", "Alice", context={"task_id": "T1"})

    assert await crud.notification_list(db, agents["bob"].id) == []


@pytest.mark.asyncio
async def test_explicit_mentioned_users_are_notified(db, agents, publisher):
    await publisher.publish(
        "mention", "Heads up @carol", "Alice",
        context={"task_id": "T9", "task_title": "Incident", "mentioned_users": ["bob"]},
    )

    assert len(await crud.notification_list(db, agents["carol"].id)) == 1
    assert len(await crud.notification_list(db, agents["bob"].id)) == 1


@pytest.mark.asyncio
async def test_mention_failure_does_not_block_broadcast(channel):
    async def broken_provider():
        raise PersistenceError("get_db")

    publisher = ActivityPublisher(channel, db_provider=broken_provider)
    conn = channel.register(LiveConnection())

    activity = await publisher.publish("task", "@bob ping", "Alice", context={"task_id": "T", "task_title": "X"})

    [event] = _activity_frames(conn)
    assert event["id"] == activity.id


@pytest.mark.asyncio
async def test_missing_fields_rejected_without_side_effects(channel, publisher):
    conn = channel.register(LiveConnection())

    with pytest.raises(ValidationError) as exc:
        await publisher.publish("task", "", None)

    assert exc.value.reason == "Missing required fields: message, actor"
    assert _activity_frames(conn) == []


@pytest.mark.asyncio
async def test_unknown_kind_rejected(publisher):
    with pytest.raises(ValidationError) as exc:
        await publisher.publish("gossip", "hi", "Alice")
    assert exc.value.fields == ["kind"]


def test_build_context_accepts_both_key_styles():
    assert build_context({"taskId": "1", "taskTitle": "A"}) == build_context({"task_id": "1", "task_title": "A"})
    assert build_context(None).task_id is None
    assert build_context({"mentionedUsers": "bob"}).mentioned_users == ("bob",)


@pytest.mark.asyncio
async def test_mention_activity_end_to_end(db, channel, publisher):
    alice = await crud.agent_register(db, "Alice")
    conns = [channel.register(LiveConnection()) for _ in range(2)]

    activity = await publisher.publish(
        "mention", "@Alice please review", "Bob",
        context={"taskId": "t1", "taskTitle": "Review PR"},
    )

    [n] = await crud.notification_list(db, alice.id)
    assert n.metadata["mentioned_by"] == "Bob"
    assert n.metadata["task_title"] == "Review PR"
    assert await crud.thread_subscribers(db, "t1") == []
    for c in conns:
        [event] = _activity_frames(c)
        assert event["id"] == activity.id
        assert event["kind"] == "mention"


@pytest.mark.asyncio
async def test_mentioned_users_without_at_sign_are_notified(db, agents, publisher):
    await publisher.publish(
        "mention", "Alice please review", "Bob",
        context={"taskId": "t1", "taskTitle": "Review PR", "mentionedUsers": ["Alice"]},
    )

    [n] = await crud.notification_list(db, agents["alice"].id)
    assert n.metadata["mentioned_by"] == "Bob"
    assert n.title == "Mentioned in Review PR"


@pytest.mark.asyncio
async def test_storage_driver_error_does_not_block_broadcast(channel):
    async def unreachable_db():
        raise sqlite3.OperationalError("unable to open database file")

    publisher = ActivityPublisher(channel, db_provider=unreachable_db)
    conn = channel.register(LiveConnection())

    activity = await publisher.publish("task", "@bob ping", "Alice", context={"task_id": "T", "task_title": "X"})

    [event] = _activity_frames(conn)
    assert event["id"] == activity.id
