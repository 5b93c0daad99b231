import json

import pytest

from mission_control.broadcast import LiveBroadcastChannel
from mission_control.publisher import ActivityPublisher
from mission_control.tools.dispatch import TOOLS_DISPATCH, dispatch_tool


@pytest.fixture
def publisher(db):
    async def provider():
        return db
    return ActivityPublisher(LiveBroadcastChannel(heartbeat_interval=0), db_provider=provider)


async def _call(db, publisher, tool, **arguments):
    [content] = await dispatch_tool(db, publisher, tool, arguments)
    return json.loads(content.text)


@pytest.mark.asyncio
async def test_register_then_list(db, publisher):
    out = await _call(db, publisher, "agent_register", name="Dev-1", role="backend")
    assert out["name"] == "Dev-1"

    agents = await _call(db, publisher, "agent_list")
    assert [a["name"] for a in agents] == ["Dev-1"]


@pytest.mark.asyncio
async def test_comment_and_mailbox_round(db, publisher, agents):
    from mission_control.db import crud

    task = await crud.task_create(db, "Review PR")
    assert (await _call(db, publisher, "thread_subscribe", task_id=task.id, agent="bob"))["created"] is True

    out = await _call(db, publisher, "task_comment", task_id=task.id, agent="Alice", message="LGTM, cc @carol")
    assert out["subscribers_notified"] == 1
    assert out["mentions_notified"] == 1

    subs = await _call(db, publisher, "thread_subscribers", task_id=task.id)
    assert [s["agent_name"] for s in subs["subscribers"]] == ["Bob", "Alice"]

    box = await _call(db, publisher, "notification_list", agent="carol")
    assert box["count"] == 1
    nid = box["notifications"][0]["id"]

    marked = await _call(db, publisher, "notification_mark_read", agent="carol", notification_ids=[nid])
    assert marked == {"ok": True, "marked": 1}
    assert (await _call(db, publisher, "notification_list", agent="carol"))["count"] == 0

    status = await _call(db, publisher, "delivery_status")
    assert status["by_recipient"] == {"Bob": 1, "Carol": 1}


@pytest.mark.asyncio
async def test_activity_publish_tool(db, publisher, agents):
    out = await _call(db, publisher, "activity_publish", kind="task", message="@bob ping", actor="Alice",
                      task_id="T1", task_title="Flaky test")
    assert "activity_id" in out

    box = await _call(db, publisher, "notification_list", agent="Bob")
    assert box["notifications"][0]["title"] == "Mentioned in Flaky test"


@pytest.mark.asyncio
async def test_errors_come_back_as_payloads(db, publisher):
    assert await _call(db, publisher, "activity_publish", kind="task") == {
        "error": "Missing required fields: message, actor",
    }
    assert "not found" in (await _call(db, publisher, "notification_mark_all_read", agent="ghost"))["error"]
    assert await _call(db, publisher, "no_such_tool") == {"error": "Unknown tool: no_such_tool"}


@pytest.mark.asyncio
async def test_thread_tools_require_task_id(db, publisher, agents):
    assert await _call(db, publisher, "thread_subscribers") == {"error": "task_id is required"}
    assert await _call(db, publisher, "thread_subscribe", agent="bob") == {"error": "task_id is required"}
    assert await _call(db, publisher, "thread_unsubscribe", agent="bob", task_id="") == {"error": "task_id is required"}


def test_every_listed_tool_has_a_handler():
    assert set(TOOLS_DISPATCH) == {
        "agent_register", "agent_list", "activity_publish", "notification_list",
        "notification_mark_read", "notification_mark_all_read", "delivery_status",
        "thread_subscribe", "thread_unsubscribe", "thread_subscribers", "task_comment",
    }
