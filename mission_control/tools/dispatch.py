"""
Tool dispatch layer for the Mission Control MCP server.
Each handler receives the shared DB connection, the activity publisher and
the raw tool arguments, and returns MCP content blocks (JSON text).
"""
import json
import logging
from typing import Any

import aiosqlite
import mcp.types as types

from mission_control import notifier
from mission_control.daemon import delivery_status
from mission_control.db import crud
from mission_control.db.models import AgentInfo
from mission_control.errors import NotFoundError, PersistenceError, ValidationError
from mission_control.publisher import ActivityPublisher

logger = logging.getLogger(__name__)


def _text(payload: Any) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload))]


async def _require_agent(db: aiosqlite.Connection, ref: str | None) -> AgentInfo:
    if not ref:
        raise ValidationError("agent is required", ["agent"])
    agent = await crud.agent_resolve(db, ref)
    if agent is None:
        raise NotFoundError("Agent", ref)
    return agent


def _require_task_id(arguments: dict[str, Any]) -> str:
    task_id = arguments.get("task_id")
    if not task_id:
        raise ValidationError("task_id is required", ["task_id"])
    return task_id


async def handle_agent_register(db, publisher: ActivityPublisher, arguments: dict[str, Any]) -> list[types.TextContent]:
    agent = await crud.agent_register(
        db,
        name=arguments.get("name", ""),
        role=arguments.get("role", ""),
        model=arguments.get("model", ""),
        avatar_emoji=arguments.get("avatar_emoji"),
    )
    return _text({"agent_id": agent.id, "name": agent.name})


async def handle_agent_list(db, publisher: ActivityPublisher, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _text([a.to_dict() for a in await crud.agent_list(db)])


async def handle_activity_publish(db, publisher: ActivityPublisher, arguments: dict[str, Any]) -> list[types.TextContent]:
    activity = await publisher.publish(
        kind=arguments.get("kind"),
        message=arguments.get("message"),
        actor=arguments.get("actor"),
        actor_avatar=arguments.get("actor_avatar"),
        context={"task_id": arguments.get("task_id"), "task_title": arguments.get("task_title")},
    )
    return _text({"activity_id": activity.id, "created_at": activity.created_at.isoformat()})


async def handle_notification_list(db, publisher: ActivityPublisher, arguments: dict[str, Any]) -> list[types.TextContent]:
    notifications = await crud.notification_list(
        db,
        arguments.get("agent", ""),
        unread_only=arguments.get("unread_only", True),
        limit=arguments.get("limit", 50),
    )
    return _text({"count": len(notifications), "notifications": [n.to_dict() for n in notifications]})


async def handle_notification_mark_read(db, publisher: ActivityPublisher, arguments: dict[str, Any]) -> list[types.TextContent]:
    agent = await _require_agent(db, arguments.get("agent"))
    ids = arguments.get("notification_ids")
    if not isinstance(ids, list):
        raise ValidationError("notification_ids array required", ["notification_ids"])
    marked = await crud.notification_mark_read_many(db, agent.id, [str(i) for i in ids])
    return _text({"ok": True, "marked": marked})


async def handle_notification_mark_all_read(db, publisher: ActivityPublisher, arguments: dict[str, Any]) -> list[types.TextContent]:
    agent = await _require_agent(db, arguments.get("agent"))
    marked = await crud.notification_mark_all_read(db, agent.id)
    return _text({"ok": True, "marked": marked})


async def handle_delivery_status(db, publisher: ActivityPublisher, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _text(await delivery_status(db))


async def handle_thread_subscribe(db, publisher: ActivityPublisher, arguments: dict[str, Any]) -> list[types.TextContent]:
    agent = await _require_agent(db, arguments.get("agent"))
    created = await crud.thread_subscribe(db, _require_task_id(arguments), agent.id)
    return _text({"ok": True, "created": created})


async def handle_thread_unsubscribe(db, publisher: ActivityPublisher, arguments: dict[str, Any]) -> list[types.TextContent]:
    agent = await _require_agent(db, arguments.get("agent"))
    removed = await crud.thread_unsubscribe(db, _require_task_id(arguments), agent.id)
    return _text({"ok": True, "removed": removed})


async def handle_thread_subscribers(db, publisher: ActivityPublisher, arguments: dict[str, Any]) -> list[types.TextContent]:
    task_id = _require_task_id(arguments)
    task = await crud.task_get(db, task_id)
    if task is None:
        raise NotFoundError("Task", task_id)
    subs = await crud.thread_subscribers(db, task.id)
    return _text({"task_id": task.id, "count": len(subs), "subscribers": [s.to_dict() for s in subs]})


async def handle_task_comment(db, publisher: ActivityPublisher, arguments: dict[str, Any]) -> list[types.TextContent]:
    agent = await _require_agent(db, arguments.get("agent"))
    result = await notifier.post_comment(db, arguments.get("task_id", ""), agent.id, arguments.get("message", ""))
    return _text({
        "ok": True,
        "comment_id": result.comment.id,
        "subscribers_notified": result.subscribers_notified,
        "mentions_notified": len(result.mention_result.created),
    })


TOOLS_DISPATCH = {
    "agent_register": handle_agent_register,
    "agent_list": handle_agent_list,
    "activity_publish": handle_activity_publish,
    "notification_list": handle_notification_list,
    "notification_mark_read": handle_notification_mark_read,
    "notification_mark_all_read": handle_notification_mark_all_read,
    "delivery_status": handle_delivery_status,
    "thread_subscribe": handle_thread_subscribe,
    "thread_unsubscribe": handle_thread_unsubscribe,
    "thread_subscribers": handle_thread_subscribers,
    "task_comment": handle_task_comment,
}


async def dispatch_tool(db, publisher: ActivityPublisher, name: str, arguments: dict[str, Any]) -> list[types.Content]:
    handler = TOOLS_DISPATCH.get(name)
    if handler is None:
        return _text({"error": f"Unknown tool: {name}"})
    try:
        return await handler(db, publisher, arguments)
    except ValidationError as e:
        return _text({"error": e.reason})
    except NotFoundError as e:
        return _text({"error": str(e)})
    except PersistenceError as e:
        logger.error(f"[{name}] {e}")
        return _text({"error": "Internal server error"})
