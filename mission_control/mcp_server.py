"""
MCP Server for Mission Control.

Gives agents a tool surface for their side of the board: register, publish
activity, poll and acknowledge their mailbox, manage thread subscriptions.
Mounted onto the FastAPI app via SSE transport, or run over stdio.
"""
import json
import logging
from typing import Any

import mcp.types as types
from mcp.server import Server

from mission_control.broadcast import LiveBroadcastChannel
from mission_control.config import BUS_VERSION, HOST, PORT
from mission_control.daemon import delivery_status
from mission_control.db.database import get_db
from mission_control.db import crud
from mission_control.publisher import ActivityPublisher
from mission_control.tools.dispatch import dispatch_tool

logger = logging.getLogger(__name__)

# Publisher shared with the HTTP app so agent activity reaches live dashboards.
# Attached by the app lifespan; stdio mode falls back to a private channel.
_publisher: ActivityPublisher | None = None


def set_publisher(publisher: ActivityPublisher | None) -> None:
    global _publisher
    _publisher = publisher


def get_publisher() -> ActivityPublisher:
    global _publisher
    if _publisher is None:
        logger.info("No shared publisher attached, using a private broadcast channel")
        _publisher = ActivityPublisher(LiveBroadcastChannel(heartbeat_interval=0))
    return _publisher


# Create the MCP server instance
server = Server("MissionControl")


_AGENT_REF = {"type": "string", "description": "Agent id or display name (case-insensitive)."}


# ═════════════════════════════════════════════
# TOOLS
# ═════════════════════════════════════════════

@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return [
        # ── Agents ─────────────────────────────
        types.Tool(
            name="agent_register",
            description="Register a new agent identity on the board. The name is what @mentions resolve against.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name":         {"type": "string"},
                    "role":         {"type": "string"},
                    "model":        {"type": "string"},
                    "avatar_emoji": {"type": "string"},
                },
                "required": ["name"],
            },
        ),
        types.Tool(
            name="agent_list",
            description="List all registered agents.",
            inputSchema={"type": "object", "properties": {}},
        ),

        # ── Activity ───────────────────────────
        types.Tool(
            name="activity_publish",
            description=(
                "Publish an activity to the live dashboard feed. "
                "If the message contains @mentions and task_id + task_title are given, "
                "mentioned agents receive a notification."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "kind":         {"type": "string", "enum": ["task", "agent", "system", "mention"]},
                    "message":      {"type": "string"},
                    "actor":        {"type": "string", "description": "Display name of the acting agent."},
                    "actor_avatar": {"type": "string"},
                    "task_id":      {"type": "string"},
                    "task_title":   {"type": "string"},
                },
                "required": ["kind", "message", "actor"],
            },
        ),

        # ── Mailbox ────────────────────────────
        types.Tool(
            name="notification_list",
            description="Fetch an agent's notifications, newest first. Call this on every heartbeat.",
            inputSchema={
                "type": "object",
                "properties": {
                    "agent":       _AGENT_REF,
                    "unread_only": {"type": "boolean", "default": True},
                    "limit":       {"type": "integer", "default": 50},
                },
                "required": ["agent"],
            },
        ),
        types.Tool(
            name="notification_mark_read",
            description="Mark specific notifications of an agent as read.",
            inputSchema={
                "type": "object",
                "properties": {
                    "agent": _AGENT_REF,
                    "notification_ids": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["agent", "notification_ids"],
            },
        ),
        types.Tool(
            name="notification_mark_all_read",
            description="Mark every notification of an agent as read.",
            inputSchema={
                "type": "object",
                "properties": {"agent": _AGENT_REF},
                "required": ["agent"],
            },
        ),
        types.Tool(
            name="delivery_status",
            description="Count undelivered notifications, grouped by recipient.",
            inputSchema={"type": "object", "properties": {}},
        ),

        # ── Task threads ───────────────────────
        types.Tool(
            name="thread_subscribe",
            description="Subscribe an agent to a task thread. Subscribing twice is a no-op.",
            inputSchema={
                "type": "object",
                "properties": {"task_id": {"type": "string"}, "agent": _AGENT_REF},
                "required": ["task_id", "agent"],
            },
        ),
        types.Tool(
            name="thread_unsubscribe",
            description="Unsubscribe an agent from a task thread.",
            inputSchema={
                "type": "object",
                "properties": {"task_id": {"type": "string"}, "agent": _AGENT_REF},
                "required": ["task_id", "agent"],
            },
        ),
        types.Tool(
            name="thread_subscribers",
            description="List the subscribers of a task thread, oldest subscription first.",
            inputSchema={
                "type": "object",
                "properties": {"task_id": {"type": "string"}},
                "required": ["task_id"],
            },
        ),
        types.Tool(
            name="task_comment",
            description=(
                "Comment on a task. You are auto-subscribed to the thread; every other "
                "subscriber and every @mentioned agent is notified."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "task_id": {"type": "string"},
                    "agent":   _AGENT_REF,
                    "message": {"type": "string"},
                },
                "required": ["task_id", "agent", "message"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.Content]:
    db = await get_db()
    return await dispatch_tool(db, get_publisher(), name, arguments or {})


# ═════════════════════════════════════════════
# RESOURCES
# ═════════════════════════════════════════════

@server.list_resources()
async def list_resources() -> list[types.Resource]:
    return [
        types.Resource(
            uri="mission://board/config",
            name="Board Configuration",
            description="Server version and endpoint.",
            mimeType="application/json",
        ),
        types.Resource(
            uri="mission://agents/all",
            name="Agents",
            description="All registered agents.",
            mimeType="application/json",
        ),
        types.Resource(
            uri="mission://notifications/pending",
            name="Pending Notifications",
            description="Undelivered notification counts grouped by recipient.",
            mimeType="application/json",
        ),
    ]


@server.read_resource()
async def read_resource(uri: types.AnyUrl) -> str:
    db = await get_db()
    uri_str = str(uri)

    if uri_str == "mission://board/config":
        return json.dumps({
            "name": "Mission Control",
            "version": BUS_VERSION,
            "endpoint": f"http://{HOST}:{PORT}",
        }, indent=2)

    if uri_str == "mission://agents/all":
        return json.dumps([a.to_dict() for a in await crud.agent_list(db)], indent=2)

    if uri_str == "mission://notifications/pending":
        return json.dumps(await delivery_status(db), indent=2)

    return f"Unknown resource URI: {uri_str}"
