"""
Mission Control main entry point.

Starts a FastAPI HTTP server that:
  1. Mounts the MCP Server (SSE + JSON-RPC) at /mcp
  2. Streams live activity to dashboards at /api/sse
  3. Serves the REST API for activities, notifications, task threads and agents
  4. Runs the notification delivery daemon as a background task (optional)
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from mcp.server.sse import SseServerTransport
from pydantic import AliasChoices, BaseModel, Field

from mission_control import notifier
from mission_control.broadcast import LiveBroadcastChannel, LiveConnection
from mission_control.config import (
    ACTIVITY_PERSIST, BUS_VERSION, DELIVERY_IN_PROCESS, HOST, PORT,
    get_config_dict, save_config_dict,
)
from mission_control.daemon import DeliveryDaemon, InProcessPoller, deliver_pending, delivery_status
from mission_control.db.database import close_db, get_db
from mission_control.db import crud
from mission_control.errors import NotFoundError, PersistenceError, ValidationError
from mission_control.mcp_server import server as mcp_server, set_publisher
from mission_control.publisher import ActivityPublisher

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mission_control")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: DB, live channel, publisher, delivery daemon
    await get_db()
    channel = LiveBroadcastChannel()
    publisher = ActivityPublisher(channel)
    app.state.channel = channel
    app.state.publisher = publisher
    app.state.daemon = None
    set_publisher(publisher)

    daemon_task = None
    if DELIVERY_IN_PROCESS:
        daemon = DeliveryDaemon(InProcessPoller())
        app.state.daemon = daemon
        daemon_task = asyncio.create_task(daemon.serve(), name="delivery-daemon")

    logger.info(f"Mission Control running at http://{HOST}:{PORT}")
    yield

    # Shutdown: stop the daemon, drop live clients, close DB
    if daemon_task is not None:
        app.state.daemon.request_shutdown()
        await daemon_task
    channel.close_all()
    set_publisher(None)
    await close_db()


app = FastAPI(
    title="Mission Control",
    description="Activity fan-out and notification delivery for multi-agent task boards.",
    version=BUS_VERSION,
    lifespan=lifespan,
)


# ─────────────────────────────────────────────
# Error mapping
# ─────────────────────────────────────────────

@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": exc.reason})


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()]
    return JSONResponse(status_code=400, content={"error": f"Invalid request body: {', '.join(fields)}"})


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"error": f"{exc.entity} not found"})


@app.exception_handler(PersistenceError)
async def _persistence_error(request: Request, exc: PersistenceError):
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ─────────────────────────────────────────────
# MCP SSE Transport (mounted at /mcp)
# ─────────────────────────────────────────────

sse_transport = SseServerTransport("/mcp/messages")


class _SseCompletedResponse:
    """
    Returned from mcp_sse_endpoint after connect_sse() exits.

    The SSE transport has already written the whole HTTP response through
    request._send; a real Response here would emit a second
    http.response.start, which uvicorn rejects.
    """
    async def __call__(self, scope, receive, send):
        pass


@app.get("/mcp/sse")
async def mcp_sse_endpoint(request: Request):
    """MCP SSE endpoint consumed by agent runtimes."""
    try:
        async with sse_transport.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await mcp_server.run(
                streams[0], streams[1],
                mcp_server.create_initialization_options(),
            )
    except Exception as exc:
        # Usually a plain client disconnect (ClosedResourceError, CancelledError)
        logger.debug("MCP SSE session ended: %s: %s", type(exc).__name__, exc)
    return _SseCompletedResponse()


# Raw ASGI mount: the transport answers 202 itself.
app.mount("/mcp/messages/", app=sse_transport.handle_post_message)


class _AsgiDisconnectFilter(logging.Filter):
    """Drops uvicorn 'Exception in ASGI application' noise from MCP client disconnects."""
    _NOISE = (
        "Unexpected ASGI message 'http.response.start'",
        "Expected ASGI message 'http.response.body'",
    )
    def filter(self, record: logging.LogRecord) -> bool:
        return not any(n in record.getMessage() for n in self._NOISE)

for _ln in ("uvicorn.error", "uvicorn"):
    logging.getLogger(_ln).addFilter(_AsgiDisconnectFilter())


# ─────────────────────────────────────────────
# Activities + live stream
# ─────────────────────────────────────────────

class ActivityCreate(BaseModel):
    kind: str | None = Field(None, validation_alias=AliasChoices("kind", "type"))
    message: str | None = None
    actor: str | None = Field(None, validation_alias=AliasChoices("actor", "agent"))
    actor_avatar: str | None = Field(None, validation_alias=AliasChoices("actor_avatar", "agentAvatar"))
    context: dict[str, Any] | None = Field(None, validation_alias=AliasChoices("context", "metadata"))


@app.post("/api/activities")
async def api_publish_activity(request: Request, body: ActivityCreate):
    publisher: ActivityPublisher = request.app.state.publisher
    activity = await publisher.publish(
        kind=body.kind,
        message=body.message,
        actor=body.actor,
        actor_avatar=body.actor_avatar,
        context=body.context,
    )
    if ACTIVITY_PERSIST:
        try:
            await crud.activity_save(await get_db(), activity)
        except PersistenceError as e:
            # Broadcast already happened; replay storage is best effort
            logger.error(f"Failed to persist activity {activity.id}: {e}")
    return {"success": True, "activity": activity.to_dict()}


@app.get("/api/activities")
async def api_list_activities(request: Request, limit: int = 50):
    db = await get_db()
    activities = await crud.activity_list(db, limit=limit)
    return {
        "activities": [a.to_dict() for a in activities],
        "connections": request.app.state.channel.connection_count,
    }


@app.get("/api/sse")
async def api_live_stream(request: Request):
    """SSE stream of every published activity, with a periodic heartbeat."""
    channel: LiveBroadcastChannel = request.app.state.channel
    conn = channel.register(LiveConnection())

    async def event_generator():
        try:
            async for frame in conn.frames():
                yield frame
        finally:
            channel.unregister(conn)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
    )


# ─────────────────────────────────────────────
# Notifications
# ─────────────────────────────────────────────

class NotificationCreate(BaseModel):
    user_id: str | None = Field(None, validation_alias=AliasChoices("user_id", "recipient_id", "userId"))
    kind: str | None = Field(None, validation_alias=AliasChoices("kind", "type"))
    title: str | None = None
    body: str | None = Field(None, validation_alias=AliasChoices("body", "message"))
    metadata: dict[str, Any] | None = None


class NotificationUpdate(BaseModel):
    notification_id: str | None = None
    mark_all: bool = False
    user_id: str | None = None


class MarkRead(BaseModel):
    notificationIds: list[str] | None = None


@app.get("/api/notifications")
async def api_list_notifications(user_id: str | None = None, unread_only: bool = False, limit: int = 50):
    if not user_id:
        raise ValidationError("user_id is required", ["user_id"])
    db = await get_db()
    notifications = await crud.notification_list(db, user_id, unread_only=unread_only, limit=limit)
    return {"notifications": [n.to_dict() for n in notifications]}


@app.post("/api/notifications", status_code=201)
async def api_create_notification(body: NotificationCreate):
    missing = [name for name, value in (("user_id", body.user_id), ("type", body.kind),
                                        ("title", body.title), ("message", body.body)) if not value]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing)
    db = await get_db()
    agent = await crud.agent_resolve(db, body.user_id)
    if agent is None:
        raise NotFoundError("Recipient", body.user_id)
    n = await crud.notification_enqueue(db, agent.id, body.kind, body.title, body.body, body.metadata)
    return {"notification": n.to_dict()}


@app.patch("/api/notifications")
async def api_update_notifications(body: NotificationUpdate):
    db = await get_db()
    if body.mark_all:
        if not body.user_id:
            raise ValidationError("user_id is required with mark_all", ["user_id"])
        agent = await crud.agent_resolve(db, body.user_id)
        if agent is None:
            raise NotFoundError("Agent", body.user_id)
        marked = await crud.notification_mark_all_read(db, agent.id)
        return {"success": True, "marked": marked}
    if not body.notification_id:
        raise ValidationError("notification_id or mark_all is required", ["notification_id", "mark_all"])
    if not await crud.notification_mark_read(db, body.notification_id):
        raise NotFoundError("Notification", body.notification_id)
    return {"success": True, "marked": 1}


@app.post("/api/notifications/deliver")
async def api_deliver_notifications():
    db = await get_db()
    report = await deliver_pending(db)
    return report.to_dict()


@app.get("/api/notifications/deliver")
async def api_delivery_status(request: Request):
    db = await get_db()
    status = await delivery_status(db)
    daemon: DeliveryDaemon | None = request.app.state.daemon
    if daemon is not None:
        status["daemon"] = {
            "state": daemon.state.value,
            "interval": daemon.interval,
            "cycles": daemon.cycles,
            "skipped": daemon.skipped,
            "failures": daemon.failures,
        }
    return status


# ─────────────────────────────────────────────
# Agents
# ─────────────────────────────────────────────

class AgentRegister(BaseModel):
    name: str
    role: str = ""
    model: str = ""
    avatar_emoji: str | None = None


@app.post("/api/agents/register", status_code=200)
async def api_agent_register(body: AgentRegister):
    db = await get_db()
    a = await crud.agent_register(db, body.name, body.role, body.model, body.avatar_emoji)
    return {"agent_id": a.id, "name": a.name}


@app.get("/api/agents")
async def api_agents():
    db = await get_db()
    return [a.to_dict() for a in await crud.agent_list(db)]


@app.get("/api/agents/{name}/notifications")
async def api_agent_notifications(name: str, limit: int = 50):
    db = await get_db()
    agent = await crud.agent_get_by_name(db, name)
    if agent is None:
        raise NotFoundError("Agent", name)
    notifications = await crud.notification_list(db, agent.id, unread_only=True, limit=limit)
    return {
        "agent": agent.name,
        "count": len(notifications),
        "notifications": [n.to_dict() for n in notifications],
    }


@app.post("/api/agents/{name}/notifications/mark-read")
async def api_agent_mark_read(name: str, body: MarkRead):
    if body.notificationIds is None:
        raise ValidationError("notificationIds array required", ["notificationIds"])
    db = await get_db()
    agent = await crud.agent_get_by_name(db, name)
    if agent is None:
        raise NotFoundError("Agent", name)
    marked = await crud.notification_mark_read_many(db, agent.id, body.notificationIds)
    return {"success": True, "marked": marked}


# ─────────────────────────────────────────────
# Tasks, threads and comments
# ─────────────────────────────────────────────

class SubscriptionChange(BaseModel):
    taskId: str | None = None
    agentId: str | None = None
    action: str = "subscribe"


class CommentCreate(BaseModel):
    taskId: str | None = None
    authorId: str | None = None
    message: str | None = None


class TaskCreate(BaseModel):
    title: str | None = None
    assignee: str | None = None
    status: str = "backlog"


class TaskUpdate(BaseModel):
    id: str | None = None
    title: str | None = None
    assignee: str | None = None
    status: str | None = None
    actor: str | None = None


@app.post("/api/tasks/subscribe")
async def api_task_subscribe(body: SubscriptionChange):
    if not body.taskId or not body.agentId:
        raise ValidationError("taskId and agentId are required", ["taskId", "agentId"])
    db = await get_db()
    if body.action == "unsubscribe":
        removed = await crud.thread_unsubscribe(db, body.taskId, body.agentId)
        return {"success": True, "action": "unsubscribed", "removed": removed}
    if body.action != "subscribe":
        raise ValidationError(f"Invalid action '{body.action}'. Must be subscribe or unsubscribe", ["action"])
    created = await crud.thread_subscribe(db, body.taskId, body.agentId)
    return {"success": True, "action": "subscribed", "created": created}


@app.get("/api/tasks/subscribe")
async def api_task_subscribers(taskId: str | None = None):
    if not taskId:
        raise ValidationError("taskId is required", ["taskId"])
    db = await get_db()
    if await crud.task_get(db, taskId) is None:
        raise NotFoundError("Task", taskId)
    subscribers = await crud.thread_subscribers(db, taskId)
    return {"subscribers": [s.to_dict() for s in subscribers]}


@app.post("/api/tasks/comments", status_code=201)
async def api_post_comment(body: CommentCreate):
    db = await get_db()
    result = await notifier.post_comment(db, body.taskId or "", body.authorId or "", body.message or "")
    return {
        "comment": result.comment.to_dict(),
        "subscribersNotified": result.subscribers_notified,
        "mentionsNotified": len(result.mention_result.created),
    }


@app.get("/api/tasks/comments")
async def api_list_comments(taskId: str | None = None):
    if not taskId:
        raise ValidationError("taskId is required", ["taskId"])
    db = await get_db()
    return {"comments": [c.to_dict() for c in await crud.comment_list(db, taskId)]}


@app.post("/api/tasks", status_code=201)
async def api_create_task(body: TaskCreate):
    db = await get_db()
    task = await notifier.create_task(db, body.title or "", assignee=body.assignee, status=body.status)
    return {"task": task.to_dict()}


@app.patch("/api/tasks")
async def api_update_task(body: TaskUpdate):
    db = await get_db()
    task = await notifier.update_task(
        db, body.id or "", title=body.title, assignee=body.assignee, status=body.status, actor=body.actor,
    )
    return {"task": task.to_dict()}


# ─────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────

_EDITABLE_SETTINGS = {"HOST", "PORT", "DELIVERY_POLL_INTERVAL", "DELIVERY_IN_PROCESS",
                      "SSE_HEARTBEAT_INTERVAL", "ACTIVITY_PERSIST"}


@app.get("/api/settings")
async def api_get_settings():
    return get_config_dict()


@app.put("/api/settings")
async def api_update_settings(body: dict[str, Any]):
    unknown = sorted(set(body) - _EDITABLE_SETTINGS)
    if unknown:
        raise ValidationError(f"Unknown settings: {', '.join(unknown)}", unknown)
    save_config_dict(body)
    return {"ok": True, "message": "Settings saved. Restart the server to apply them."}


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": "MissionControl", "version": BUS_VERSION}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("mission_control.main:app", host=HOST, port=PORT, reload=True)
