"""
CRUD operations for Mission Control.
All functions are async and receive the aiosqlite connection from the caller.

Storage failures surface as PersistenceError; callers never see raw sqlite3 errors.
"""
import json
import uuid
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import aiosqlite

from mission_control.db.models import (
    Activity, ActivityContext, ActivityKind, AgentInfo, BulkEnqueueResult,
    Comment, Notification, NotificationKind, Subscriber, Task,
)
from mission_control.errors import (
    MissionControlError, NotFoundError, PersistenceError, ValidationError,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


@contextmanager
def _storage(operation: str):
    """Translate sqlite3 failures raised inside the block into PersistenceError."""
    try:
        yield
    except sqlite3.Error as e:
        logger.error(f"{operation} failed: {type(e).__name__}: {e}")
        raise PersistenceError(operation, e) from e


# ─────────────────────────────────────────────
# Agent registry (identity resolution)
# ─────────────────────────────────────────────

async def agent_register(
    db: aiosqlite.Connection,
    name: str,
    role: str = "",
    model: str = "",
    avatar_emoji: Optional[str] = None,
) -> AgentInfo:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Missing required field: name", ["name"])
    aid = str(uuid.uuid4())
    now = _now()
    avatar = avatar_emoji or "🤖"
    try:
        with _storage("agent_register"):
            await db.execute(
                "INSERT INTO agents (id, name, role, model, avatar_emoji, status, created_at) "
                "VALUES (?, ?, ?, ?, ?, 'idle', ?)",
                (aid, name, role, model, avatar, now),
            )
            await db.commit()
    except PersistenceError as e:
        if isinstance(e.cause, sqlite3.IntegrityError):
            raise ValidationError(f"Agent name '{name}' is already registered", ["name"]) from e
        raise
    logger.info(f"Agent registered: {aid} '{name}'")
    return AgentInfo(id=aid, name=name, role=role, model=model, avatar_emoji=avatar,
                     status="idle", created_at=_parse_dt(now))


async def agent_get(db: aiosqlite.Connection, agent_id: str) -> Optional[AgentInfo]:
    with _storage("agent_get"):
        async with db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)) as cur:
            row = await cur.fetchone()
    return _row_to_agent(row) if row else None


async def agent_get_by_name(db: aiosqlite.Connection, name: str) -> Optional[AgentInfo]:
    """Case-insensitive display-name lookup."""
    with _storage("agent_get_by_name"):
        async with db.execute(
            "SELECT * FROM agents WHERE name = ? COLLATE NOCASE ORDER BY created_at LIMIT 1", (name,)
        ) as cur:
            row = await cur.fetchone()
    return _row_to_agent(row) if row else None


async def agent_resolve(db: aiosqlite.Connection, identifier: str) -> Optional[AgentInfo]:
    """Resolve a human-entered identifier (stable id first, then display name)."""
    if not identifier:
        return None
    agent = await agent_get(db, identifier)
    if agent is None:
        agent = await agent_get_by_name(db, identifier)
    return agent


async def agent_resolve_names(db: aiosqlite.Connection, names: Iterable[str]) -> list[AgentInfo]:
    """Resolve display names to agents, case-insensitively. Unknown names are dropped."""
    wanted = [n.lower() for n in names if n]
    if not wanted:
        return []
    placeholders = ",".join("?" for _ in wanted)
    with _storage("agent_resolve_names"):
        async with db.execute(
            f"SELECT * FROM agents WHERE lower(name) IN ({placeholders}) ORDER BY created_at",
            wanted,
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_agent(r) for r in rows]


async def agent_list(db: aiosqlite.Connection) -> list[AgentInfo]:
    with _storage("agent_list"):
        async with db.execute("SELECT * FROM agents ORDER BY created_at") as cur:
            rows = await cur.fetchall()
    return [_row_to_agent(r) for r in rows]


def _row_to_agent(row: aiosqlite.Row) -> AgentInfo:
    return AgentInfo(
        id=row["id"],
        name=row["name"],
        role=row["role"] or "",
        model=row["model"] or "",
        avatar_emoji=row["avatar_emoji"],
        status=row["status"],
        created_at=_parse_dt(row["created_at"]),
    )


# ─────────────────────────────────────────────
# Tasks and comments
# ─────────────────────────────────────────────

TASK_STATUSES = {"backlog", "todo", "in_progress", "review", "done"}


async def task_create(
    db: aiosqlite.Connection,
    title: str,
    assignee: Optional[str] = None,
    status: str = "backlog",
) -> Task:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Missing required field: title", ["title"])
    if status not in TASK_STATUSES:
        raise ValidationError(f"Invalid status '{status}'. Must be one of {sorted(TASK_STATUSES)}", ["status"])
    # An assignee moves a backlog card straight to 'todo'
    if assignee and status == "backlog":
        status = "todo"
    tid = str(uuid.uuid4())
    now = _now()
    with _storage("task_create"):
        await db.execute(
            "INSERT INTO tasks (id, title, assignee, status, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            (tid, title, assignee, status, now, now),
        )
        await db.commit()
    logger.info(f"Task created: {tid} '{title}'")
    return Task(id=tid, title=title, assignee=assignee, status=status,
                created_at=_parse_dt(now), updated_at=_parse_dt(now))


async def task_get(db: aiosqlite.Connection, task_id: str) -> Optional[Task]:
    with _storage("task_get"):
        async with db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)) as cur:
            row = await cur.fetchone()
    return _row_to_task(row) if row else None


async def task_update(
    db: aiosqlite.Connection,
    task_id: str,
    title: Optional[str] = None,
    assignee: Optional[str] = None,
    status: Optional[str] = None,
) -> Optional[Task]:
    current = await task_get(db, task_id)
    if current is None:
        return None
    if status is not None and status not in TASK_STATUSES:
        raise ValidationError(f"Invalid status '{status}'. Must be one of {sorted(TASK_STATUSES)}", ["status"])
    if assignee and current.status == "backlog" and status is None:
        status = "todo"
    now = _now()
    with _storage("task_update"):
        await db.execute(
            "UPDATE tasks SET title = ?, assignee = ?, status = ?, updated_at = ? WHERE id = ?",
            (title or current.title,
             assignee if assignee is not None else current.assignee,
             status or current.status,
             now, task_id),
        )
        await db.commit()
    return await task_get(db, task_id)


def _row_to_task(row: aiosqlite.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        assignee=row["assignee"],
        status=row["status"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


async def comment_create(db: aiosqlite.Connection, task_id: str, author: str, message: str) -> Comment:
    cid = str(uuid.uuid4())
    now = _now()
    message = message.strip()
    with _storage("comment_create"):
        await db.execute(
            "INSERT INTO task_comments (id, task_id, author, message, created_at) VALUES (?, ?, ?, ?, ?)",
            (cid, task_id, author, message, now),
        )
        await db.commit()
    return Comment(id=cid, task_id=task_id, author=author, message=message, created_at=_parse_dt(now))


async def comment_list(db: aiosqlite.Connection, task_id: str) -> list[Comment]:
    with _storage("comment_list"):
        async with db.execute(
            "SELECT * FROM task_comments WHERE task_id = ? ORDER BY created_at ASC, rowid ASC", (task_id,)
        ) as cur:
            rows = await cur.fetchall()
    return [Comment(id=r["id"], task_id=r["task_id"], author=r["author"], message=r["message"],
                    created_at=_parse_dt(r["created_at"])) for r in rows]


# ─────────────────────────────────────────────
# Subscription registry
# ─────────────────────────────────────────────

async def thread_subscribe(db: aiosqlite.Connection, task_id: str, agent_id: str) -> bool:
    """Subscribe an agent to a task thread. Returns True if a new row was created.

    Idempotent under concurrency: the UNIQUE (task_id, agent_id) constraint plus
    ON CONFLICT DO NOTHING makes a racing second insert a no-op.
    """
    try:
        with _storage("thread_subscribe"):
            async with db.execute(
                "INSERT INTO task_subscriptions (id, task_id, agent_id, subscribed_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(task_id, agent_id) DO NOTHING",
                (str(uuid.uuid4()), task_id, agent_id, _now()),
            ) as cur:
                created = cur.rowcount > 0
            await db.commit()
    except PersistenceError as e:
        if isinstance(e.cause, sqlite3.IntegrityError):
            # Foreign key: unknown task or agent
            raise NotFoundError("task or agent", f"{task_id}/{agent_id}") from e
        raise
    if created:
        logger.debug(f"Subscribed {agent_id} to task {task_id}")
    return created


async def thread_unsubscribe(db: aiosqlite.Connection, task_id: str, agent_id: str) -> bool:
    """Remove a subscription. Removing one that does not exist is not an error."""
    with _storage("thread_unsubscribe"):
        async with db.execute(
            "DELETE FROM task_subscriptions WHERE task_id = ? AND agent_id = ?", (task_id, agent_id)
        ) as cur:
            removed = cur.rowcount > 0
        await db.commit()
    return removed


async def thread_subscribers(db: aiosqlite.Connection, task_id: str) -> list[Subscriber]:
    with _storage("thread_subscribers"):
        async with db.execute(
            """
            SELECT s.id, s.task_id, s.agent_id, s.subscribed_at,
                   a.name AS agent_name, a.avatar_emoji AS agent_avatar, a.status AS agent_status
            FROM task_subscriptions s
            JOIN agents a ON a.id = s.agent_id
            WHERE s.task_id = ?
            ORDER BY s.subscribed_at ASC, s.rowid ASC
            """,
            (task_id,),
        ) as cur:
            rows = await cur.fetchall()
    return [Subscriber(
        id=r["id"],
        task_id=r["task_id"],
        agent_id=r["agent_id"],
        agent_name=r["agent_name"],
        agent_avatar=r["agent_avatar"],
        agent_status=r["agent_status"],
        subscribed_at=_parse_dt(r["subscribed_at"]),
    ) for r in rows]


async def thread_is_subscribed(db: aiosqlite.Connection, task_id: str, agent_id: str) -> bool:
    with _storage("thread_is_subscribed"):
        async with db.execute(
            "SELECT 1 FROM task_subscriptions WHERE task_id = ? AND agent_id = ?", (task_id, agent_id)
        ) as cur:
            row = await cur.fetchone()
    return row is not None


# ─────────────────────────────────────────────
# Notification queue
# ─────────────────────────────────────────────

async def notification_enqueue(
    db: aiosqlite.Connection,
    recipient_id: str,
    kind: NotificationKind | str,
    title: str,
    body: str,
    metadata: Optional[dict[str, Any]] = None,
) -> Notification:
    try:
        kind = NotificationKind(kind)
    except ValueError:
        raise ValidationError(f"Invalid notification kind '{kind}'", ["kind"]) from None
    nid = str(uuid.uuid4())
    now = _now()
    meta = metadata or {}
    with _storage("notification_enqueue"):
        await db.execute(
            "INSERT INTO notifications (id, recipient_id, kind, title, body, read, delivered, metadata, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, 0, 0, ?, ?, ?)",
            (nid, recipient_id, kind.value, title, body, json.dumps(meta), now, now),
        )
        await db.commit()
    logger.debug(f"Notification queued: {nid} kind={kind.value} recipient={recipient_id}")
    return Notification(id=nid, recipient_id=recipient_id, kind=kind, title=title, body=body,
                        read=False, delivered=False, metadata=meta,
                        created_at=_parse_dt(now), updated_at=_parse_dt(now))


async def notification_enqueue_bulk(
    db: aiosqlite.Connection,
    recipient_ids: Iterable[str],
    kind: NotificationKind | str,
    title: str,
    body: str,
    metadata: Optional[dict[str, Any]] = None,
) -> BulkEnqueueResult:
    """Fan one notification out to many recipients.

    Every recipient is attempted; a failure for one is recorded in
    ``result.failed`` and does not stop the rest.
    """
    result = BulkEnqueueResult()
    for rid in recipient_ids:
        try:
            n = await notification_enqueue(db, rid, kind, title, body, metadata)
        except MissionControlError as e:
            logger.warning(f"Failed to enqueue notification for {rid}: {e}")
            result.failed.append((rid, str(e)))
            continue
        result.created.append(n)
    if result.failed:
        logger.warning(f"Bulk enqueue: {len(result.created)} created, {len(result.failed)} failed")
    return result


async def notification_get(db: aiosqlite.Connection, notification_id: str) -> Optional[Notification]:
    with _storage("notification_get"):
        async with db.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)) as cur:
            row = await cur.fetchone()
    return _row_to_notification(row) if row else None


async def notification_list(
    db: aiosqlite.Connection,
    recipient: str,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    """A recipient's mailbox, newest first.

    `recipient` may be a stable id or a display name. An identifier that does
    not resolve yields an empty list rather than an error.
    """
    agent = await agent_resolve(db, recipient)
    if agent is None:
        logger.warning(f"Could not resolve notification recipient '{recipient}', returning empty mailbox")
        return []
    sql = "SELECT * FROM notifications WHERE recipient_id = ?"
    if unread_only:
        sql += " AND read = 0"
    sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
    with _storage("notification_list"):
        async with db.execute(sql, (agent.id, limit)) as cur:
            rows = await cur.fetchall()
    return [_row_to_notification(r) for r in rows]


async def notification_list_pending(
    db: aiosqlite.Connection,
    recipient_id: Optional[str] = None,
    limit: Optional[int] = None,
    unread_only: bool = False,
) -> list[Notification]:
    """Undelivered notifications, oldest first, system-wide or for one recipient."""
    sql = "SELECT * FROM notifications WHERE delivered = 0"
    params: list[Any] = []
    if recipient_id:
        sql += " AND recipient_id = ?"
        params.append(recipient_id)
    if unread_only:
        sql += " AND read = 0"
    sql += " ORDER BY created_at ASC, rowid ASC"
    if limit:
        sql += " LIMIT ?"
        params.append(limit)
    with _storage("notification_list_pending"):
        async with db.execute(sql, params) as cur:
            rows = await cur.fetchall()
    return [_row_to_notification(r) for r in rows]


async def notification_pending_by_recipient(db: aiosqlite.Connection) -> dict[str, int]:
    """Undelivered counts keyed by recipient display name."""
    with _storage("notification_pending_by_recipient"):
        async with db.execute(
            """
            SELECT COALESCE(a.name, 'unknown') AS recipient, COUNT(*) AS cnt
            FROM notifications n
            LEFT JOIN agents a ON a.id = n.recipient_id
            WHERE n.delivered = 0
            GROUP BY recipient
            ORDER BY recipient
            """
        ) as cur:
            rows = await cur.fetchall()
    return {r["recipient"]: r["cnt"] for r in rows}


async def notification_mark_read(db: aiosqlite.Connection, notification_id: str) -> bool:
    """Mark one notification read. Returns False only if it does not exist."""
    with _storage("notification_mark_read"):
        async with db.execute(
            "UPDATE notifications SET read = 1, updated_at = ? WHERE id = ? AND read = 0",
            (_now(), notification_id),
        ) as cur:
            updated = cur.rowcount
        await db.commit()
    if updated:
        return True
    return await notification_get(db, notification_id) is not None


async def notification_mark_all_read(db: aiosqlite.Connection, recipient_id: str) -> int:
    with _storage("notification_mark_all_read"):
        async with db.execute(
            "UPDATE notifications SET read = 1, updated_at = ? WHERE recipient_id = ? AND read = 0",
            (_now(), recipient_id),
        ) as cur:
            updated = cur.rowcount
        await db.commit()
    return updated


async def notification_mark_read_many(
    db: aiosqlite.Connection, recipient_id: str, notification_ids: list[str]
) -> int:
    """Mark the given ids read, restricted to the recipient's own mailbox."""
    if not notification_ids:
        return 0
    placeholders = ",".join("?" for _ in notification_ids)
    with _storage("notification_mark_read_many"):
        async with db.execute(
            f"UPDATE notifications SET read = 1, updated_at = ? "
            f"WHERE recipient_id = ? AND read = 0 AND id IN ({placeholders})",
            (_now(), recipient_id, *notification_ids),
        ) as cur:
            updated = cur.rowcount
        await db.commit()
    return updated


async def notification_mark_delivered(db: aiosqlite.Connection, notification_id: str) -> bool:
    """One-way transition delivered 0 -> 1. Returns True only on the call that flips it."""
    with _storage("notification_mark_delivered"):
        async with db.execute(
            "UPDATE notifications SET delivered = 1, updated_at = ? WHERE id = ? AND delivered = 0",
            (_now(), notification_id),
        ) as cur:
            updated = cur.rowcount
        await db.commit()
    return updated > 0


def _row_to_notification(row: aiosqlite.Row) -> Notification:
    try:
        meta = json.loads(row["metadata"]) if row["metadata"] else {}
    except ValueError:
        meta = {}
    return Notification(
        id=row["id"],
        recipient_id=row["recipient_id"],
        kind=NotificationKind(row["kind"]),
        title=row["title"],
        body=row["body"],
        read=bool(row["read"]),
        delivered=bool(row["delivered"]),
        metadata=meta if isinstance(meta, dict) else {},
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]) if row["updated_at"] else _parse_dt(row["created_at"]),
    )


# ─────────────────────────────────────────────
# Activity log
# ─────────────────────────────────────────────

async def activity_save(db: aiosqlite.Connection, activity: Activity) -> None:
    ctx = activity.to_dict()["context"]
    with _storage("activity_save"):
        await db.execute(
            "INSERT INTO activities (id, kind, message, actor, actor_avatar, context, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (activity.id, activity.kind.value, activity.message, activity.actor,
             activity.actor_avatar, json.dumps(ctx), activity.created_at.isoformat()),
        )
        await db.commit()


async def activity_list(db: aiosqlite.Connection, limit: int = 50) -> list[Activity]:
    """Most recent activities first."""
    with _storage("activity_list"):
        async with db.execute(
            "SELECT * FROM activities ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
        ) as cur:
            rows = await cur.fetchall()
    out = []
    for r in rows:
        ctx = json.loads(r["context"]) if r["context"] else {}
        out.append(Activity(
            id=r["id"],
            kind=ActivityKind(r["kind"]),
            message=r["message"],
            actor=r["actor"],
            actor_avatar=r["actor_avatar"],
            created_at=_parse_dt(r["created_at"]),
            context=ActivityContext(
                task_id=ctx.get("task_id"),
                task_title=ctx.get("task_title"),
                mentioned_users=tuple(ctx.get("mentioned_users") or ()),
            ),
        ))
    return out
