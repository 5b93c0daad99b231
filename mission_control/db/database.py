"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from mission_control.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection pool (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def connect(path: str) -> aiosqlite.Connection:
    """Open a connection with the pragmas and schema the CRUD layer relies on."""
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    if path != ":memory:":
        # WAL mode: allows concurrent reads while writing
        await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await init_schema(db)
    return db


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
                _db = await connect(DB_PATH)
                logger.info(f"Database initialized at {DB_PATH}")
    return _db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Agents: the identity registry. `name` is the display name that
        -- @mentions resolve against; `id` is the stable identity.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS agents (
            id            TEXT PRIMARY KEY,
            name          TEXT NOT NULL UNIQUE,
            role          TEXT NOT NULL DEFAULT '',
            model         TEXT NOT NULL DEFAULT '',
            avatar_emoji  TEXT,
            status        TEXT NOT NULL DEFAULT 'idle',
            created_at    TEXT NOT NULL
        );

        -- ----------------------------------------------------------------
        -- Tasks: the board cards. Each task anchors one discussion thread.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS tasks (
            id          TEXT PRIMARY KEY,
            title       TEXT NOT NULL,
            assignee    TEXT,
            status      TEXT NOT NULL DEFAULT 'backlog',
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS task_comments (
            id          TEXT PRIMARY KEY,
            task_id     TEXT NOT NULL REFERENCES tasks(id),
            author      TEXT NOT NULL,
            message     TEXT NOT NULL,
            created_at  TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_task_comments_task
            ON task_comments(task_id, created_at);

        -- ----------------------------------------------------------------
        -- Thread subscriptions. The UNIQUE pair backs the atomic upsert in
        -- thread_subscribe(), so concurrent subscribes never duplicate.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS task_subscriptions (
            id             TEXT PRIMARY KEY,
            task_id        TEXT NOT NULL REFERENCES tasks(id),
            agent_id       TEXT NOT NULL REFERENCES agents(id),
            subscribed_at  TEXT NOT NULL,
            UNIQUE (task_id, agent_id)
        );

        -- ----------------------------------------------------------------
        -- Notifications: per-recipient mailbox.
        -- `delivered` only ever moves 0 -> 1 (see notification_mark_delivered).
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS notifications (
            id            TEXT PRIMARY KEY,
            recipient_id  TEXT NOT NULL REFERENCES agents(id),
            kind          TEXT NOT NULL,
            title         TEXT NOT NULL,
            body          TEXT NOT NULL,
            read          INTEGER NOT NULL DEFAULT 0,
            delivered     INTEGER NOT NULL DEFAULT 0,
            metadata      TEXT,
            created_at    TEXT NOT NULL,
            updated_at    TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_notifications_recipient
            ON notifications(recipient_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_notifications_delivered
            ON notifications(delivered, created_at);

        -- ----------------------------------------------------------------
        -- Activities: optional replay log of published events.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS activities (
            id            TEXT PRIMARY KEY,
            kind          TEXT NOT NULL,
            message       TEXT NOT NULL,
            actor         TEXT NOT NULL,
            actor_avatar  TEXT,
            context       TEXT,
            created_at    TEXT NOT NULL
        );
    """)
    await db.commit()

    logger.info("Schema initialized.")
