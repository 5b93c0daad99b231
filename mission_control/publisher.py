"""
Activity publisher: the single entry point for new activity events.

publish() validates input, builds the immutable Activity, runs mention
fan-out when the context names a task and the message carries `@` or
the context lists mentioned users, then
broadcasts the activity to every live connection. Mention processing and
broadcast are independent: a failing mention fan-out never blocks the
broadcast.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

import aiosqlite

from mission_control import notifier
from mission_control.broadcast import LiveBroadcastChannel
from mission_control.db.database import get_db
from mission_control.db.models import Activity, ActivityContext, ActivityKind
from mission_control.errors import MissionControlError, ValidationError

logger = logging.getLogger(__name__)

DbProvider = Callable[[], Awaitable[aiosqlite.Connection]]


def build_context(raw: Optional[dict[str, Any]]) -> ActivityContext:
    """Accept both snake_case and the dashboard's camelCase keys."""
    if not raw:
        return ActivityContext()
    mentioned: Iterable[str] = raw.get("mentioned_users") or raw.get("mentionedUsers") or ()
    if isinstance(mentioned, str):
        mentioned = [mentioned]
    return ActivityContext(
        task_id=raw.get("task_id") or raw.get("taskId"),
        task_title=raw.get("task_title") or raw.get("taskTitle"),
        mentioned_users=tuple(str(m) for m in mentioned),
    )


class ActivityPublisher:
    def __init__(self, channel: LiveBroadcastChannel, db_provider: DbProvider = get_db) -> None:
        self._channel = channel
        self._db_provider = db_provider

    @property
    def channel(self) -> LiveBroadcastChannel:
        return self._channel

    async def publish(
        self,
        kind: ActivityKind | str | None,
        message: Optional[str],
        actor: Optional[str],
        actor_avatar: Optional[str] = None,
        context: ActivityContext | dict[str, Any] | None = None,
    ) -> Activity:
        missing = [name for name, value in (("message", message), ("actor", actor), ("kind", kind))
                   if not (value and str(value).strip())]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing)
        try:
            kind = ActivityKind(kind)
        except ValueError:
            allowed = ", ".join(k.value for k in ActivityKind)
            raise ValidationError(f"Invalid kind '{kind}'. Must be one of: {allowed}", ["kind"]) from None
        if not isinstance(context, ActivityContext):
            context = build_context(context)

        activity = Activity(
            id=str(uuid.uuid4()),
            kind=kind,
            message=message,
            actor=actor,
            actor_avatar=actor_avatar,
            created_at=datetime.now(timezone.utc),
            context=context,
        )

        if context.task_id and context.task_title and ("@" in message or context.mentioned_users):
            await self._notify_mentions(activity)

        delivered = self._channel.broadcast_activity(activity)
        logger.debug(f"Activity {activity.id} ({kind.value}) broadcast to {delivered} live connections")
        return activity

    async def _notify_mentions(self, activity: Activity) -> None:
        ctx = activity.context
        try:
            db = await self._db_provider()
            await notifier.notify_mentions(
                db,
                activity.message,
                task_id=ctx.task_id,
                task_title=ctx.task_title,
                mentioned_by=activity.actor,
                link=notifier.task_link(ctx.task_id),
                extra_names=ctx.mentioned_users,
            )
        except MissionControlError as e:
            logger.error(f"Mention processing failed for activity {activity.id}: {e}")
        except Exception:
            # Broadcast still follows; nothing from the fan-out reaches the caller
            logger.exception(f"Unexpected error during mention processing for activity {activity.id}")
