"""
Notification fan-out rules.

Turns board events into mailbox entries:
  - @mentions in free text        -> one `mention` notification per resolved agent
  - a comment on a task            -> auto-subscribe the author, notify every other subscriber
  - a task assignment              -> `task_assigned` for the assignee, who is auto-subscribed
  - a task moving to `done`        -> `task_completed` for every subscriber except the actor

Recipients are always stored by stable agent id, never by display name.
Unresolvable mention names are skipped silently.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import aiosqlite

from mission_control.config import COMMENT_PREVIEW_CHARS, NOTIFICATION_PREVIEW_CHARS
from mission_control.db import crud
from mission_control.db.models import (
    AgentInfo, BulkEnqueueResult, Comment, Notification, NotificationKind, Task,
)
from mission_control.errors import MissionControlError, NotFoundError, PersistenceError, ValidationError
from mission_control.mentions import extract_mentions

logger = logging.getLogger(__name__)


@dataclass
class CommentResult:
    comment: Comment
    subscribers_notified: int
    subscriber_result: BulkEnqueueResult = field(default_factory=BulkEnqueueResult)
    mention_result: BulkEnqueueResult = field(default_factory=BulkEnqueueResult)


def task_link(task_id: str) -> str:
    return f"/tasks/{task_id}"


def _metadata(**values: Any) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


async def resolve_mentions(db: aiosqlite.Connection, names: Iterable[str]) -> list[AgentInfo]:
    """Resolve candidate names to agents. Lookup failures resolve to nobody."""
    names = list(names)
    if not names:
        return []
    try:
        return await crud.agent_resolve_names(db, names)
    except PersistenceError as e:
        logger.error(f"Failed to fetch mentioned agents {names}: {e}")
        return []


async def notify_mentions(
    db: aiosqlite.Connection,
    text: str,
    task_id: Optional[str] = None,
    task_title: Optional[str] = None,
    mentioned_by: Optional[str] = None,
    message_id: Optional[str] = None,
    link: Optional[str] = None,
    extra_names: Iterable[str] = (),
    exclude: Iterable[str] = (),
) -> BulkEnqueueResult:
    names = extract_mentions(text)
    for name in extra_names:
        name = name.lstrip("@")
        if name and name not in names:
            names.append(name)
    if not names:
        return BulkEnqueueResult()

    agents = await resolve_mentions(db, names)
    skip = set(exclude)
    recipients = [a.id for a in agents if a.id not in skip]
    if not recipients:
        logger.debug(f"No resolvable mention recipients among {names}")
        return BulkEnqueueResult()

    result = await crud.notification_enqueue_bulk(
        db,
        recipients,
        NotificationKind.MENTION,
        title=f"Mentioned in {task_title or 'a task'}",
        body=text[:NOTIFICATION_PREVIEW_CHARS],
        metadata=_metadata(
            task_id=task_id,
            task_title=task_title,
            mentioned_by=mentioned_by,
            message_id=message_id,
            link=link or (task_link(task_id) if task_id else None),
        ),
    )
    logger.info(f"Created {len(result.created)} mention notifications")
    return result


async def post_comment(db: aiosqlite.Connection, task_id: str, author_id: str, message: str) -> CommentResult:
    """Create a comment and run the thread fan-out.

    The author is auto-subscribed first, then every *other* subscriber gets a
    notification, then @mentions are processed. The author never receives a
    notification for their own comment.
    """
    missing = [name for name, value in (("taskId", task_id), ("authorId", author_id), ("message", message))
               if not (value and str(value).strip())]
    if missing:
        raise ValidationError("taskId, authorId, and message are required", missing)

    author = await crud.agent_get(db, author_id)
    if author is None:
        raise NotFoundError("Author", author_id)
    task = await crud.task_get(db, task_id)
    if task is None:
        raise NotFoundError("Task", task_id)

    comment = await crud.comment_create(db, task.id, author.name, message)
    await crud.thread_subscribe(db, task.id, author.id)

    subscribers = [s.agent_id for s in await crud.thread_subscribers(db, task.id) if s.agent_id != author.id]
    preview = message[:COMMENT_PREVIEW_CHARS] + ("..." if len(message) > COMMENT_PREVIEW_CHARS else "")
    sub_result = await crud.notification_enqueue_bulk(
        db,
        subscribers,
        NotificationKind.MENTION,
        title=f"New comment on: {task.title}",
        body=f"{author.name}: {preview}",
        metadata=_metadata(
            task_id=task.id,
            task_title=task.title,
            mentioned_by=author.name,
            comment_id=comment.id,
            link=task_link(task.id),
        ),
    )

    mention_result = await notify_mentions(
        db,
        message,
        task_id=task.id,
        task_title=task.title,
        mentioned_by=author.name,
        message_id=comment.id,
        exclude={author.id},
    )
    logger.info(f"Comment {comment.id} on task {task.id}: notified {len(sub_result.created)} subscribers")
    return CommentResult(
        comment=comment,
        subscribers_notified=len(sub_result.created),
        subscriber_result=sub_result,
        mention_result=mention_result,
    )


async def assign_task(db: aiosqlite.Connection, task: Task, assignee_name: str) -> Optional[Notification]:
    """Notify the new assignee and subscribe them to the task thread.

    An assignee that cannot be resolved is logged and skipped.
    """
    try:
        agent = await crud.agent_get_by_name(db, assignee_name)
        if agent is None:
            logger.error(f"Assignee not found: {assignee_name}")
            return None
        notification = await crud.notification_enqueue(
            db,
            agent.id,
            NotificationKind.TASK_ASSIGNED,
            title="New Task Assigned",
            body=f"You've been assigned to: {task.title}",
            metadata=_metadata(task_id=task.id, task_title=task.title, link=task_link(task.id)),
        )
        await crud.thread_subscribe(db, task.id, agent.id)
    except MissionControlError as e:
        logger.error(f"Error handling task assignment for {task.id}: {e}")
        return None
    logger.info(f"Task {task.id} assigned to {assignee_name}. Notification created and auto-subscribed.")
    return notification


async def complete_task(db: aiosqlite.Connection, task: Task, actor: Optional[str] = None) -> BulkEnqueueResult:
    """Tell every subscriber except the actor that the task is done."""
    actor_agent = await crud.agent_resolve(db, actor) if actor else None
    recipients = [s.agent_id for s in await crud.thread_subscribers(db, task.id)
                  if actor_agent is None or s.agent_id != actor_agent.id]
    who = actor_agent.name if actor_agent else (actor or "Someone")
    return await crud.notification_enqueue_bulk(
        db,
        recipients,
        NotificationKind.TASK_COMPLETED,
        title=f"Task completed: {task.title}",
        body=f"{who} marked '{task.title}' as done",
        metadata=_metadata(task_id=task.id, task_title=task.title, mentioned_by=who, link=task_link(task.id)),
    )


async def create_task(
    db: aiosqlite.Connection,
    title: str,
    assignee: Optional[str] = None,
    status: str = "backlog",
) -> Task:
    task = await crud.task_create(db, title, assignee=assignee, status=status)
    if assignee:
        await assign_task(db, task, assignee)
    return task


async def update_task(
    db: aiosqlite.Connection,
    task_id: str,
    title: Optional[str] = None,
    assignee: Optional[str] = None,
    status: Optional[str] = None,
    actor: Optional[str] = None,
) -> Task:
    if not task_id:
        raise ValidationError("Task ID is required", ["id"])
    previous = await crud.task_get(db, task_id)
    if previous is None:
        raise NotFoundError("Task", task_id)
    task = await crud.task_update(db, task_id, title=title, assignee=assignee, status=status)
    if assignee and previous.assignee != assignee:
        await assign_task(db, task, assignee)
    if task.status == "done" and previous.status != "done":
        try:
            await complete_task(db, task, actor)
        except MissionControlError as e:
            logger.error(f"Error handling task completion for {task.id}: {e}")
    return task
