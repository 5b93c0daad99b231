"""
Data models (dataclasses) for Mission Control.
These are plain Python objects used across the DB, MCP, and API layers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Any


class ActivityKind(str, Enum):
    TASK = "task"
    AGENT = "agent"
    SYSTEM = "system"
    MENTION = "mention"


class NotificationKind(str, Enum):
    MENTION = "mention"
    TASK_ASSIGNED = "task_assigned"
    TASK_COMPLETED = "task_completed"
    SYSTEM = "system"


@dataclass
class AgentInfo:
    id: str
    name: str            # display name, used for @mention resolution
    role: str
    model: str
    avatar_emoji: str
    status: str          # idle | active | blocked | offline
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "name": self.name, "role": self.role, "model": self.model,
            "avatar_emoji": self.avatar_emoji, "status": self.status,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Task:
    id: str
    title: str
    assignee: Optional[str]   # agent display name
    status: str               # backlog | todo | in_progress | review | done
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "title": self.title, "assignee": self.assignee, "status": self.status,
            "created_at": self.created_at.isoformat(), "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Comment:
    id: str
    task_id: str
    author: str
    message: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "task_id": self.task_id, "author": self.author,
            "message": self.message, "created_at": self.created_at.isoformat(),
        }


@dataclass
class Subscriber:
    """One row of a task thread's subscriber list, joined with agent display metadata."""
    id: str
    task_id: str
    agent_id: str
    agent_name: str
    agent_avatar: Optional[str]
    agent_status: Optional[str]
    subscribed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "subscribed_at": self.subscribed_at.isoformat(),
            "agent_id": self.agent_id, "agent_name": self.agent_name,
            "agent_avatar": self.agent_avatar, "agent_status": self.agent_status,
        }


@dataclass
class Notification:
    id: str
    recipient_id: str
    kind: NotificationKind
    title: str
    body: str
    read: bool
    delivered: bool          # one-way: never flips back to False
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "recipient_id": self.recipient_id, "kind": self.kind.value,
            "title": self.title, "body": self.body, "read": self.read, "delivered": self.delivered,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(), "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class BulkEnqueueResult:
    created: list[Notification] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)   # (recipient_id, reason)


@dataclass(frozen=True)
class ActivityContext:
    task_id: Optional[str] = None
    task_title: Optional[str] = None
    mentioned_users: tuple[str, ...] = ()


@dataclass(frozen=True)
class Activity:
    """Immutable event record. Built once by the publisher, broadcast once."""
    id: str
    kind: ActivityKind
    message: str
    actor: str
    actor_avatar: Optional[str]
    created_at: datetime
    context: ActivityContext = ActivityContext()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "message": self.message,
            "actor": self.actor,
            "actor_avatar": self.actor_avatar,
            "created_at": self.created_at.isoformat(),
            "context": {
                "task_id": self.context.task_id,
                "task_title": self.context.task_title,
                "mentioned_users": list(self.context.mentioned_users),
            },
        }
