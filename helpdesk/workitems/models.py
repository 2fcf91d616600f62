from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Union


class WorkItemKind(str, Enum):
    """The two kinds of work item sharing one lifecycle engine."""

    TICKET = "ticket"
    TASK = "task"


class TicketState(str, Enum):
    """States of a support ticket."""

    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class TaskState(str, Enum):
    """States of an internal task."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


WorkItemState = Union[TicketState, TaskState]

_STATE_ENUMS: dict[WorkItemKind, type[Enum]] = {
    WorkItemKind.TICKET: TicketState,
    WorkItemKind.TASK: TaskState,
}


def parse_state(kind: WorkItemKind, value: str | Enum) -> WorkItemState:
    """Interpret ``value`` in the state vocabulary of ``kind``.

    Raises ``ValueError`` when the value is not a state of that kind.
    """

    raw = value.value if isinstance(value, Enum) else str(value)
    return _STATE_ENUMS[kind](raw)  # type: ignore[return-value]


class Role(str, Enum):
    """Elevated roles. Callers without a role are public submitters."""

    STAFF = "staff"
    ADMIN = "admin"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class NotificationEventType(str, Enum):
    CREATED = "created"
    ASSIGNED = "assigned"
    STATUS_CHANGED = "status_changed"
    CLOSED = "closed"


@dataclass(slots=True, frozen=True)
class Actor:
    """The caller of an engine operation."""

    id: str | None
    role: Role | None = None
    email: str | None = None

    @classmethod
    def anonymous(cls, email: str | None = None) -> "Actor":
        return cls(id=None, role=None, email=email)

    @property
    def is_elevated(self) -> bool:
        return self.role in (Role.STAFF, Role.ADMIN)

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


@dataclass(slots=True, frozen=True)
class WorkItemTemplate:
    """Content used to create a work item, either directly or from a recurrence."""

    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    assignee: str | None = None
    requester_email: str | None = None
    due_at: datetime | None = None

    def to_mapping(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "assignee": self.assignee,
            "requester_email": self.requester_email,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "WorkItemTemplate":
        return cls(
            title=str(data["title"]),
            description=str(data.get("description") or ""),
            priority=Priority(str(data.get("priority") or Priority.MEDIUM.value)),
            assignee=data.get("assignee") or None,
            requester_email=data.get("requester_email") or None,
        )


@dataclass(slots=True)
class WorkItem:
    """A ticket or task governed by the lifecycle engine."""

    id: str
    kind: WorkItemKind
    state: WorkItemState
    title: str
    description: str
    priority: Priority
    creator: str | None
    requester_email: str | None
    assignee: str | None
    resolution_note: str | None
    created_at: datetime
    updated_at: datetime
    due_at: datetime | None = None
    recurrence_id: str | None = None
    recurrence_cycle: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (TicketState.CLOSED, TaskState.COMPLETED)


@dataclass(slots=True, frozen=True)
class TransitionRequest:
    """A proposed change of state, optionally bundled with assignment or resolution data."""

    target_state: str
    assignee: str | None = None
    resolution_note: str | None = None


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    """Append-only audit record of one accepted transition."""

    id: str
    work_item_id: str
    actor: str | None
    from_state: str
    to_state: str
    note: str
    created_at: datetime


@dataclass(slots=True)
class RecurrenceDefinition:
    """Template plus schedule that periodically spawns tasks."""

    id: str
    template: WorkItemTemplate
    frequency: Frequency
    starts_at: datetime
    next_due_at: datetime
    occurrences: int
    is_active: bool
    created_by: str
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True, frozen=True)
class Recipient:
    """Notification target: a staff user, an email address, or both."""

    user_id: str | None = None
    email: str | None = None

    def __str__(self) -> str:
        return self.user_id or self.email or "<nobody>"


@dataclass(slots=True, frozen=True)
class NotificationEvent:
    """Transient queue entry produced after a transition commits."""

    work_item_id: str
    event_type: NotificationEventType
    recipient: Recipient
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class InAppNotification:
    """Durable in-app notification written by the dispatcher."""

    id: str
    user_id: str
    work_item_id: str
    event_type: NotificationEventType
    message: str
    is_read: bool
    created_at: datetime
