"""Work item lifecycle: state machine, engine, dispatcher and recurrence scheduler."""

from .dispatcher import NotificationDispatcher
from .engine import LifecycleEngine
from .errors import (
    ForbiddenError,
    InvalidEdgeError,
    MissingResolutionError,
    NotFoundError,
    StorageError,
    TransientStorageError,
    ValidationFailedError,
    WorkItemError,
)
from .models import (
    Actor,
    Frequency,
    HistoryEntry,
    Priority,
    RecurrenceDefinition,
    Role,
    TaskState,
    TicketState,
    TransitionRequest,
    WorkItem,
    WorkItemKind,
    WorkItemTemplate,
)
from .recurrence import RecurrenceService
from .repository import PostgresWorkItemRepository
from .scheduler import RecurrenceScheduler

__all__ = [
    "Actor",
    "ForbiddenError",
    "Frequency",
    "HistoryEntry",
    "InvalidEdgeError",
    "LifecycleEngine",
    "MissingResolutionError",
    "NotFoundError",
    "NotificationDispatcher",
    "PostgresWorkItemRepository",
    "Priority",
    "RecurrenceDefinition",
    "RecurrenceScheduler",
    "RecurrenceService",
    "Role",
    "StorageError",
    "TaskState",
    "TicketState",
    "TransientStorageError",
    "TransitionRequest",
    "ValidationFailedError",
    "WorkItem",
    "WorkItemError",
    "WorkItemKind",
    "WorkItemTemplate",
]
