"""Pure transition policy for tickets and tasks.

Both kinds share one :func:`decide` function evaluated against per-kind edge
tables. Nothing here touches storage; the result describes the new state and
which notifications the caller should emit once the change is committed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Union

from .models import (
    NotificationEventType,
    Role,
    TaskState,
    TicketState,
    TransitionRequest,
    WorkItemKind,
    WorkItemState,
    parse_state,
)


class Audience(str, Enum):
    """Who a notification intent is addressed to, resolved later by the engine."""

    ASSIGNEE = "assignee"
    CREATOR = "creator"


class RejectionReason(str, Enum):
    INVALID_EDGE = "invalid_edge"
    FORBIDDEN = "forbidden"
    MISSING_RESOLUTION = "missing_resolution"


@dataclass(slots=True, frozen=True)
class EventIntent:
    event_type: NotificationEventType
    audience: Audience


@dataclass(slots=True, frozen=True)
class AcceptedTransition:
    new_state: WorkItemState
    assignee: str | None
    resolution_note: str | None
    events: tuple[EventIntent, ...]


@dataclass(slots=True, frozen=True)
class RejectedTransition:
    reason: RejectionReason
    message: str


Decision = Union[AcceptedTransition, RejectedTransition]

_EDGES: Mapping[WorkItemKind, Mapping[WorkItemState, frozenset[WorkItemState]]] = {
    WorkItemKind.TICKET: {
        TicketState.UNASSIGNED: frozenset({TicketState.ASSIGNED}),
        TicketState.ASSIGNED: frozenset({TicketState.IN_PROGRESS, TicketState.CLOSED}),
        TicketState.IN_PROGRESS: frozenset({TicketState.CLOSED}),
        TicketState.CLOSED: frozenset(),
    },
    WorkItemKind.TASK: {
        TaskState.OPEN: frozenset({TaskState.IN_PROGRESS, TaskState.COMPLETED}),
        TaskState.IN_PROGRESS: frozenset({TaskState.COMPLETED}),
        TaskState.COMPLETED: frozenset(),
    },
}

_INITIAL_STATES: Mapping[WorkItemKind, WorkItemState] = {
    WorkItemKind.TICKET: TicketState.UNASSIGNED,
    WorkItemKind.TASK: TaskState.OPEN,
}

_TERMINAL_STATES: frozenset[WorkItemState] = frozenset({TicketState.CLOSED, TaskState.COMPLETED})

_ELEVATED_ROLES: frozenset[Role] = frozenset({Role.STAFF, Role.ADMIN})

_CLOSING_EVENTS = (
    EventIntent(NotificationEventType.CLOSED, Audience.CREATOR),
    EventIntent(NotificationEventType.CLOSED, Audience.ASSIGNEE),
)


def initial_state(kind: WorkItemKind) -> WorkItemState:
    return _INITIAL_STATES[kind]


def is_terminal(state: WorkItemState) -> bool:
    return state in _TERMINAL_STATES


def allowed_targets(kind: WorkItemKind, state: WorkItemState) -> frozenset[WorkItemState]:
    return _EDGES[kind].get(state, frozenset())


def can_transition(kind: WorkItemKind, current: WorkItemState, target: WorkItemState) -> bool:
    return target in allowed_targets(kind, current)


def decide(
    kind: WorkItemKind,
    current_state: WorkItemState,
    transition: TransitionRequest,
    actor_role: Role | None,
) -> Decision:
    """Accept or reject ``transition`` for an item of ``kind`` in ``current_state``.

    Checks run in a fixed order: role, edge, then domain preconditions. A caller
    without an elevated role is rejected identically whatever the item's state.
    """

    if actor_role not in _ELEVATED_ROLES:
        return RejectedTransition(
            RejectionReason.FORBIDDEN, "Only staff or admins may change a work item's state"
        )

    try:
        target = parse_state(kind, transition.target_state)
    except ValueError:
        return RejectedTransition(
            RejectionReason.INVALID_EDGE,
            f"{transition.target_state!r} is not a {kind.value} state",
        )

    if not can_transition(kind, current_state, target):
        return RejectedTransition(
            RejectionReason.INVALID_EDGE,
            f"Cannot transition {kind.value} from {current_state.value} to {target.value}",
        )

    note = (transition.resolution_note or "").strip() or None

    if target is TicketState.ASSIGNED:
        assignee = (transition.assignee or "").strip()
        if not assignee:
            return RejectedTransition(
                RejectionReason.INVALID_EDGE, "Assigning a ticket requires an assignee"
            )
        return AcceptedTransition(
            new_state=target,
            assignee=assignee,
            resolution_note=None,
            events=(
                EventIntent(NotificationEventType.ASSIGNED, Audience.ASSIGNEE),
                EventIntent(NotificationEventType.STATUS_CHANGED, Audience.CREATOR),
            ),
        )

    if target is TicketState.CLOSED and note is None:
        return RejectedTransition(
            RejectionReason.MISSING_RESOLUTION, "Closing a ticket requires a resolution note"
        )

    if is_terminal(target):
        return AcceptedTransition(
            new_state=target, assignee=None, resolution_note=note, events=_CLOSING_EVENTS
        )

    # Intermediate states never carry a resolution note.
    return AcceptedTransition(
        new_state=target,
        assignee=None,
        resolution_note=None,
        events=(EventIntent(NotificationEventType.STATUS_CHANGED, Audience.CREATOR),),
    )
