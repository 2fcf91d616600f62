from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Protocol, Sequence, TypeVar

from helpdesk.core.logging import start_span

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
    HistoryEntry,
    NotificationEvent,
    NotificationEventType,
    Priority,
    Recipient,
    TaskState,
    TicketState,
    TransitionRequest,
    WorkItem,
    WorkItemKind,
    WorkItemTemplate,
    parse_state,
)
from .repository import RepositoryTransaction, WorkItemRepository
from .state import (
    AcceptedTransition,
    Audience,
    EventIntent,
    RejectedTransition,
    RejectionReason,
    decide,
    initial_state,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_TITLE_LENGTH = 255
MAX_TEXT_LENGTH = 10_000

_KNOWN_STATES = frozenset(state.value for state in (*TicketState, *TaskState))

_REJECTION_ERRORS: dict[RejectionReason, type[WorkItemError]] = {
    RejectionReason.INVALID_EDGE: InvalidEdgeError,
    RejectionReason.FORBIDDEN: ForbiddenError,
    RejectionReason.MISSING_RESOLUTION: MissingResolutionError,
}


class EventSink(Protocol):
    def enqueue(self, event: NotificationEvent) -> bool:
        ...


def validate_template(kind: WorkItemKind, template: WorkItemTemplate) -> WorkItemTemplate:
    """Return a cleaned copy of ``template`` or raise :class:`ValidationFailedError`."""

    title = (template.title or "").strip()
    if not title:
        raise ValidationFailedError("Title must not be empty")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationFailedError(f"Title must be at most {MAX_TITLE_LENGTH} characters")
    if len(template.description or "") > MAX_TEXT_LENGTH:
        raise ValidationFailedError(f"Description must be at most {MAX_TEXT_LENGTH} characters")
    try:
        priority = Priority(template.priority)
    except ValueError as exc:
        raise ValidationFailedError(f"Unknown priority {template.priority!r}") from exc
    assignee = (template.assignee or "").strip() or None
    if kind is WorkItemKind.TICKET and assignee is not None:
        raise ValidationFailedError("Tickets are created unassigned; use the assign transition")
    email = (template.requester_email or "").strip() or None
    if email is not None and "@" not in email:
        raise ValidationFailedError("Requester email is not a valid address")
    return replace(
        template,
        title=title,
        description=template.description or "",
        priority=priority,
        assignee=assignee,
        requester_email=email,
    )


def validate_transition_request(transition: TransitionRequest) -> None:
    """Reject malformed transition input before it reaches the state machine."""

    if transition.target_state not in _KNOWN_STATES:
        raise ValidationFailedError(f"Unknown target state {transition.target_state!r}")
    has_assignee = bool((transition.assignee or "").strip())
    if transition.target_state == TicketState.ASSIGNED.value and not has_assignee:
        raise ValidationFailedError("An assignee is required to assign a ticket")
    if transition.target_state != TicketState.ASSIGNED.value and has_assignee:
        raise ValidationFailedError("An assignee may only be given with the assign transition")
    if len(transition.resolution_note or "") > MAX_TEXT_LENGTH:
        raise ValidationFailedError(f"Resolution note must be at most {MAX_TEXT_LENGTH} characters")


class LifecycleEngine:
    """Run work item creation and transitions end to end.

    Each operation validates, decides and writes inside one repository
    transaction, then hands notification events to the dispatcher once the
    transaction has committed.
    """

    def __init__(
        self,
        repository: WorkItemRepository,
        events: EventSink | None = None,
        *,
        lock_timeout: float | None = 5.0,
        retry_backoff: float = 0.05,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._events = events
        self._lock_timeout = lock_timeout
        self._retry_backoff = retry_backoff
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def repository(self) -> WorkItemRepository:
        return self._repository

    def now(self) -> datetime:
        return self._clock()

    async def create_work_item(
        self, kind: WorkItemKind, template: WorkItemTemplate, actor: Actor
    ) -> WorkItem:
        if kind is WorkItemKind.TASK and not actor.is_elevated:
            raise ForbiddenError("Only staff or admins may create tasks")
        cleaned = validate_template(kind, template)
        if not actor.is_elevated and not (cleaned.requester_email or actor.email):
            raise ValidationFailedError("Public submissions require a contact email")

        with start_span("work_item.create", {"work_item.kind": kind.value}) as span:

            async def operation(tx: RepositoryTransaction) -> tuple[WorkItem, list[NotificationEvent]]:
                return await self.spawn_in_transaction(tx, kind, cleaned, actor)

            item, events = await self.run_in_transaction(operation)
            span.set_attribute("work_item.id", item.id)

        logger.info("Created %s %s in state %s", kind.value, item.id, item.state.value)
        self.publish(events)
        return item

    async def spawn_in_transaction(
        self,
        tx: RepositoryTransaction,
        kind: WorkItemKind,
        template: WorkItemTemplate,
        actor: Actor,
        *,
        recurrence_id: str | None = None,
        recurrence_cycle: int | None = None,
    ) -> tuple[WorkItem, list[NotificationEvent]]:
        """Insert a new item in its initial state using an already open transaction.

        The returned events must be passed to :meth:`publish` only after the
        caller's transaction commits.
        """

        cleaned = validate_template(kind, template)
        now = self._clock()
        item = WorkItem(
            id=str(uuid.uuid4()),
            kind=kind,
            state=initial_state(kind),
            title=cleaned.title,
            description=cleaned.description,
            priority=cleaned.priority,
            creator=actor.id,
            requester_email=cleaned.requester_email or (None if actor.is_elevated else actor.email),
            assignee=cleaned.assignee,
            resolution_note=None,
            created_at=now,
            updated_at=now,
            due_at=cleaned.due_at,
            recurrence_id=recurrence_id,
            recurrence_cycle=recurrence_cycle,
        )
        await tx.insert_work_item(item)

        intents = [EventIntent(NotificationEventType.CREATED, Audience.CREATOR)]
        if item.assignee:
            intents.append(EventIntent(NotificationEventType.ASSIGNED, Audience.ASSIGNEE))
        payload = self._payload(item, actor, from_state=None, note=None)
        return item, self._resolve_events(item, intents, actor, payload)

    async def request_transition(
        self, work_item_id: str, transition: TransitionRequest, actor: Actor
    ) -> WorkItem:
        validate_transition_request(transition)

        with start_span(
            "work_item.transition",
            {"work_item.id": work_item_id, "work_item.target_state": transition.target_state},
        ) as span:

            async def operation(tx: RepositoryTransaction) -> tuple[WorkItem, list[NotificationEvent]]:
                return await self._apply_transition(tx, work_item_id, transition, actor)

            try:
                updated, events = await self.run_in_transaction(operation)
            except WorkItemError as exc:
                span.set_attribute("work_item.rejection", exc.code)
                raise

        logger.info(
            "Work item %s moved to %s by %s", updated.id, updated.state.value, actor.id or "anonymous"
        )
        self.publish(events)
        return updated

    async def _apply_transition(
        self,
        tx: RepositoryTransaction,
        work_item_id: str,
        transition: TransitionRequest,
        actor: Actor,
    ) -> tuple[WorkItem, list[NotificationEvent]]:
        item = await tx.lock_work_item(work_item_id)
        if item is None:
            raise NotFoundError(f"Work item {work_item_id} not found")
        try:
            parse_state(item.kind, transition.target_state)
        except ValueError as exc:
            raise ValidationFailedError(
                f"{transition.target_state!r} is not a {item.kind.value} state",
                details={"work_item_id": item.id, "state": item.state.value},
            ) from exc

        decision = decide(item.kind, item.state, transition, actor.role)
        if isinstance(decision, RejectedTransition):
            error_type = _REJECTION_ERRORS[decision.reason]
            raise error_type(
                decision.message,
                details={"work_item_id": item.id, "state": item.state.value},
            )

        accepted: AcceptedTransition = decision
        now = self._clock()
        updated = replace(
            item,
            state=accepted.new_state,
            assignee=accepted.assignee or item.assignee,
            resolution_note=accepted.resolution_note or item.resolution_note,
            updated_at=now,
        )
        await tx.update_work_item(updated)

        note = accepted.resolution_note or _describe_change(item, updated)
        await tx.append_history(
            HistoryEntry(
                id=str(uuid.uuid4()),
                work_item_id=item.id,
                actor=actor.id,
                from_state=item.state.value,
                to_state=updated.state.value,
                note=note,
                created_at=now,
            )
        )

        payload = self._payload(updated, actor, from_state=item.state.value, note=accepted.resolution_note)
        return updated, self._resolve_events(updated, accepted.events, actor, payload)

    async def get_work_item(self, work_item_id: str) -> WorkItem:
        item = await self._repository.get_work_item(work_item_id)
        if item is None:
            raise NotFoundError(f"Work item {work_item_id} not found")
        return item

    async def list_work_items(
        self,
        *,
        kind: WorkItemKind | None = None,
        state: str | None = None,
        assignee: str | None = None,
    ) -> Sequence[WorkItem]:
        return await self._repository.list_work_items(kind=kind, state=state, assignee=assignee)

    async def list_history(self, work_item_id: str) -> list[HistoryEntry]:
        entries = list(await self._repository.list_history(work_item_id))
        if not entries and await self._repository.get_work_item(work_item_id) is None:
            raise NotFoundError(f"Work item {work_item_id} not found")
        return entries

    async def run_in_transaction(
        self, operation: Callable[[RepositoryTransaction], Awaitable[T]]
    ) -> T:
        """Run ``operation`` in a transaction, retrying once on a transient conflict."""

        try:
            return await self._attempt(operation)
        except TransientStorageError as exc:
            logger.warning("Transient storage conflict (%s), retrying once", exc)
        await asyncio.sleep(self._retry_backoff)
        try:
            return await self._attempt(operation)
        except TransientStorageError as exc:
            raise StorageError(f"Transaction failed after retry: {exc}") from exc

    async def _attempt(self, operation: Callable[[RepositoryTransaction], Awaitable[T]]) -> T:
        async with self._repository.transaction(lock_timeout=self._lock_timeout) as tx:
            return await operation(tx)

    def publish(self, events: Iterable[NotificationEvent]) -> None:
        """Hand committed events to the dispatcher; failures are logged and dropped."""

        if self._events is None:
            return
        for event in events:
            try:
                self._events.enqueue(event)
            except Exception:
                logger.exception(
                    "Dropping %s notification for work item %s", event.event_type.value, event.work_item_id
                )

    def _resolve_events(
        self,
        item: WorkItem,
        intents: Iterable[EventIntent],
        actor: Actor,
        payload: dict[str, Any],
    ) -> list[NotificationEvent]:
        events: list[NotificationEvent] = []
        seen: set[tuple[NotificationEventType, Recipient]] = set()
        for intent in intents:
            for recipient in _recipients_for(item, intent.audience):
                if actor.id is not None and recipient.user_id == actor.id:
                    continue
                key = (intent.event_type, recipient)
                if key in seen:
                    continue
                seen.add(key)
                events.append(
                    NotificationEvent(
                        work_item_id=item.id,
                        event_type=intent.event_type,
                        recipient=recipient,
                        payload=payload,
                    )
                )
        return events

    @staticmethod
    def _payload(item: WorkItem, actor: Actor, *, from_state: str | None, note: str | None) -> dict[str, Any]:
        return {
            "work_item_id": item.id,
            "kind": item.kind.value,
            "title": item.title,
            "from_state": from_state,
            "to_state": item.state.value,
            "assignee": item.assignee,
            "actor": actor.id,
            "note": note,
        }


def _recipients_for(item: WorkItem, audience: Audience) -> list[Recipient]:
    """Staff creator and external requester are separate targets; only the former can be the actor."""

    if audience is Audience.ASSIGNEE:
        return [Recipient(user_id=item.assignee)] if item.assignee else []
    recipients: list[Recipient] = []
    if item.creator:
        recipients.append(Recipient(user_id=item.creator))
    if item.requester_email:
        recipients.append(Recipient(email=item.requester_email))
    return recipients


def _describe_change(before: WorkItem, after: WorkItem) -> str:
    if after.assignee != before.assignee:
        return f"Assigned to {after.assignee}"
    return f"Status changed from {before.state.value} to {after.state.value}"
