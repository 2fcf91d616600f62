import asyncio

import pytest

from fakes import RecordingSink
from helpdesk.workitems.engine import LifecycleEngine
from helpdesk.workitems.errors import (
    ForbiddenError,
    InvalidEdgeError,
    MissingResolutionError,
    NotFoundError,
    StorageError,
    TransientStorageError,
    ValidationFailedError,
)
from helpdesk.workitems.models import (
    Actor,
    NotificationEventType,
    Recipient,
    Role,
    TaskState,
    TicketState,
    TransitionRequest,
    WorkItem,
    WorkItemKind,
    WorkItemTemplate,
)


async def _public_ticket(engine: LifecycleEngine) -> WorkItem:
    return await engine.create_work_item(
        WorkItemKind.TICKET,
        WorkItemTemplate(title="Printer on fire", description="Third floor"),
        Actor.anonymous(email="requester@example.com"),
    )


@pytest.mark.asyncio
async def test_ticket_full_lifecycle_records_history(engine, repository, sink, staff):
    ticket = await _public_ticket(engine)
    agent = Actor(id="agent-7", role=Role.STAFF)

    assert ticket.state is TicketState.UNASSIGNED
    assert ticket.creator is None
    assert ticket.requester_email == "requester@example.com"
    assert repository.history == []

    await engine.request_transition(ticket.id, TransitionRequest("assigned", assignee="agent-7"), staff)
    await engine.request_transition(ticket.id, TransitionRequest("in_progress"), agent)
    closed = await engine.request_transition(
        ticket.id, TransitionRequest("closed", resolution_note="Extinguished and replaced"), agent
    )

    assert closed.state is TicketState.CLOSED
    assert closed.assignee == "agent-7"
    assert closed.resolution_note == "Extinguished and replaced"

    history = await engine.list_history(ticket.id)
    assert [(h.from_state, h.to_state) for h in history] == [
        ("unassigned", "assigned"),
        ("assigned", "in_progress"),
        ("in_progress", "closed"),
    ]
    assert [h.actor for h in history] == ["staff-1", "agent-7", "agent-7"]
    assert history[0].note == "Assigned to agent-7"
    assert history[2].note == "Extinguished and replaced"

    requester = Recipient(email="requester@example.com")
    assert [e.event_type for e in sink.events if e.recipient == requester] == [
        NotificationEventType.CREATED,
        NotificationEventType.STATUS_CHANGED,
        NotificationEventType.STATUS_CHANGED,
        NotificationEventType.CLOSED,
    ]
    # agent-7 is told about the assignment but not about changes they made themselves
    assert [e.event_type for e in sink.events if e.recipient.user_id == "agent-7"] == [
        NotificationEventType.ASSIGNED
    ]


@pytest.mark.asyncio
async def test_close_without_note_changes_nothing(engine, repository, sink, staff):
    ticket = await _public_ticket(engine)
    await engine.request_transition(ticket.id, TransitionRequest("assigned", assignee="agent-7"), staff)
    events_before = len(sink.events)

    with pytest.raises(MissingResolutionError) as exc:
        await engine.request_transition(ticket.id, TransitionRequest("closed"), staff)

    assert exc.value.http_status == 422
    stored = await engine.get_work_item(ticket.id)
    assert stored.state is TicketState.ASSIGNED
    assert len(repository.history) == 1
    assert len(sink.events) == events_before


@pytest.mark.asyncio
async def test_anonymous_caller_cannot_transition(engine, repository):
    ticket = await _public_ticket(engine)

    with pytest.raises(ForbiddenError):
        await engine.request_transition(
            ticket.id, TransitionRequest("assigned", assignee="agent-7"), Actor.anonymous()
        )

    assert (await engine.get_work_item(ticket.id)).state is TicketState.UNASSIGNED
    assert repository.history == []


@pytest.mark.asyncio
async def test_invalid_edge_reports_current_state(engine, staff):
    ticket = await _public_ticket(engine)

    with pytest.raises(InvalidEdgeError) as exc:
        await engine.request_transition(ticket.id, TransitionRequest("in_progress"), staff)

    assert exc.value.to_dict()["details"] == {"work_item_id": ticket.id, "state": "unassigned"}


@pytest.mark.asyncio
async def test_closed_ticket_is_terminal(engine, staff):
    ticket = await _public_ticket(engine)
    await engine.request_transition(ticket.id, TransitionRequest("assigned", assignee="agent-7"), staff)
    await engine.request_transition(ticket.id, TransitionRequest("closed", resolution_note="done"), staff)

    with pytest.raises(InvalidEdgeError):
        await engine.request_transition(ticket.id, TransitionRequest("in_progress"), staff)


@pytest.mark.asyncio
async def test_unknown_target_state_fails_validation(engine, staff):
    ticket = await _public_ticket(engine)

    with pytest.raises(ValidationFailedError):
        await engine.request_transition(ticket.id, TransitionRequest("reopened"), staff)


@pytest.mark.asyncio
async def test_state_from_other_kind_fails_validation(engine, repository, staff):
    ticket = await _public_ticket(engine)

    with pytest.raises(ValidationFailedError) as exc:
        await engine.request_transition(ticket.id, TransitionRequest("completed"), staff)

    assert exc.value.http_status == 422
    assert exc.value.to_dict()["details"] == {"work_item_id": ticket.id, "state": "unassigned"}
    assert (await engine.get_work_item(ticket.id)).state is TicketState.UNASSIGNED
    assert repository.history == []


@pytest.mark.asyncio
async def test_requester_notified_when_staff_creator_acts(engine, sink, staff):
    ticket = await engine.create_work_item(
        WorkItemKind.TICKET,
        WorkItemTemplate(title="Badge reader offline", requester_email="caller@example.com"),
        staff,
    )
    await engine.request_transition(ticket.id, TransitionRequest("assigned", assignee="agent-7"), staff)
    await engine.request_transition(ticket.id, TransitionRequest("closed", resolution_note="Rebooted"), staff)

    assert ticket.creator == "staff-1"
    caller = Recipient(email="caller@example.com")
    assert [e.event_type for e in sink.events if e.recipient == caller] == [
        NotificationEventType.CREATED,
        NotificationEventType.STATUS_CHANGED,
        NotificationEventType.CLOSED,
    ]
    assert [e for e in sink.events if e.recipient.user_id == "staff-1"] == []
    assert [e.event_type for e in sink.events if e.recipient.user_id == "agent-7"] == [
        NotificationEventType.ASSIGNED,
        NotificationEventType.CLOSED,
    ]


@pytest.mark.asyncio
async def test_note_on_non_terminal_transition_is_not_stored(engine, staff):
    ticket = await _public_ticket(engine)

    assigned = await engine.request_transition(
        ticket.id, TransitionRequest("assigned", assignee="agent-7", resolution_note="ignored"), staff
    )
    started = await engine.request_transition(
        ticket.id, TransitionRequest("in_progress", resolution_note="also ignored"), staff
    )

    assert assigned.resolution_note is None
    assert started.resolution_note is None
    history = await engine.list_history(ticket.id)
    assert [h.note for h in history] == [
        "Assigned to agent-7",
        "Status changed from assigned to in_progress",
    ]


@pytest.mark.asyncio
async def test_assignee_only_allowed_with_assign(engine, staff):
    ticket = await _public_ticket(engine)

    with pytest.raises(ValidationFailedError):
        await engine.request_transition(ticket.id, TransitionRequest("assigned"), staff)
    with pytest.raises(ValidationFailedError):
        await engine.request_transition(ticket.id, TransitionRequest("closed", assignee="x"), staff)


@pytest.mark.asyncio
async def test_missing_work_item(engine, staff):
    with pytest.raises(NotFoundError):
        await engine.get_work_item("missing")
    with pytest.raises(NotFoundError):
        await engine.list_history("missing")
    with pytest.raises(NotFoundError):
        await engine.request_transition("missing", TransitionRequest("in_progress"), staff)


@pytest.mark.asyncio
async def test_public_ticket_requires_contact_email(engine):
    with pytest.raises(ValidationFailedError):
        await engine.create_work_item(
            WorkItemKind.TICKET, WorkItemTemplate(title="Help"), Actor.anonymous()
        )


@pytest.mark.asyncio
async def test_ticket_cannot_be_created_assigned(engine, staff):
    with pytest.raises(ValidationFailedError):
        await engine.create_work_item(
            WorkItemKind.TICKET, WorkItemTemplate(title="Help", assignee="agent-7"), staff
        )


@pytest.mark.asyncio
async def test_empty_title_rejected(engine, staff):
    with pytest.raises(ValidationFailedError):
        await engine.create_work_item(WorkItemKind.TASK, WorkItemTemplate(title="   "), staff)


@pytest.mark.asyncio
async def test_only_staff_create_tasks(engine, repository):
    with pytest.raises(ForbiddenError):
        await engine.create_work_item(
            WorkItemKind.TASK,
            WorkItemTemplate(title="Rotate keys"),
            Actor.anonymous(email="someone@example.com"),
        )
    assert repository.work_items == {}


@pytest.mark.asyncio
async def test_task_lifecycle_without_resolution(engine, repository, sink, staff, admin):
    task = await engine.create_work_item(
        WorkItemKind.TASK, WorkItemTemplate(title="Rotate keys", assignee="staff-1"), admin
    )
    assert task.state is TaskState.OPEN
    assert task.requester_email is None
    assert [(e.event_type, e.recipient.user_id) for e in sink.events] == [
        (NotificationEventType.ASSIGNED, "staff-1")
    ]

    completed = await engine.request_transition(task.id, TransitionRequest("completed"), staff)

    assert completed.state is TaskState.COMPLETED
    assert repository.history[-1].note == "Status changed from open to completed"
    closed_events = sink.of_type(NotificationEventType.CLOSED)
    # the creator hears about completion, the assignee did it themselves
    assert [e.recipient.user_id for e in closed_events] == ["admin-1"]


@pytest.mark.asyncio
async def test_conflicting_concurrent_transitions_serialise(engine, repository, staff, admin):
    ticket = await _public_ticket(engine)
    repository.lock_hold_delay = 0.01

    results = await asyncio.gather(
        engine.request_transition(ticket.id, TransitionRequest("assigned", assignee="agent-1"), staff),
        engine.request_transition(ticket.id, TransitionRequest("assigned", assignee="agent-2"), admin),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, WorkItem)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], InvalidEdgeError)
    stored = await engine.get_work_item(ticket.id)
    assert stored.assignee == winners[0].assignee
    assert len(repository.history) == 1


@pytest.mark.asyncio
async def test_lock_timeout_surfaces_storage_error(repository, sink, staff):
    engine = LifecycleEngine(repository, sink, lock_timeout=0.05, retry_backoff=0)
    ticket = await _public_ticket(engine)

    async with repository.transaction() as tx:
        await tx.lock_work_item(ticket.id)
        with pytest.raises(StorageError):
            await engine.request_transition(
                ticket.id, TransitionRequest("assigned", assignee="agent-7"), staff
            )

    assert (await engine.get_work_item(ticket.id)).state is TicketState.UNASSIGNED


@pytest.mark.asyncio
async def test_transient_conflict_is_retried_once(engine, repository, staff):
    ticket = await _public_ticket(engine)
    repository.commit_failures = [TransientStorageError("could not serialize access")]

    updated = await engine.request_transition(
        ticket.id, TransitionRequest("assigned", assignee="agent-7"), staff
    )

    assert updated.state is TicketState.ASSIGNED
    assert len(repository.history) == 1


@pytest.mark.asyncio
async def test_repeated_transient_conflict_gives_up(engine, repository, sink, staff):
    ticket = await _public_ticket(engine)
    events_before = len(sink.events)
    repository.commit_failures = [
        TransientStorageError("deadlock detected"),
        TransientStorageError("deadlock detected"),
    ]

    with pytest.raises(StorageError) as exc:
        await engine.request_transition(ticket.id, TransitionRequest("assigned", assignee="agent-7"), staff)

    assert not isinstance(exc.value, TransientStorageError)
    assert (await engine.get_work_item(ticket.id)).state is TicketState.UNASSIGNED
    assert repository.history == []
    assert len(sink.events) == events_before


@pytest.mark.asyncio
async def test_no_events_when_commit_fails(engine, repository, sink):
    repository.commit_failures = [StorageError("connection reset")]

    with pytest.raises(StorageError):
        await _public_ticket(engine)

    assert repository.work_items == {}
    assert sink.events == []


@pytest.mark.asyncio
async def test_enqueue_failure_does_not_fail_transition(repository, staff):
    class BrokenSink(RecordingSink):
        def enqueue(self, event):
            raise RuntimeError("queue closed")

    engine = LifecycleEngine(repository, BrokenSink(), retry_backoff=0)
    ticket = await _public_ticket(engine)

    updated = await engine.request_transition(
        ticket.id, TransitionRequest("assigned", assignee="agent-7"), staff
    )

    assert updated.state is TicketState.ASSIGNED


@pytest.mark.asyncio
async def test_list_work_items_filters(engine, staff, admin):
    ticket = await _public_ticket(engine)
    task = await engine.create_work_item(
        WorkItemKind.TASK, WorkItemTemplate(title="Patch servers", assignee="agent-7"), admin
    )

    tasks = await engine.list_work_items(kind=WorkItemKind.TASK)
    unassigned = await engine.list_work_items(state="unassigned")
    mine = await engine.list_work_items(assignee="agent-7")

    assert [item.id for item in tasks] == [task.id]
    assert [item.id for item in unassigned] == [ticket.id]
    assert [item.id for item in mine] == [task.id]


@pytest.mark.asyncio
async def test_rejected_close_does_not_advance_history_count(engine, staff):
    ticket = await _public_ticket(engine)

    await engine.request_transition(ticket.id, TransitionRequest("assigned", assignee="agent-7"), staff)
    await engine.request_transition(ticket.id, TransitionRequest("in_progress"), staff)
    with pytest.raises(MissingResolutionError):
        await engine.request_transition(ticket.id, TransitionRequest("closed"), staff)
    assert len(await engine.list_history(ticket.id)) == 2

    closed = await engine.request_transition(ticket.id, TransitionRequest("closed", resolution_note="fixed"), staff)

    history = await engine.list_history(ticket.id)
    assert len(history) == 3
    assert closed.state is TicketState.CLOSED
    assert closed.resolution_note == "fixed"
    assert history[-1].note == "fixed"
