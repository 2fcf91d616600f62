from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from helpdesk.api.errors import to_http_exception
from helpdesk.dependencies.auth import CurrentActor
from helpdesk.dependencies.work_items import EngineDep, StaffActor
from helpdesk.workitems.errors import WorkItemError
from helpdesk.workitems.models import (
    HistoryEntry,
    Priority,
    TransitionRequest,
    WorkItem,
    WorkItemKind,
    WorkItemTemplate,
)

router = APIRouter(tags=["work-items"])


class TicketSubmissionRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="", max_length=10_000)
    priority: Priority = Priority.MEDIUM
    requester_email: str | None = Field(default=None, max_length=320)


class WorkItemCreateRequest(BaseModel):
    kind: WorkItemKind
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="", max_length=10_000)
    priority: Priority = Priority.MEDIUM
    assignee: str | None = None
    requester_email: str | None = Field(default=None, max_length=320)
    due_at: datetime | None = None


class TransitionBody(BaseModel):
    target_state: str = Field(..., min_length=1)
    assignee: str | None = None
    resolution_note: str | None = Field(default=None, max_length=10_000)


class WorkItemResponse(BaseModel):
    id: str
    kind: WorkItemKind
    state: str
    title: str
    description: str
    priority: Priority
    creator: str | None
    requester_email: str | None
    assignee: str | None
    resolution_note: str | None
    due_at: datetime | None
    recurrence_id: str | None
    created_at: datetime
    updated_at: datetime


class HistoryEntryResponse(BaseModel):
    id: str
    work_item_id: str
    actor: str | None
    from_state: str
    to_state: str
    note: str
    created_at: datetime


def _to_response(item: WorkItem) -> WorkItemResponse:
    return WorkItemResponse(
        id=item.id,
        kind=item.kind,
        state=item.state.value,
        title=item.title,
        description=item.description,
        priority=item.priority,
        creator=item.creator,
        requester_email=item.requester_email,
        assignee=item.assignee,
        resolution_note=item.resolution_note,
        due_at=item.due_at,
        recurrence_id=item.recurrence_id,
        created_at=item.created_at,
        updated_at=item.updated_at,
    )


def _to_history_response(entry: HistoryEntry) -> HistoryEntryResponse:
    return HistoryEntryResponse(
        id=entry.id,
        work_item_id=entry.work_item_id,
        actor=entry.actor,
        from_state=entry.from_state,
        to_state=entry.to_state,
        note=entry.note,
        created_at=entry.created_at,
    )


@router.post("/tickets", response_model=WorkItemResponse, status_code=status.HTTP_201_CREATED)
async def submit_ticket(
    payload: TicketSubmissionRequest, engine: EngineDep, actor: CurrentActor
) -> WorkItemResponse:
    template = WorkItemTemplate(
        title=payload.title,
        description=payload.description,
        priority=payload.priority,
        requester_email=payload.requester_email,
    )
    try:
        item = await engine.create_work_item(WorkItemKind.TICKET, template, actor)
    except WorkItemError as exc:
        raise to_http_exception(exc) from exc
    return _to_response(item)


@router.post("/work-items", response_model=WorkItemResponse, status_code=status.HTTP_201_CREATED)
async def create_work_item(
    payload: WorkItemCreateRequest, engine: EngineDep, actor: StaffActor
) -> WorkItemResponse:
    template = WorkItemTemplate(
        title=payload.title,
        description=payload.description,
        priority=payload.priority,
        assignee=payload.assignee,
        requester_email=payload.requester_email,
        due_at=payload.due_at,
    )
    try:
        item = await engine.create_work_item(payload.kind, template, actor)
    except WorkItemError as exc:
        raise to_http_exception(exc) from exc
    return _to_response(item)


@router.get("/work-items", response_model=list[WorkItemResponse])
async def list_work_items(
    engine: EngineDep,
    _: StaffActor,
    kind: WorkItemKind | None = Query(default=None),
    state: str | None = Query(default=None),
    assignee: str | None = Query(default=None),
) -> list[WorkItemResponse]:
    try:
        items = await engine.list_work_items(kind=kind, state=state, assignee=assignee)
    except WorkItemError as exc:
        raise to_http_exception(exc) from exc
    return [_to_response(item) for item in items]


@router.get("/work-items/{work_item_id}", response_model=WorkItemResponse)
async def get_work_item(work_item_id: str, engine: EngineDep, _: StaffActor) -> WorkItemResponse:
    try:
        item = await engine.get_work_item(work_item_id)
    except WorkItemError as exc:
        raise to_http_exception(exc) from exc
    return _to_response(item)


@router.get("/work-items/{work_item_id}/history", response_model=list[HistoryEntryResponse])
async def list_history(
    work_item_id: str, engine: EngineDep, _: StaffActor
) -> list[HistoryEntryResponse]:
    try:
        entries = await engine.list_history(work_item_id)
    except WorkItemError as exc:
        raise to_http_exception(exc) from exc
    return [_to_history_response(entry) for entry in entries]


@router.post("/work-items/{work_item_id}/transitions", response_model=WorkItemResponse)
async def request_transition(
    work_item_id: str, payload: TransitionBody, engine: EngineDep, actor: CurrentActor
) -> WorkItemResponse:
    transition = TransitionRequest(
        target_state=payload.target_state,
        assignee=payload.assignee,
        resolution_note=payload.resolution_note,
    )
    try:
        item = await engine.request_transition(work_item_id, transition, actor)
    except WorkItemError as exc:
        raise to_http_exception(exc) from exc
    return _to_response(item)
