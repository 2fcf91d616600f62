from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from helpdesk.api.errors import to_http_exception
from helpdesk.dependencies.auth import CurrentActor
from helpdesk.dependencies.work_items import RecurrenceServiceDep, StaffActor
from helpdesk.workitems.errors import WorkItemError
from helpdesk.workitems.models import Frequency, Priority, RecurrenceDefinition, WorkItemTemplate

router = APIRouter(prefix="/recurrences", tags=["recurrences"])


class RecurrenceCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="", max_length=10_000)
    priority: Priority = Priority.MEDIUM
    assignee: str | None = None
    frequency: Frequency
    starts_at: datetime | None = None


class RecurrenceResponse(BaseModel):
    id: str
    title: str
    description: str
    priority: Priority
    assignee: str | None
    frequency: Frequency
    starts_at: datetime
    next_due_at: datetime
    occurrences: int
    is_active: bool
    created_by: str
    created_at: datetime
    updated_at: datetime


def _to_response(definition: RecurrenceDefinition) -> RecurrenceResponse:
    template = definition.template
    return RecurrenceResponse(
        id=definition.id,
        title=template.title,
        description=template.description,
        priority=template.priority,
        assignee=template.assignee,
        frequency=definition.frequency,
        starts_at=definition.starts_at,
        next_due_at=definition.next_due_at,
        occurrences=definition.occurrences,
        is_active=definition.is_active,
        created_by=definition.created_by,
        created_at=definition.created_at,
        updated_at=definition.updated_at,
    )


@router.post("", response_model=RecurrenceResponse, status_code=status.HTTP_201_CREATED)
async def create_recurrence(
    payload: RecurrenceCreateRequest, service: RecurrenceServiceDep, actor: CurrentActor
) -> RecurrenceResponse:
    template = WorkItemTemplate(
        title=payload.title,
        description=payload.description,
        priority=payload.priority,
        assignee=payload.assignee,
    )
    try:
        definition = await service.create_definition(
            template, payload.frequency, actor, starts_at=payload.starts_at
        )
    except WorkItemError as exc:
        raise to_http_exception(exc) from exc
    return _to_response(definition)


@router.get("", response_model=list[RecurrenceResponse])
async def list_recurrences(
    service: RecurrenceServiceDep,
    _: StaffActor,
    active_only: bool = Query(default=False),
) -> list[RecurrenceResponse]:
    try:
        definitions = await service.list_definitions(active_only=active_only)
    except WorkItemError as exc:
        raise to_http_exception(exc) from exc
    return [_to_response(definition) for definition in definitions]


@router.get("/{definition_id}", response_model=RecurrenceResponse)
async def get_recurrence(
    definition_id: str, service: RecurrenceServiceDep, _: StaffActor
) -> RecurrenceResponse:
    try:
        definition = await service.get_definition(definition_id)
    except WorkItemError as exc:
        raise to_http_exception(exc) from exc
    return _to_response(definition)


@router.post("/{definition_id}/deactivate", response_model=RecurrenceResponse)
async def deactivate_recurrence(
    definition_id: str, service: RecurrenceServiceDep, actor: CurrentActor
) -> RecurrenceResponse:
    try:
        definition = await service.deactivate_definition(definition_id, actor)
    except WorkItemError as exc:
        raise to_http_exception(exc) from exc
    return _to_response(definition)
