from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from helpdesk.api.errors import to_http_exception
from helpdesk.dependencies.work_items import EngineDep, StaffActor
from helpdesk.workitems.errors import WorkItemError
from helpdesk.workitems.models import InAppNotification, NotificationEventType

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    id: str
    work_item_id: str
    event_type: NotificationEventType
    message: str
    is_read: bool
    created_at: datetime


class MarkReadRequest(BaseModel):
    ids: list[str] = Field(default_factory=list, max_length=500)


def _to_response(notification: InAppNotification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        work_item_id=notification.work_item_id,
        event_type=notification.event_type,
        message=notification.message,
        is_read=notification.is_read,
        created_at=notification.created_at,
    )


@router.get("", response_model=list[NotificationResponse])
async def list_notifications(
    engine: EngineDep,
    actor: StaffActor,
    unread_only: bool = Query(default=False),
) -> list[NotificationResponse]:
    try:
        notifications = await engine.repository.list_notifications(actor.id, unread_only=unread_only)
    except WorkItemError as exc:
        raise to_http_exception(exc) from exc
    return [_to_response(notification) for notification in notifications]


@router.post("/read")
async def mark_notifications_read(
    payload: MarkReadRequest, engine: EngineDep, actor: StaffActor
) -> dict[str, int]:
    try:
        updated = await engine.repository.mark_notifications_read(actor.id, payload.ids)
    except WorkItemError as exc:
        raise to_http_exception(exc) from exc
    return {"updated": updated}
