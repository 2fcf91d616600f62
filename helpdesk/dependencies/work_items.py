from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from helpdesk.dependencies.auth import role_required
from helpdesk.workitems.engine import LifecycleEngine
from helpdesk.workitems.models import Actor, Role
from helpdesk.workitems.recurrence import RecurrenceService

require_staff = role_required(Role.STAFF)
require_admin = role_required(Role.ADMIN)

StaffActor = Annotated[Actor, Depends(require_staff)]
AdminActor = Annotated[Actor, Depends(require_admin)]


async def get_lifecycle_engine(request: Request) -> LifecycleEngine:
    engine = getattr(request.app.state, "lifecycle_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Lifecycle engine is not configured")
    return engine


async def get_recurrence_service(request: Request) -> RecurrenceService:
    service = getattr(request.app.state, "recurrence_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Recurrence service is not configured")
    return service


EngineDep = Annotated[LifecycleEngine, Depends(get_lifecycle_engine)]
RecurrenceServiceDep = Annotated[RecurrenceService, Depends(get_recurrence_service)]
