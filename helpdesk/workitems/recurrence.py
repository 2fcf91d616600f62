from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from dateutil.relativedelta import relativedelta

from .engine import validate_template
from .errors import ForbiddenError, NotFoundError, ValidationFailedError
from .models import Actor, Frequency, RecurrenceDefinition, WorkItemKind, WorkItemTemplate
from .repository import WorkItemRepository

logger = logging.getLogger(__name__)


def occurrence_at(starts_at: datetime, frequency: Frequency, occurrence: int) -> datetime:
    """Due time of the ``occurrence``-th cycle, counted from the anchor.

    Months are added to the anchor rather than to the previous due date so
    month-end schedules do not drift (Jan 31, Feb 28, Mar 31, ...).
    """

    if occurrence < 0:
        raise ValueError("occurrence must be non-negative")
    if frequency is Frequency.DAILY:
        return starts_at + timedelta(days=occurrence)
    if frequency is Frequency.WEEKLY:
        return starts_at + timedelta(weeks=occurrence)
    return starts_at + relativedelta(months=occurrence)


def advance(definition: RecurrenceDefinition, *, now: datetime) -> RecurrenceDefinition:
    """Definition state after one successful spawn."""

    occurrences = definition.occurrences + 1
    return replace(
        definition,
        occurrences=occurrences,
        next_due_at=occurrence_at(definition.starts_at, definition.frequency, occurrences),
        updated_at=now,
    )


class RecurrenceService:
    """Create, inspect and deactivate recurrence definitions."""

    def __init__(
        self,
        repository: WorkItemRepository,
        *,
        lock_timeout: float | None = 5.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._lock_timeout = lock_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def create_definition(
        self,
        template: WorkItemTemplate,
        frequency: Frequency,
        actor: Actor,
        *,
        starts_at: datetime | None = None,
    ) -> RecurrenceDefinition:
        if not actor.is_admin or actor.id is None:
            raise ForbiddenError("Only admins may create recurring tasks")
        cleaned = validate_template(WorkItemKind.TASK, template)
        try:
            frequency = Frequency(frequency)
        except ValueError as exc:
            raise ValidationFailedError(f"Unknown frequency {frequency!r}") from exc
        if starts_at is not None and starts_at.tzinfo is None:
            raise ValidationFailedError("starts_at must be timezone-aware")

        now = self._clock()
        first_due = starts_at or now
        definition = RecurrenceDefinition(
            id=str(uuid.uuid4()),
            template=replace(cleaned, due_at=None),
            frequency=frequency,
            starts_at=first_due,
            next_due_at=first_due,
            occurrences=0,
            is_active=True,
            created_by=actor.id,
            created_at=now,
            updated_at=now,
        )
        async with self._repository.transaction(lock_timeout=self._lock_timeout) as tx:
            await tx.insert_definition(definition)
        logger.info(
            "Recurrence %s created by %s (%s, first due %s)",
            definition.id,
            actor.id,
            frequency.value,
            first_due.isoformat(),
        )
        return definition

    async def deactivate_definition(self, definition_id: str, actor: Actor) -> RecurrenceDefinition:
        if not actor.is_admin:
            raise ForbiddenError("Only admins may deactivate recurring tasks")
        async with self._repository.transaction(lock_timeout=self._lock_timeout) as tx:
            definition = await tx.lock_definition(definition_id)
            if definition is None:
                raise NotFoundError(f"Recurrence {definition_id} not found")
            if not definition.is_active:
                return definition
            deactivated = replace(definition, is_active=False, updated_at=self._clock())
            await tx.update_definition(deactivated)
        logger.info("Recurrence %s deactivated by %s", definition_id, actor.id)
        return deactivated

    async def get_definition(self, definition_id: str) -> RecurrenceDefinition:
        definition = await self._repository.get_definition(definition_id)
        if definition is None:
            raise NotFoundError(f"Recurrence {definition_id} not found")
        return definition

    async def list_definitions(self, *, active_only: bool = False) -> Sequence[RecurrenceDefinition]:
        return await self._repository.list_definitions(active_only=active_only)
