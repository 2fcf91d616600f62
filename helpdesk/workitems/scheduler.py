"""Periodic spawning of tasks from recurrence definitions.

Each due definition is handled in its own transaction. The task insert and the
``next_due_at`` advance commit together, and the definition row is claimed with
``SKIP LOCKED``, so overlapping ticks, in this process or another, never spawn
the same cycle twice. A definition that fails is left untouched and the next
tick picks it up again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from helpdesk.core.logging import start_span

from .engine import LifecycleEngine
from .errors import StorageError
from .models import Actor, NotificationEvent, Role, WorkItem, WorkItemKind
from .recurrence import advance
from .repository import RepositoryTransaction

logger = logging.getLogger(__name__)

JOB_ID = "spawn_recurring_tasks"


@dataclass(slots=True)
class TickReport:
    """What one scheduler tick did, keyed by definition id."""

    spawned: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class RecurrenceScheduler:
    """Spawn tasks for due recurrence definitions on a fixed interval."""

    def __init__(
        self,
        engine: LifecycleEngine,
        *,
        interval_seconds: int = 60,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._interval_seconds = interval_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        if self._scheduler is not None:
            logger.warning("Recurrence scheduler already running")
            return
        scheduler = AsyncIOScheduler(timezone=timezone.utc)
        scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=JOB_ID,
            name="Spawn due recurring tasks",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Recurrence scheduler started (every %ss)", self._interval_seconds)

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Recurrence scheduler stopped")

    async def _tick(self) -> None:
        try:
            report = await self.run_once()
        except StorageError:
            logger.exception("Recurrence tick could not query due definitions")
            return
        if report.spawned or report.failed:
            logger.info(
                "Recurrence tick spawned %d task(s), %d failed, %d skipped",
                len(report.spawned),
                len(report.failed),
                len(report.skipped),
            )

    async def run_once(self, now: datetime | None = None) -> TickReport:
        """Process every definition due at ``now``, each independently."""

        now = now or self._clock()
        report = TickReport()
        with start_span("recurrence.tick") as span:
            due_ids = await self._engine.repository.list_due_definition_ids(now)
            span.set_attribute("recurrence.due_count", len(due_ids))
            for definition_id in due_ids:
                try:
                    spawned = await self._spawn(definition_id, now)
                except StorageError as exc:
                    logger.warning("Recurrence %s not spawned, will retry next tick: %s", definition_id, exc)
                    report.failed.append(definition_id)
                    continue
                except Exception:
                    logger.exception("Recurrence %s failed to spawn", definition_id)
                    report.failed.append(definition_id)
                    continue
                if spawned is None:
                    report.skipped.append(definition_id)
                else:
                    report.spawned[definition_id] = spawned.id
        return report

    async def _spawn(self, definition_id: str, now: datetime) -> WorkItem | None:
        async with self._engine.repository.transaction() as tx:
            result = await self._spawn_locked(tx, definition_id, now)
        if result is None:
            return None
        item, events = result
        logger.info("Recurrence %s spawned task %s", definition_id, item.id)
        self._engine.publish(events)
        return item

    async def _spawn_locked(
        self, tx: RepositoryTransaction, definition_id: str, now: datetime
    ) -> tuple[WorkItem, list[NotificationEvent]] | None:
        definition = await tx.lock_definition(definition_id, skip_locked=True)
        if definition is None or not definition.is_active or definition.next_due_at > now:
            # Claimed by a concurrent tick, already advanced, or deactivated.
            return None

        advanced = advance(definition, now=now)
        template = replace(definition.template, due_at=advanced.next_due_at)
        owner = Actor(id=definition.created_by, role=Role.ADMIN)
        item, events = await self._engine.spawn_in_transaction(
            tx,
            WorkItemKind.TASK,
            template,
            owner,
            recurrence_id=definition.id,
            recurrence_cycle=definition.occurrences,
        )
        await tx.update_definition(advanced)
        return item, events
