"""Asynchronous delivery of notifications for committed work item changes.

Events arrive on a bounded in-memory queue after the lifecycle engine has
committed. Delivery is best effort: each event gets at most one retry, and
failures are logged rather than reported to the caller whose transition
produced them.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol

from .models import InAppNotification, NotificationEvent, NotificationEventType
from .notifier import Notifier

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 2


class NotificationStore(Protocol):
    async def record_notification(self, notification: InAppNotification) -> None:
        ...


@dataclass(slots=True, frozen=True)
class DispatchOutcome:
    delivered: bool
    attempts: int
    recorded: bool


def render_message(event: NotificationEvent) -> str:
    """Human readable one-liner for an event, used for email bodies and in-app records."""

    payload = event.payload
    kind = str(payload.get("kind", "work item")).capitalize()
    title = payload.get("title", event.work_item_id)
    if event.event_type is NotificationEventType.CREATED:
        return f"{kind} '{title}' was created"
    if event.event_type is NotificationEventType.ASSIGNED:
        return f"{kind} '{title}' was assigned to {payload.get('assignee') or 'you'}"
    if event.event_type is NotificationEventType.STATUS_CHANGED:
        return f"{kind} '{title}' status changed from {payload.get('from_state')} to {payload.get('to_state')}"
    message = f"{kind} '{title}' was {payload.get('to_state', 'closed')}"
    note = payload.get("note")
    if note:
        message += f": {note}"
    return message


class NotificationDispatcher:
    """Consume notification events with a small pool of asyncio workers."""

    def __init__(
        self,
        notifier: Notifier,
        store: NotificationStore | None = None,
        *,
        queue_size: int = 1000,
        workers: int = 1,
        retry_delay: float = 1.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._notifier = notifier
        self._store = store
        self._queue: asyncio.Queue[NotificationEvent] = asyncio.Queue(maxsize=queue_size)
        self._worker_count = max(1, workers)
        self._retry_delay = retry_delay
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._workers: list[asyncio.Task[None]] = []

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def enqueue(self, event: NotificationEvent) -> bool:
        """Queue ``event`` without blocking; a full queue drops it."""

        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Notification queue full, dropping %s event for work item %s",
                event.event_type.value,
                event.work_item_id,
            )
            return False
        return True

    def start(self) -> None:
        if self._workers:
            logger.warning("Notification dispatcher already running")
            return
        self._workers = [
            asyncio.create_task(self._run_worker(index), name=f"notification-worker-{index}")
            for index in range(self._worker_count)
        ]
        logger.info("Started %d notification worker(s)", self._worker_count)

    async def stop(self, *, drain_timeout: float | None = 5.0) -> None:
        if not self._workers:
            return
        if drain_timeout:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Stopping dispatcher with %d undelivered notification(s)", self.pending)
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def _run_worker(self, index: int) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            except Exception:  # pragma: no cover - dispatch already isolates delivery errors
                logger.exception("Notification worker %d failed on event for %s", index, event.work_item_id)
            finally:
                self._queue.task_done()

    async def dispatch(self, event: NotificationEvent) -> DispatchOutcome:
        """Deliver one event; never raises for transport or store failures."""

        message = render_message(event)
        payload = {**event.payload, "message": message}

        delivered = False
        attempts = 0
        while attempts < _MAX_ATTEMPTS and not delivered:
            attempts += 1
            try:
                await self._notifier.send(event.event_type, event.recipient, payload)
                delivered = True
            except Exception as exc:
                if attempts < _MAX_ATTEMPTS:
                    logger.warning(
                        "Notification %s to %s failed (%s), retrying once",
                        event.event_type.value,
                        event.recipient,
                        exc,
                    )
                    await asyncio.sleep(self._retry_delay)
                else:
                    logger.error(
                        "Giving up on notification %s to %s for work item %s: %s",
                        event.event_type.value,
                        event.recipient,
                        event.work_item_id,
                        exc,
                    )

        recorded = await self._record_in_app(event, message)
        return DispatchOutcome(delivered=delivered, attempts=attempts, recorded=recorded)

    async def _record_in_app(self, event: NotificationEvent, message: str) -> bool:
        if self._store is None or not event.recipient.user_id:
            return False
        notification = InAppNotification(
            id=str(uuid.uuid4()),
            user_id=event.recipient.user_id,
            work_item_id=event.work_item_id,
            event_type=event.event_type,
            message=message,
            is_read=False,
            created_at=self._clock(),
        )
        try:
            await self._store.record_notification(notification)
        except Exception:
            logger.exception("Could not record in-app notification for %s", event.recipient.user_id)
            return False
        return True
