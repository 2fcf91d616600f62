from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, AsyncIterator, Mapping, Protocol, Sequence

import asyncpg

from .errors import StorageError, TransientStorageError
from .models import (
    Frequency,
    HistoryEntry,
    InAppNotification,
    NotificationEventType,
    Priority,
    RecurrenceDefinition,
    WorkItem,
    WorkItemKind,
    WorkItemState,
    WorkItemTemplate,
    parse_state,
)


class RepositoryTransaction(Protocol):
    """Operations available inside one storage transaction."""

    async def lock_work_item(self, work_item_id: str) -> WorkItem | None:
        ...

    async def insert_work_item(self, item: WorkItem) -> None:
        ...

    async def update_work_item(self, item: WorkItem) -> None:
        ...

    async def append_history(self, entry: HistoryEntry) -> None:
        ...

    async def lock_definition(
        self, definition_id: str, *, skip_locked: bool = False
    ) -> RecurrenceDefinition | None:
        ...

    async def insert_definition(self, definition: RecurrenceDefinition) -> None:
        ...

    async def update_definition(self, definition: RecurrenceDefinition) -> None:
        ...


class WorkItemRepository(Protocol):
    """Durable storage for work items, their history and recurrence definitions."""

    def transaction(self, *, lock_timeout: float | None = None) -> AsyncContextManager[RepositoryTransaction]:
        ...

    async def get_work_item(self, work_item_id: str) -> WorkItem | None:
        ...

    async def list_work_items(
        self,
        *,
        kind: WorkItemKind | None = None,
        state: str | None = None,
        assignee: str | None = None,
    ) -> Sequence[WorkItem]:
        ...

    async def list_history(self, work_item_id: str) -> Sequence[HistoryEntry]:
        ...

    async def get_definition(self, definition_id: str) -> RecurrenceDefinition | None:
        ...

    async def list_definitions(self, *, active_only: bool = False) -> Sequence[RecurrenceDefinition]:
        ...

    async def list_due_definition_ids(self, now: datetime) -> Sequence[str]:
        ...

    async def record_notification(self, notification: InAppNotification) -> None:
        ...

    async def list_notifications(
        self, user_id: str, *, unread_only: bool = False
    ) -> Sequence[InAppNotification]:
        ...

    async def mark_notifications_read(self, user_id: str, notification_ids: Sequence[str]) -> int:
        ...


_WORK_ITEM_COLUMNS = (
    "id, kind, state, title, description, priority, creator, requester_email, assignee, "
    "resolution_note, due_at, recurrence_id, recurrence_cycle, created_at, updated_at"
)

_DEFINITION_COLUMNS = (
    "id, template, frequency, starts_at, next_due_at, occurrences, is_active, created_by, "
    "created_at, updated_at"
)


class _PostgresTransaction:
    """Statements bound to a connection with an open transaction."""

    _LOCK_WORK_ITEM_SQL = f"""
    SELECT {_WORK_ITEM_COLUMNS}
    FROM work_items
    WHERE id = $1
    FOR UPDATE
    """

    _INSERT_WORK_ITEM_SQL = f"""
    INSERT INTO work_items ({_WORK_ITEM_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
    """

    _UPDATE_WORK_ITEM_SQL = """
    UPDATE work_items
    SET state = $2,
        assignee = $3,
        resolution_note = $4,
        updated_at = $5
    WHERE id = $1
    """

    _INSERT_HISTORY_SQL = """
    INSERT INTO work_item_history (id, work_item_id, actor, from_state, to_state, note, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7)
    """

    _LOCK_DEFINITION_SQL = f"""
    SELECT {_DEFINITION_COLUMNS}
    FROM recurrence_definitions
    WHERE id = $1
    FOR UPDATE
    """

    _LOCK_DEFINITION_SKIP_LOCKED_SQL = _LOCK_DEFINITION_SQL.rstrip() + " SKIP LOCKED\n"

    _INSERT_DEFINITION_SQL = f"""
    INSERT INTO recurrence_definitions ({_DEFINITION_COLUMNS})
    VALUES ($1, $2::jsonb, $3, $4, $5, $6, $7, $8, $9, $10)
    """

    _UPDATE_DEFINITION_SQL = """
    UPDATE recurrence_definitions
    SET next_due_at = $2,
        occurrences = $3,
        is_active = $4,
        updated_at = $5
    WHERE id = $1
    """

    def __init__(self, connection: Any) -> None:
        self._connection = connection

    async def lock_work_item(self, work_item_id: str) -> WorkItem | None:
        row = await self._connection.fetchrow(self._LOCK_WORK_ITEM_SQL, work_item_id)
        if row is None:
            return None
        return row_to_work_item(row)

    async def insert_work_item(self, item: WorkItem) -> None:
        await self._connection.execute(
            self._INSERT_WORK_ITEM_SQL,
            item.id,
            item.kind.value,
            item.state.value,
            item.title,
            item.description,
            item.priority.value,
            item.creator,
            item.requester_email,
            item.assignee,
            item.resolution_note,
            item.due_at,
            item.recurrence_id,
            item.recurrence_cycle,
            item.created_at,
            item.updated_at,
        )

    async def update_work_item(self, item: WorkItem) -> None:
        await self._connection.execute(
            self._UPDATE_WORK_ITEM_SQL,
            item.id,
            item.state.value,
            item.assignee,
            item.resolution_note,
            item.updated_at,
        )

    async def append_history(self, entry: HistoryEntry) -> None:
        await self._connection.execute(
            self._INSERT_HISTORY_SQL,
            entry.id,
            entry.work_item_id,
            entry.actor,
            entry.from_state,
            entry.to_state,
            entry.note,
            entry.created_at,
        )

    async def lock_definition(
        self, definition_id: str, *, skip_locked: bool = False
    ) -> RecurrenceDefinition | None:
        sql = self._LOCK_DEFINITION_SKIP_LOCKED_SQL if skip_locked else self._LOCK_DEFINITION_SQL
        row = await self._connection.fetchrow(sql, definition_id)
        if row is None:
            return None
        return row_to_definition(row)

    async def insert_definition(self, definition: RecurrenceDefinition) -> None:
        await self._connection.execute(
            self._INSERT_DEFINITION_SQL,
            definition.id,
            json.dumps(definition.template.to_mapping()),
            definition.frequency.value,
            definition.starts_at,
            definition.next_due_at,
            definition.occurrences,
            definition.is_active,
            definition.created_by,
            definition.created_at,
            definition.updated_at,
        )

    async def update_definition(self, definition: RecurrenceDefinition) -> None:
        await self._connection.execute(
            self._UPDATE_DEFINITION_SQL,
            definition.id,
            definition.next_due_at,
            definition.occurrences,
            definition.is_active,
            definition.updated_at,
        )


class PostgresWorkItemRepository:
    """asyncpg-backed repository; row locks provide per-item and per-definition exclusivity."""

    _CREATE_WORK_ITEMS_SQL = """
    CREATE TABLE IF NOT EXISTS work_items (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        state TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        priority TEXT NOT NULL,
        creator TEXT,
        requester_email TEXT,
        assignee TEXT,
        resolution_note TEXT,
        due_at TIMESTAMPTZ,
        recurrence_id TEXT,
        recurrence_cycle INTEGER,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_RECURRENCE_CYCLE_INDEX_SQL = """
    CREATE UNIQUE INDEX IF NOT EXISTS work_items_recurrence_cycle_idx
    ON work_items (recurrence_id, recurrence_cycle)
    WHERE recurrence_id IS NOT NULL
    """

    _CREATE_HISTORY_SQL = """
    CREATE TABLE IF NOT EXISTS work_item_history (
        seq BIGSERIAL PRIMARY KEY,
        id TEXT NOT NULL UNIQUE,
        work_item_id TEXT NOT NULL REFERENCES work_items(id),
        actor TEXT,
        from_state TEXT NOT NULL,
        to_state TEXT NOT NULL,
        note TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_DEFINITIONS_SQL = """
    CREATE TABLE IF NOT EXISTS recurrence_definitions (
        id TEXT PRIMARY KEY,
        template JSONB NOT NULL,
        frequency TEXT NOT NULL,
        starts_at TIMESTAMPTZ NOT NULL,
        next_due_at TIMESTAMPTZ NOT NULL,
        occurrences INTEGER NOT NULL DEFAULT 0,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_by TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_DUE_INDEX_SQL = """
    CREATE INDEX IF NOT EXISTS recurrence_definitions_due_idx
    ON recurrence_definitions (next_due_at)
    WHERE is_active
    """

    _CREATE_NOTIFICATIONS_SQL = """
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        work_item_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        message TEXT NOT NULL,
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _SET_LOCK_TIMEOUT_SQL = "SELECT set_config('lock_timeout', $1, true)"

    _SELECT_WORK_ITEM_SQL = f"""
    SELECT {_WORK_ITEM_COLUMNS}
    FROM work_items
    WHERE id = $1
    """

    _SELECT_WORK_ITEMS_SQL = f"""
    SELECT {_WORK_ITEM_COLUMNS}
    FROM work_items
    WHERE ($1::text IS NULL OR kind = $1)
      AND ($2::text IS NULL OR state = $2)
      AND ($3::text IS NULL OR assignee = $3)
    ORDER BY created_at DESC
    """

    _SELECT_HISTORY_SQL = """
    SELECT id, work_item_id, actor, from_state, to_state, note, created_at
    FROM work_item_history
    WHERE work_item_id = $1
    ORDER BY seq ASC
    """

    _SELECT_DEFINITION_SQL = f"""
    SELECT {_DEFINITION_COLUMNS}
    FROM recurrence_definitions
    WHERE id = $1
    """

    _SELECT_DEFINITIONS_SQL = f"""
    SELECT {_DEFINITION_COLUMNS}
    FROM recurrence_definitions
    WHERE ($1::boolean IS FALSE OR is_active)
    ORDER BY created_at ASC
    """

    _SELECT_DUE_DEFINITION_IDS_SQL = """
    SELECT id
    FROM recurrence_definitions
    WHERE is_active AND next_due_at <= $1
    ORDER BY next_due_at ASC
    """

    _INSERT_NOTIFICATION_SQL = """
    INSERT INTO notifications (id, user_id, work_item_id, event_type, message, is_read, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7)
    """

    _SELECT_NOTIFICATIONS_SQL = """
    SELECT id, user_id, work_item_id, event_type, message, is_read, created_at
    FROM notifications
    WHERE user_id = $1 AND ($2::boolean IS FALSE OR NOT is_read)
    ORDER BY created_at DESC
    """

    _MARK_NOTIFICATIONS_READ_SQL = """
    UPDATE notifications
    SET is_read = TRUE
    WHERE user_id = $1 AND id = ANY($2::text[]) AND NOT is_read
    RETURNING id
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_WORK_ITEMS_SQL)
            await connection.execute(self._CREATE_RECURRENCE_CYCLE_INDEX_SQL)
            await connection.execute(self._CREATE_HISTORY_SQL)
            await connection.execute(self._CREATE_DEFINITIONS_SQL)
            await connection.execute(self._CREATE_DUE_INDEX_SQL)
            await connection.execute(self._CREATE_NOTIFICATIONS_SQL)

    @asynccontextmanager
    async def transaction(self, *, lock_timeout: float | None = None) -> AsyncIterator[RepositoryTransaction]:
        try:
            async with self._pool.acquire() as connection:
                async with connection.transaction():
                    if lock_timeout is not None:
                        await connection.execute(self._SET_LOCK_TIMEOUT_SQL, f"{int(lock_timeout * 1000)}ms")
                    yield _PostgresTransaction(connection)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise translate_storage_error(exc) from exc

    async def get_work_item(self, work_item_id: str) -> WorkItem | None:
        row = await self._fetchrow(self._SELECT_WORK_ITEM_SQL, work_item_id)
        if row is None:
            return None
        return row_to_work_item(row)

    async def list_work_items(
        self,
        *,
        kind: WorkItemKind | None = None,
        state: str | None = None,
        assignee: str | None = None,
    ) -> Sequence[WorkItem]:
        rows = await self._fetch(
            self._SELECT_WORK_ITEMS_SQL,
            None if kind is None else kind.value,
            state,
            assignee,
        )
        return [row_to_work_item(row) for row in rows]

    async def list_history(self, work_item_id: str) -> Sequence[HistoryEntry]:
        rows = await self._fetch(self._SELECT_HISTORY_SQL, work_item_id)
        return [row_to_history(row) for row in rows]

    async def get_definition(self, definition_id: str) -> RecurrenceDefinition | None:
        row = await self._fetchrow(self._SELECT_DEFINITION_SQL, definition_id)
        if row is None:
            return None
        return row_to_definition(row)

    async def list_definitions(self, *, active_only: bool = False) -> Sequence[RecurrenceDefinition]:
        rows = await self._fetch(self._SELECT_DEFINITIONS_SQL, active_only)
        return [row_to_definition(row) for row in rows]

    async def list_due_definition_ids(self, now: datetime) -> Sequence[str]:
        rows = await self._fetch(self._SELECT_DUE_DEFINITION_IDS_SQL, now)
        return [str(row["id"]) for row in rows]

    async def record_notification(self, notification: InAppNotification) -> None:
        try:
            async with self._pool.acquire() as connection:
                await connection.execute(
                    self._INSERT_NOTIFICATION_SQL,
                    notification.id,
                    notification.user_id,
                    notification.work_item_id,
                    notification.event_type.value,
                    notification.message,
                    notification.is_read,
                    notification.created_at,
                )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise translate_storage_error(exc) from exc

    async def list_notifications(
        self, user_id: str, *, unread_only: bool = False
    ) -> Sequence[InAppNotification]:
        rows = await self._fetch(self._SELECT_NOTIFICATIONS_SQL, user_id, unread_only)
        return [row_to_notification(row) for row in rows]

    async def mark_notifications_read(self, user_id: str, notification_ids: Sequence[str]) -> int:
        if not notification_ids:
            return 0
        rows = await self._fetch(self._MARK_NOTIFICATIONS_READ_SQL, user_id, list(notification_ids))
        return len(rows)

    async def _fetchrow(self, sql: str, *args: Any) -> Any:
        try:
            async with self._pool.acquire() as connection:
                return await connection.fetchrow(sql, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise translate_storage_error(exc) from exc

    async def _fetch(self, sql: str, *args: Any) -> list[Any]:
        try:
            async with self._pool.acquire() as connection:
                return list(await connection.fetch(sql, *args))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise translate_storage_error(exc) from exc


_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)


def translate_storage_error(exc: BaseException) -> StorageError:
    """Map a driver exception onto the engine's storage error taxonomy."""

    if isinstance(exc, _TRANSIENT_ERRORS):
        return TransientStorageError(f"Transaction conflict: {exc}")
    if isinstance(exc, asyncpg.exceptions.LockNotAvailableError):
        return StorageError("Timed out waiting for a row lock")
    return StorageError(f"Storage failure: {exc}")


def row_to_work_item(row: Mapping[str, Any]) -> WorkItem:
    kind = WorkItemKind(str(row["kind"]))
    state: WorkItemState = parse_state(kind, str(row["state"]))
    cycle = row.get("recurrence_cycle")
    return WorkItem(
        id=str(row["id"]),
        kind=kind,
        state=state,
        title=str(row["title"]),
        description=str(row.get("description") or ""),
        priority=Priority(str(row["priority"])),
        creator=_optional_str(row.get("creator")),
        requester_email=_optional_str(row.get("requester_email")),
        assignee=_optional_str(row.get("assignee")),
        resolution_note=_optional_str(row.get("resolution_note")),
        due_at=_optional_datetime(row.get("due_at")),
        recurrence_id=_optional_str(row.get("recurrence_id")),
        recurrence_cycle=None if cycle is None else int(cycle),
        created_at=_ensure_datetime(row["created_at"]),
        updated_at=_ensure_datetime(row["updated_at"]),
    )


def row_to_history(row: Mapping[str, Any]) -> HistoryEntry:
    return HistoryEntry(
        id=str(row["id"]),
        work_item_id=str(row["work_item_id"]),
        actor=_optional_str(row.get("actor")),
        from_state=str(row["from_state"]),
        to_state=str(row["to_state"]),
        note=str(row["note"]),
        created_at=_ensure_datetime(row["created_at"]),
    )


def row_to_definition(row: Mapping[str, Any]) -> RecurrenceDefinition:
    template = row["template"]
    if isinstance(template, (str, bytes)):
        template = json.loads(template)
    return RecurrenceDefinition(
        id=str(row["id"]),
        template=WorkItemTemplate.from_mapping(template),
        frequency=Frequency(str(row["frequency"])),
        starts_at=_ensure_datetime(row["starts_at"]),
        next_due_at=_ensure_datetime(row["next_due_at"]),
        occurrences=int(row["occurrences"]),
        is_active=bool(row["is_active"]),
        created_by=str(row["created_by"]),
        created_at=_ensure_datetime(row["created_at"]),
        updated_at=_ensure_datetime(row["updated_at"]),
    )


def row_to_notification(row: Mapping[str, Any]) -> InAppNotification:
    return InAppNotification(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        work_item_id=str(row["work_item_id"]),
        event_type=NotificationEventType(str(row["event_type"])),
        message=str(row["message"]),
        is_read=bool(row["is_read"]),
        created_at=_ensure_datetime(row["created_at"]),
    )


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _optional_datetime(value: Any) -> datetime | None:
    return None if value is None else _ensure_datetime(value)


def _ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed
