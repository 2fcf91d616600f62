from datetime import datetime, timezone

import pytest

from fakes import InMemoryWorkItemRepository, RecordingSink
from helpdesk.workitems.engine import LifecycleEngine
from helpdesk.workitems.models import Actor, Role


@pytest.fixture
def repository() -> InMemoryWorkItemRepository:
    return InMemoryWorkItemRepository()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def engine(repository, sink) -> LifecycleEngine:
    return LifecycleEngine(repository, sink, lock_timeout=1.0, retry_backoff=0)


@pytest.fixture
def staff() -> Actor:
    return Actor(id="staff-1", role=Role.STAFF, email="staff-1@example.com")


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin-1", role=Role.ADMIN, email="admin-1@example.com")


@pytest.fixture
def anchor() -> datetime:
    return datetime(2025, 1, 31, 9, 0, tzinfo=timezone.utc)
