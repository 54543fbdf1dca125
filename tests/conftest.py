"""
Shared fixtures for the BudgetFlow test suite.

Everything runs against the in-memory backend with a controllable clock
and a dispatcher that records what it was asked to send.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from budgetflow.config import NotificationSettings
from budgetflow.models.workspace import Category, Report, Role, UserPrincipal
from budgetflow.orchestrator import BudgetEngine, create_engine_components
from budgetflow.services.notifications import NotificationDispatcher
from budgetflow.services.storage import InMemoryAuditStorage, InMemoryEngineStorage


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingDispatcher(NotificationDispatcher):
    """Keeps every delivered notification; optionally fails the first N calls."""

    def __init__(self, failures: int = 0):
        self.sent: list[tuple[str, list[UUID], object]] = []
        self.calls = 0
        self._failures = failures

    async def notify(self, user_ids, payload, event_key):
        self.calls += 1
        if self.calls <= self._failures:
            raise ConnectionError("push service unavailable")
        self.sent.append((event_key, list(user_ids), payload))

    def events(self, event_key: str) -> list[tuple[str, list[UUID], object]]:
        return [s for s in self.sent if s[0] == event_key]


@dataclass
class SeededWorkspace:
    """
    Alice owns the report. Bob reviews the whole tree, Carol submits
    into Travel, Dave has no access at all.
    """
    alice: UUID
    bob: UUID
    carol: UUID
    dave: UUID
    report: Report
    root: Category
    travel: Category

    def user(self, user_id: UUID) -> UserPrincipal:
        return UserPrincipal(user_id=user_id)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def make_dispatcher():
    """Factory for dispatchers that fail a given number of times first."""
    return RecordingDispatcher


@pytest.fixture
def notification_settings() -> NotificationSettings:
    return NotificationSettings(
        enabled=True,
        retry_attempts=3,
        retry_min_wait_seconds=0,
        retry_max_wait_seconds=0,
    )


@pytest.fixture
def storage() -> InMemoryEngineStorage:
    return InMemoryEngineStorage()


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def engine(storage, audit_storage, dispatcher, clock, notification_settings) -> BudgetEngine:
    return create_engine_components(
        storage=storage,
        audit_storage=audit_storage,
        dispatcher=dispatcher,
        clock=clock,
        notification_settings=notification_settings,
    )


@pytest.fixture
async def workspace(engine: BudgetEngine, dispatcher: RecordingDispatcher) -> SeededWorkspace:
    alice, bob, carol, dave = uuid4(), uuid4(), uuid4(), uuid4()

    report, root = await engine.create_report(alice, "Team Offsite")
    travel = await engine.create_category(alice, root.id, "Travel")
    await engine.grant_permission(alice, root.id, bob, Role.REVIEWER)
    await engine.grant_permission(alice, travel.id, carol, Role.SUBMITTER)

    # Drop the sharing notifications so tests start from a clean slate.
    await engine.notifications.drain()
    dispatcher.sent.clear()
    dispatcher.calls = 0

    return SeededWorkspace(
        alice=alice,
        bob=bob,
        carol=carol,
        dave=dave,
        report=report,
        root=root,
        travel=travel,
    )
