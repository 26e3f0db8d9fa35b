"""Shared fakes and fixtures for scheduler tests."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from scheduler.errors import DeliveryFailed
from scheduler.interfaces import FetchResult
from store.reminder_store import SqliteReminderStore

T0 = datetime(2025, 10, 1, 12, 0, tzinfo=timezone.utc)   # Wednesday, ISO week 40


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return value

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSink:
    """NotificationSink that records deliveries; tenants in ``failing`` raise."""

    def __init__(self):
        self.messages: list[tuple[str, str]] = []
        self.failing: set[str] = set()
        self.gate: asyncio.Event | None = None

    async def deliver(self, tenant_id: str, message: str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if tenant_id in self.failing:
            raise DeliveryFailed(f"sink down for {tenant_id}")
        self.messages.append((tenant_id, message))

    def texts(self, tenant_id: str | None = None) -> list[str]:
        return [m for t, m in self.messages if tenant_id is None or t == tenant_id]


class ScriptedFetcher:
    """ContentFetcher returning ``content`` (None = not published yet)."""

    def __init__(self):
        self.content: str | None = None
        self.error: Exception | None = None
        self.calls: list[tuple[str, str]] = []

    async def fetch(self, tenant_id: str, period: str) -> FetchResult:
        self.calls.append((tenant_id, period))
        if self.error is not None:
            raise self.error
        if self.content is None:
            return FetchResult.empty()
        return FetchResult(found=True, content=self.content)


class RecordingAudit:
    def __init__(self):
        self.events = []

    async def record(self, event) -> None:
        self.events.append(event)

    def types(self, tenant_id: str | None = None) -> list[str]:
        return [e.event_type.value for e in self.events
                if tenant_id is None or e.tenant_id == tenant_id]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def fetcher():
    return ScriptedFetcher()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
async def reminder_store(tmp_path):
    store = SqliteReminderStore(f"sqlite+aiosqlite:///{tmp_path}/reminders.db")
    await store.init()
    yield store
    await store.close()
