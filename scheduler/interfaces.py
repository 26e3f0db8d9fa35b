"""Collaborator interfaces consumed by the tenant scheduler."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from pydantic import BaseModel

from scheduler.models import AuditEvent, Reminder, RetryState, ScheduledTask


class FetchResult(BaseModel):
    """Outcome of a content fetch.  ``found=False`` means "not yet available"."""

    found: bool
    content: str | None = None

    @classmethod
    def empty(cls) -> "FetchResult":
        return cls(found=False)


class ContentFetcher(Protocol):
    async def fetch(self, tenant_id: str, period: str) -> FetchResult:
        """Raise FetchFailed on transport errors; return found=False when empty."""
        ...


class NotificationSink(Protocol):
    async def deliver(self, tenant_id: str, message: str) -> None:
        """Raise DeliveryFailed when the message could not be sent."""
        ...


class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None: ...


class TaskStore(Protocol):
    async def init(self) -> None: ...
    async def close(self) -> None: ...
    async def save(self, task: ScheduledTask) -> None: ...
    async def delete(self, tenant_id: str, task_id: str) -> None: ...
    async def list_all(self) -> list[ScheduledTask]: ...


class ReminderStore(Protocol):
    async def init(self) -> None: ...
    async def close(self) -> None: ...
    async def save(self, reminder: Reminder) -> None: ...
    async def delete(self, tenant_id: str, reminder_id: str) -> bool: ...
    async def list_for_tenant(self, tenant_id: str, include_sent: bool = False) -> list[Reminder]: ...
    async def list_due(self, now: datetime, tenant_id: str | None = None) -> list[Reminder]: ...
    async def mark_sent(self, reminder_id: str, sent_at: datetime) -> None: ...


class RetryStore(Protocol):
    async def init(self) -> None: ...
    async def close(self) -> None: ...
    async def save(self, state: RetryState) -> None: ...
    async def delete(self, tenant_id: str, period: str) -> None: ...
    async def list_all(self) -> list[RetryState]: ...
