"""Scheduler data models."""

import uuid
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TaskKind(str, Enum):
    CONTENT_CHECK = "content_check"    # fetch period content, retry until found
    REMINDER_CHECK = "reminder_check"  # deliver the tenant's due reminders
    MESSAGE = "message"                # deliver the task description


class ScheduledTask(BaseModel):
    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    name: str
    kind: TaskKind = TaskKind.MESSAGE
    cron_expression: str
    description: str = ""
    enabled: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None
    last_run: datetime | None = None
    next_run: datetime | None = None
    retry_interval: timedelta = timedelta(hours=1)
    max_retry_duration: timedelta = timedelta(hours=48)
    execution_count: int = 0
    failure_count: int = 0

    @field_validator("created_at", "updated_at", "last_run", "next_run")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @property
    def anchor(self) -> datetime:
        """Instant the next cron occurrence is computed from."""
        return self.last_run or self.created_at


class Period(BaseModel):
    """A content-delivery window: one ISO week of one ISO year."""

    year: int
    week: int = Field(ge=1, le=53)

    @property
    def key(self) -> str:
        return f"{self.year}-W{self.week:02d}"

    @classmethod
    def for_instant(cls, now: datetime) -> "Period":
        # On Sundays the coming week's content is the one being awaited.
        day: date = as_utc(now).date()
        if day.isoweekday() == 7:
            day = day + timedelta(days=7)
        iso = day.isocalendar()
        return cls(year=iso[0], week=iso[1])

    def __str__(self) -> str:
        return self.key


class RetryState(BaseModel):
    tenant_id: str
    period: str
    attempt_count: int = 0
    max_attempts: int
    retry_interval: timedelta = timedelta(hours=1)
    max_retry_duration: timedelta = timedelta(hours=48)
    first_attempt: datetime
    last_attempt: datetime
    next_attempt: datetime | None = None
    succeeded: bool = False
    exhausted: bool = False
    # the final failure notice reached the tenant
    notified: bool = False

    @property
    def terminal(self) -> bool:
        return self.succeeded or self.exhausted


class ReminderSource(str, Enum):
    MANUAL = "manual"
    AUTO_EXTRACTED = "auto_extracted"


class Reminder(BaseModel):
    reminder_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    text: str
    remind_at: datetime
    source: ReminderSource = ReminderSource.MANUAL
    created_by: str = "bot"
    created_at: datetime = Field(default_factory=utcnow)
    sent: bool = False
    sent_at: datetime | None = None

    @field_validator("remind_at", "created_at", "sent_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class AuditEventType(str, Enum):
    TASK_CREATED = "task_created"
    TASK_CANCELLED = "task_cancelled"
    TASK_ENABLED = "task_enabled"
    TASK_DISABLED = "task_disabled"
    RATE_LIMITED = "rate_limited"
    RETRY_STARTED = "retry_started"
    RETRY_EXHAUSTED = "retry_exhausted"
    CONTENT_DELIVERED = "content_delivered"
    REMINDER_DELIVERED = "reminder_delivered"


class AuditEvent(BaseModel):
    event_type: AuditEventType
    tenant_id: str
    occurred_at: datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = {}
