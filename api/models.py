"""API request and response models."""

from datetime import datetime

from pydantic import BaseModel, Field

from scheduler.models import ReminderSource, TaskKind


class CreateTaskRequest(BaseModel):
    name: str = Field(min_length=1)
    cron_expression: str
    description: str = ""
    kind: TaskKind = TaskKind.MESSAGE
    retry_interval_hours: float | None = Field(default=None, gt=0)
    max_retry_duration_hours: float | None = Field(default=None, gt=0)


class TaskResponse(BaseModel):
    task_id: str
    tenant_id: str
    name: str
    kind: TaskKind
    cron_expression: str
    description: str
    enabled: bool
    created_at: datetime
    last_run: datetime | None = None
    next_run: datetime | None = None
    execution_count: int
    failure_count: int


class CreateReminderRequest(BaseModel):
    text: str = Field(min_length=1)
    remind_at: datetime
    source: ReminderSource = ReminderSource.MANUAL
    created_by: str = "api"


class ReminderResponse(BaseModel):
    reminder_id: str
    tenant_id: str
    text: str
    remind_at: datetime
    source: ReminderSource
    sent: bool
    sent_at: datetime | None = None


class RetryResponse(BaseModel):
    period: str
    attempt_count: int
    max_attempts: int
    first_attempt: datetime
    last_attempt: datetime
    next_attempt: datetime | None = None
    succeeded: bool
    exhausted: bool
