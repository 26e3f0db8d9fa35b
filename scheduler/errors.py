"""Scheduler error taxonomy."""

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_CRON_EXPRESSION = "invalid_cron_expression"  # rejected at creation, never retried
    QUOTA_EXCEEDED = "quota_exceeded"                    # caller may retry later
    TASK_NOT_FOUND = "task_not_found"                    # benign no-op
    FETCH_FAILED = "fetch_failed"                        # routed to RetryCoordinator
    FETCH_EMPTY = "fetch_empty"                          # routed to RetryCoordinator
    RETRY_EXHAUSTED = "retry_exhausted"                  # terminal, always surfaced
    DELIVERY_FAILED = "delivery_failed"                  # recovered by re-polling


class SchedulerError(Exception):
    kind: ErrorKind | None = None


class InvalidCronExpression(SchedulerError, ValueError):
    kind = ErrorKind.INVALID_CRON_EXPRESSION

    def __init__(self, expression: str, reason: str = ""):
        self.expression = expression
        self.reason = reason
        msg = f"Invalid cron expression: {expression!r}"
        super().__init__(f"{msg} ({reason})" if reason else msg)


class QuotaExceeded(SchedulerError):
    """A per-tenant rate-limit gate rejected the operation."""

    kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(self, tenant_id: str, gate: str, detail: str = ""):
        self.tenant_id = tenant_id
        self.gate = gate
        super().__init__(detail or f"Quota '{gate}' exceeded for tenant '{tenant_id}'")


class DuplicateTaskName(SchedulerError, ValueError):
    def __init__(self, tenant_id: str, name: str):
        self.tenant_id = tenant_id
        self.name = name
        super().__init__(f"Task '{name}' already exists for tenant '{tenant_id}'")


class FetchFailed(SchedulerError):
    kind = ErrorKind.FETCH_FAILED


class DeliveryFailed(SchedulerError):
    kind = ErrorKind.DELIVERY_FAILED


class SchedulerStartupError(SchedulerError):
    """Persistence could not be loaded; the process cannot run."""
