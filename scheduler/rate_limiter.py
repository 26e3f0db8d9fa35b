"""Per-tenant sliding-window rate limiting for scheduling and execution."""

from __future__ import annotations

import bisect
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from scheduler.models import as_utc, utcnow

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)
HOUR = timedelta(hours=1)


class Gate(str, Enum):
    TASK_COUNT = "task_count"
    DAILY_OPERATIONS = "daily_operations"
    HOURLY_EXECUTIONS = "hourly_executions"
    TASK_COOLDOWN = "task_cooldown"


@dataclass(frozen=True)
class Denial:
    gate: Gate
    reason: str


@dataclass
class RateLimits:
    max_tasks_per_tenant: int = 10
    max_operations_per_day: int = 20
    max_executions_per_hour: int = 60
    task_cooldown: timedelta = timedelta(minutes=1)


@dataclass
class RateCounters:
    """Mutable counters for one tenant.  Guarded by its own lock."""

    scheduled_tasks: int = 0
    operations: deque[datetime] = field(default_factory=deque)
    executions: deque[datetime] = field(default_factory=deque)
    last_execution: dict[str, datetime] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def prune(self, now: datetime, cooldown: timedelta) -> None:
        _evict(self.operations, now - DAY)
        _evict(self.executions, now - HOUR)
        for name in [n for n, ts in self.last_execution.items() if ts <= now - cooldown]:
            del self.last_execution[name]


def _evict(log: deque[datetime], cutoff: datetime) -> None:
    while log and log[0] <= cutoff:
        log.popleft()


class RateLimiter:
    """Four independent per-tenant gates.

    1. active task ceiling (``max_tasks_per_tenant``)
    2. create/cancel/enable/disable operations per rolling 24 h
    3. task executions per rolling hour
    4. cooldown between two executions of the same task name

    ``can_*`` methods only query; ``record_*`` methods mutate and are called
    right after the gated action succeeded.
    """

    def __init__(self, limits: RateLimits | None = None):
        self.limits = limits or RateLimits()
        self._counters: dict[str, RateCounters] = {}

    # ── Queries ──────────────────────────────────────────────────────────────

    def can_schedule(self, tenant_id: str, now: datetime | None = None) -> bool:
        return self._allowed(self.schedule_denial(tenant_id, now), tenant_id)

    def can_operate(self, tenant_id: str, now: datetime | None = None) -> bool:
        return self._allowed(self.operation_denial(tenant_id, now), tenant_id)

    def can_execute(self, tenant_id: str, task_name: str, now: datetime | None = None) -> bool:
        return self._allowed(self.execution_denial(tenant_id, task_name, now), tenant_id, task_name)

    def operation_denial(self, tenant_id: str, now: datetime | None = None) -> Denial | None:
        """Return why the daily operation gate is closed, or None."""
        now = as_utc(now or utcnow())
        c = self._state(tenant_id)
        with c.lock:
            c.prune(now, self.limits.task_cooldown)
            ops = len(c.operations)
        if ops >= self.limits.max_operations_per_day:
            return Denial(
                Gate.DAILY_OPERATIONS,
                f"daily operations limit reached ({ops}/{self.limits.max_operations_per_day})",
            )
        return None

    def schedule_denial(self, tenant_id: str, now: datetime | None = None) -> Denial | None:
        denial = self.operation_denial(tenant_id, now)
        if denial:
            return denial
        count = self.scheduled_count(tenant_id)
        if count >= self.limits.max_tasks_per_tenant:
            return Denial(
                Gate.TASK_COUNT,
                f"task limit reached ({count}/{self.limits.max_tasks_per_tenant})",
            )
        return None

    def execution_denial(
        self, tenant_id: str, task_name: str, now: datetime | None = None
    ) -> Denial | None:
        now = as_utc(now or utcnow())
        c = self._state(tenant_id)
        with c.lock:
            c.prune(now, self.limits.task_cooldown)
            hourly = len(c.executions)
            last = c.last_execution.get(task_name)
        if hourly >= self.limits.max_executions_per_hour:
            return Denial(
                Gate.HOURLY_EXECUTIONS,
                f"hourly execution limit reached ({hourly}/{self.limits.max_executions_per_hour})",
            )
        if last is not None:
            elapsed = (now - last).total_seconds()
            return Denial(Gate.TASK_COOLDOWN, f"task executed {elapsed:.0f}s ago")
        return None

    def scheduled_count(self, tenant_id: str) -> int:
        c = self._counters.get(tenant_id)
        return c.scheduled_tasks if c else 0

    def execution_count(
        self, tenant_id: str, window: timedelta = HOUR, now: datetime | None = None
    ) -> int:
        now = as_utc(now or utcnow())
        c = self._counters.get(tenant_id)
        if c is None:
            return 0
        with c.lock:
            c.prune(now, self.limits.task_cooldown)
            return sum(1 for ts in c.executions if ts > now - window)

    # ── Mutators ─────────────────────────────────────────────────────────────

    def record_scheduled(self, tenant_id: str, now: datetime | None = None) -> None:
        now = as_utc(now or utcnow())
        c = self._state(tenant_id)
        with c.lock:
            c.operations.append(now)
            c.scheduled_tasks += 1
        logger.debug("Recorded task scheduled", extra={"tenant_id": tenant_id,
                                                       "scheduled_tasks": c.scheduled_tasks})

    def record_cancelled(self, tenant_id: str, now: datetime | None = None) -> None:
        now = as_utc(now or utcnow())
        c = self._state(tenant_id)
        with c.lock:
            c.operations.append(now)
            c.scheduled_tasks = max(0, c.scheduled_tasks - 1)

    def record_operation(self, tenant_id: str, now: datetime | None = None) -> None:
        now = as_utc(now or utcnow())
        c = self._state(tenant_id)
        with c.lock:
            c.operations.append(now)

    def record_executed(
        self, tenant_id: str, task_name: str, now: datetime | None = None
    ) -> None:
        now = as_utc(now or utcnow())
        c = self._state(tenant_id)
        with c.lock:
            # bodies can finish out of dispatch order; keep the window sorted
            bisect.insort(c.executions, now)
            c.last_execution[task_name] = now
        logger.debug("Recorded task executed", extra={"tenant_id": tenant_id, "task": task_name})

    def set_scheduled_count(self, tenant_id: str, count: int) -> None:
        """Restore the active task count after loading tasks from storage."""
        c = self._state(tenant_id)
        with c.lock:
            c.scheduled_tasks = count

    def forget(self, tenant_id: str) -> None:
        self._counters.pop(tenant_id, None)

    # ── Internal ─────────────────────────────────────────────────────────────

    def _allowed(self, denial: Denial | None, tenant_id: str, task_name: str | None = None) -> bool:
        if denial is None:
            return True
        logger.warning(
            "Rate limit gate closed",
            extra={"tenant_id": tenant_id, "task": task_name, "gate": denial.gate.value,
                   "reason": denial.reason},
        )
        return False

    def _state(self, tenant_id: str) -> RateCounters:
        # dict.setdefault is atomic; each tenant then locks only its own counters
        return self._counters.setdefault(tenant_id, RateCounters())
