"""Tenant-scoped registry of scheduled tasks."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from scheduler import cron
from scheduler.errors import DuplicateTaskName, InvalidCronExpression
from scheduler.models import ScheduledTask, TaskKind, as_utc, utcnow

if TYPE_CHECKING:
    from scheduler.interfaces import TaskStore

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Holds every tenant's tasks in memory and writes through to a TaskStore.

    Lookups are always keyed by tenant first, so a task id belonging to
    another tenant behaves exactly like a missing one.  Callers receive
    copies; state changes go through the registry methods.
    """

    def __init__(self, store: TaskStore | None = None):
        self.store = store
        self._tasks: dict[str, dict[str, ScheduledTask]] = {}
        # ids of stored tasks whose expression no longer evaluates
        self._unrunnable: set[str] = set()

    async def load(self) -> int:
        if not self.store:
            return 0
        tasks = await self.store.list_all()
        for task in tasks:
            if not cron.is_valid(task.cron_expression, task.anchor):
                self._mark_unrunnable(task)
            self._tasks.setdefault(task.tenant_id, {})[task.task_id] = task
        logger.info("Loaded scheduled tasks", extra={"count": len(tasks)})
        return len(tasks)

    # ── Tenant operations ────────────────────────────────────────────────────

    async def create(
        self,
        tenant_id: str,
        name: str,
        cron_expression: str,
        description: str = "",
        kind: TaskKind = TaskKind.MESSAGE,
        retry_interval: timedelta = timedelta(hours=1),
        max_retry_duration: timedelta = timedelta(hours=48),
        now: datetime | None = None,
    ) -> ScheduledTask:
        """Create a task.  Raises InvalidCronExpression or DuplicateTaskName."""
        now = as_utc(now or utcnow())
        expression = cron.validate(cron_expression, now)
        per_tenant = self._tasks.setdefault(tenant_id, {})
        if any(t.name == name for t in per_tenant.values()):
            raise DuplicateTaskName(tenant_id, name)

        task = ScheduledTask(
            tenant_id=tenant_id,
            name=name,
            kind=kind,
            cron_expression=expression,
            description=description,
            created_at=now,
            next_run=cron.next_run(expression, now),
            retry_interval=retry_interval,
            max_retry_duration=max_retry_duration,
        )
        await self._save(task)
        per_tenant[task.task_id] = task
        logger.info(
            "Task scheduled",
            extra={"tenant_id": tenant_id, "task": name, "task_id": task.task_id,
                   "cron": expression},
        )
        return task.model_copy()

    def list(self, tenant_id: str) -> list[ScheduledTask]:
        tasks = self._tasks.get(tenant_id, {}).values()
        return [t.model_copy() for t in sorted(tasks, key=lambda t: (t.created_at, t.name))]

    def get(self, tenant_id: str, task_id: str) -> ScheduledTask | None:
        task = self._tasks.get(tenant_id, {}).get(task_id)
        return task.model_copy() if task else None

    def count(self, tenant_id: str) -> int:
        return len(self._tasks.get(tenant_id, {}))

    def tenants(self) -> list[str]:
        return sorted(t for t, tasks in self._tasks.items() if tasks)

    async def cancel(self, tenant_id: str, task_id: str) -> bool:
        per_tenant = self._tasks.get(tenant_id, {})
        if task_id not in per_tenant:
            logger.warning("Task not found", extra={"tenant_id": tenant_id, "task_id": task_id})
            return False
        if self.store:
            await self.store.delete(tenant_id, task_id)
        task = per_tenant.pop(task_id)
        self._unrunnable.discard(task_id)
        logger.info("Task cancelled", extra={"tenant_id": tenant_id, "task": task.name,
                                             "task_id": task_id})
        return True

    async def set_enabled(
        self, tenant_id: str, task_id: str, enabled: bool, now: datetime | None = None
    ) -> bool:
        task = self._tasks.get(tenant_id, {}).get(task_id)
        if task is None:
            logger.warning("Task not found", extra={"tenant_id": tenant_id, "task_id": task_id})
            return False
        task.enabled = enabled
        task.updated_at = as_utc(now or utcnow())
        await self._save(task)
        logger.info("Task enabled flag set", extra={"tenant_id": tenant_id, "task": task.name,
                                                    "enabled": enabled})
        return True

    async def remove_tenant(self, tenant_id: str) -> int:
        removed = 0
        for task_id in list(self._tasks.get(tenant_id, {})):
            removed += await self.cancel(tenant_id, task_id)
        self._tasks.pop(tenant_id, None)
        return removed

    # ── Loop support ─────────────────────────────────────────────────────────

    def due_tasks(self, now: datetime) -> list[ScheduledTask]:
        """Enabled tasks whose cron instant has arrived, in a stable order."""
        due = [
            task.model_copy()
            for tenant_id in sorted(self._tasks)
            for task in sorted(self._tasks[tenant_id].values(), key=lambda t: t.task_id)
            if task.task_id not in self._unrunnable and cron.should_run(task, now)
        ]
        return due

    async def record_run(
        self,
        tenant_id: str,
        task_id: str,
        ran_at: datetime,
        succeeded: bool | None,
    ) -> ScheduledTask | None:
        """Commit a finished (or skipped, ``succeeded=None``) run.

        Returns None when the task was cancelled while it was running.
        """
        task = self._tasks.get(tenant_id, {}).get(task_id)
        if task is None:
            return None
        ran_at = as_utc(ran_at)
        task.last_run = ran_at
        task.updated_at = ran_at
        try:
            task.next_run = cron.next_run(task.cron_expression, ran_at)
        except InvalidCronExpression:
            self._mark_unrunnable(task)
        if succeeded is True:
            task.execution_count += 1
        elif succeeded is False:
            task.failure_count += 1
        await self._save(task)
        return task.model_copy()

    def _mark_unrunnable(self, task: ScheduledTask) -> None:
        """Logged once; the task is skipped by due_tasks from then on."""
        task.next_run = None
        self._unrunnable.add(task.task_id)
        logger.error(
            "Invalid cron expression on stored task, it will not run",
            extra={"tenant_id": task.tenant_id, "task": task.name, "task_id": task.task_id,
                   "cron": task.cron_expression},
        )

    async def _save(self, task: ScheduledTask) -> None:
        if self.store:
            await self.store.save(task)
