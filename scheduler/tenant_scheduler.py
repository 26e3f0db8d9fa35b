"""APScheduler-driven multi-tenant task scheduler."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.logging_config import bind_run_context
from scheduler.dedup import DuplicateGuard
from scheduler.errors import FetchFailed, QuotaExceeded, SchedulerStartupError
from scheduler.models import (
    AuditEvent,
    AuditEventType,
    Period,
    Reminder,
    ReminderSource,
    RetryState,
    ScheduledTask,
    TaskKind,
    as_utc,
    utcnow,
)
from scheduler.rate_limiter import Denial, Gate, RateLimiter, RateLimits
from scheduler.registry import TaskRegistry
from scheduler.retry import RetryCoordinator, RetryOutcome

if TYPE_CHECKING:
    from core.config import Settings
    from scheduler.interfaces import (
        AuditSink,
        ContentFetcher,
        NotificationSink,
        ReminderStore,
        RetryStore,
        TaskStore,
    )

logger = logging.getLogger(__name__)


class ContentOutcome(str, Enum):
    DELIVERED = "delivered"
    DUPLICATE = "duplicate"              # same payload already delivered; period closed
    RETRY_SCHEDULED = "retry_scheduled"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"                  # terminal, backing off, or already being fetched


class TenantScheduler:
    """Owns every tenant's tasks, counters, retry states and reminders.

    Two APScheduler interval jobs drive it: the task tick scans for due
    tasks and due retries, the reminder tick delivers due reminders.  Each
    tick only dispatches; bodies run as asyncio tasks so a slow upstream
    never delays the next scan.  A (tenant, task name) pair has at most one
    body in flight.

    Lifecycle::

        scheduler = TenantScheduler.from_settings(settings)
        await scheduler.start()
        ...
        await scheduler.shutdown()
    """

    def __init__(
        self,
        fetcher: ContentFetcher,
        sink: NotificationSink,
        reminder_store: ReminderStore,
        task_store: TaskStore | None = None,
        retry_store: RetryStore | None = None,
        audit: AuditSink | None = None,
        limits: RateLimits | None = None,
        retry_interval: timedelta = timedelta(hours=1),
        max_retry_duration: timedelta = timedelta(hours=48),
        guard: DuplicateGuard | None = None,
        task_interval: float = 10.0,
        reminder_interval: float = 5.0,
        shutdown_grace: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.fetcher = fetcher
        self.sink = sink
        self.reminders = reminder_store
        self.audit = audit
        self.registry = TaskRegistry(task_store)
        self.limiter = RateLimiter(limits)
        self.retry = RetryCoordinator(retry_store, retry_interval, max_retry_duration)
        self.guard = guard or DuplicateGuard()
        self.task_interval = task_interval
        self.reminder_interval = reminder_interval
        self.shutdown_grace = shutdown_grace
        self._clock = clock
        self._aps = AsyncIOScheduler(timezone=timezone.utc)

        self._in_flight: set[tuple[str, str]] = set()
        self._fetching: set[tuple[str, str]] = set()
        self._reminder_locks: dict[str, asyncio.Lock] = {}
        self._running: set[asyncio.Task] = set()
        self._tenant_locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        fetcher: ContentFetcher | None = None,
        sink: NotificationSink | None = None,
        audit: AuditSink | None = None,
    ) -> TenantScheduler:
        """Wire SQLite stores and the configured HTTP (or log-only) collaborators."""
        from adapters.http import HttpContentFetcher, WebhookNotificationSink
        from adapters.log import LogNotificationSink, NullContentFetcher
        from store.reminder_store import SqliteReminderStore
        from store.retry_store import SqliteRetryStore
        from store.task_store import SqliteTaskStore

        if fetcher is None:
            fetcher = (
                HttpContentFetcher(settings.content_url_template)
                if settings.content_url_template else NullContentFetcher()
            )
        if sink is None:
            sink = (
                WebhookNotificationSink(settings.notify_webhook_url)
                if settings.notify_webhook_url else LogNotificationSink()
            )
        return cls(
            fetcher=fetcher,
            sink=sink,
            reminder_store=SqliteReminderStore(settings.db_url),
            task_store=SqliteTaskStore(settings.db_url),
            retry_store=SqliteRetryStore(settings.db_url),
            audit=audit,
            limits=settings.rate_limits.to_limits(),
            retry_interval=settings.retry.retry_interval,
            max_retry_duration=settings.retry.max_retry_duration,
            guard=DuplicateGuard(
                retention=timedelta(hours=settings.dedup.retention_hours),
                max_entries=settings.dedup.max_entries,
            ),
            task_interval=settings.loop.task_interval_seconds,
            reminder_interval=settings.loop.reminder_interval_seconds,
            shutdown_grace=settings.loop.shutdown_grace_seconds,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._aps.running

    async def start(self) -> None:
        """Load persisted state, deliver missed reminders, then start the timers."""
        try:
            for store in self._stores():
                await store.init()
            await self.registry.load()
            await self.retry.load()
        except Exception as e:
            raise SchedulerStartupError(f"Could not load scheduler state: {e}") from e

        for tenant_id in self.registry.tenants():
            self.limiter.set_scheduled_count(tenant_id, self.registry.count(tenant_id))

        await self.recover_missed_reminders()

        self._aps.add_job(
            self._on_task_tick,
            trigger=IntervalTrigger(seconds=self.task_interval),
            id="task-tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._aps.add_job(
            self._on_reminder_tick,
            trigger=IntervalTrigger(seconds=self.reminder_interval),
            id="reminder-tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._aps.start()
        logger.info(
            "TenantScheduler started",
            extra={"tenants": len(self.registry.tenants()),
                   "task_interval": self.task_interval,
                   "reminder_interval": self.reminder_interval},
        )

    async def shutdown(self, grace: float | None = None) -> None:
        """Stop the timers, give in-flight bodies ``grace`` seconds, then close the stores."""
        if self._aps.running:
            self._aps.shutdown(wait=False)
        grace = self.shutdown_grace if grace is None else grace
        pending = {t for t in self._running if not t.done()}
        if pending:
            _, pending = await asyncio.wait(pending, timeout=grace)
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if pending:
                logger.warning("Abandoned in-flight tasks", extra={"count": len(pending)})
        for store in self._stores():
            await store.close()
        logger.info("TenantScheduler stopped")

    async def _on_task_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            logger.exception("Task tick failed")

    async def _on_reminder_tick(self) -> None:
        try:
            await self.deliver_due_reminders()
        except Exception:
            logger.exception("Reminder tick failed")

    # ── Tick ─────────────────────────────────────────────────────────────────

    def tick(self, now: datetime | None = None) -> list[asyncio.Task]:
        """Dispatch every due task and every due retry.  Never awaits.

        Returns the spawned asyncio tasks so callers (tests) can await them.
        """
        now = as_utc(now or self._clock())
        spawned: list[asyncio.Task] = []

        for task in self.registry.due_tasks(now):
            key = (task.tenant_id, task.name)
            if key in self._in_flight:
                logger.debug("Task still running, skipping", extra={"tenant_id": task.tenant_id,
                                                                    "task": task.name})
                continue
            denial = self.limiter.execution_denial(task.tenant_id, task.name, now)
            if denial and denial.gate == Gate.TASK_COOLDOWN:
                # picked up again on the first tick after the cooldown
                logger.debug("Task cooling down", extra={"tenant_id": task.tenant_id,
                                                         "task": task.name,
                                                         "reason": denial.reason})
                continue
            self._in_flight.add(key)
            if denial:
                spawned.append(self._spawn(key, self._skip_run(task, denial, now)))
            else:
                spawned.append(self._spawn(key, self._execute(task, now)))

        for state in self.retry.due(now):
            key = (state.tenant_id, f"retry:{state.period}")
            if key in self._in_flight:
                continue
            self._in_flight.add(key)
            spawned.append(self._spawn(key, self._retry_fetch(state, now)))

        # final notices whose delivery failed on the exhausting attempt
        for state in self.retry.unnotified():
            key = (state.tenant_id, f"retry:{state.period}")
            if key in self._in_flight or (state.tenant_id, state.period) in self._fetching:
                continue
            self._in_flight.add(key)
            spawned.append(self._spawn(key, self._report_exhausted(state, now)))

        return spawned

    def _spawn(self, key: tuple[str, str], body: Awaitable[None]) -> asyncio.Task:
        async def guarded() -> None:
            try:
                await body
            finally:
                self._in_flight.discard(key)

        task = asyncio.create_task(guarded())
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return task

    async def _execute(self, task: ScheduledTask, now: datetime) -> None:
        run_id = bind_run_context(task.tenant_id)
        logger.info("Task started", extra={"task": task.name, "task_id": task.task_id,
                                           "kind": task.kind.value, "run_id": run_id})
        try:
            succeeded = await self._run_body(task, now)
        except asyncio.CancelledError:
            logger.warning("Task abandoned before completion", extra={"task": task.name})
            raise
        except Exception:
            logger.exception("Task failed", extra={"task": task.name, "task_id": task.task_id})
            succeeded = False

        await self.registry.record_run(task.tenant_id, task.task_id, now, succeeded)
        self.limiter.record_executed(task.tenant_id, task.name, now)
        logger.info("Task finished", extra={"task": task.name, "succeeded": succeeded})

    async def _run_body(self, task: ScheduledTask, now: datetime) -> bool:
        if task.kind == TaskKind.CONTENT_CHECK:
            outcome = await self.check_content(
                task.tenant_id,
                Period.for_instant(now).key,
                now,
                retry_interval=task.retry_interval,
                max_retry_duration=task.max_retry_duration,
            )
            return outcome not in (ContentOutcome.RETRY_SCHEDULED, ContentOutcome.EXHAUSTED)
        if task.kind == TaskKind.REMINDER_CHECK:
            await self.deliver_due_reminders(now, tenant_id=task.tenant_id)
            return True
        await self.sink.deliver(task.tenant_id, task.description or task.name)
        return True

    async def _skip_run(self, task: ScheduledTask, denial: Denial, now: datetime) -> None:
        """Hourly cap reached: this cron instant is dropped, not queued."""
        await self._audit(
            AuditEventType.RATE_LIMITED, task.tenant_id, now,
            task=task.name, gate=denial.gate.value, reason=denial.reason,
        )
        await self.registry.record_run(task.tenant_id, task.task_id, now, None)

    async def _retry_fetch(self, state: RetryState, now: datetime) -> None:
        bind_run_context(state.tenant_id)
        try:
            outcome = await self.check_content(state.tenant_id, state.period, now)
        except Exception:
            logger.exception("Retry attempt failed", extra={"period": state.period})
            return
        logger.info("Retry attempt finished", extra={"period": state.period,
                                                     "outcome": outcome.value})

    # ── Content checks ───────────────────────────────────────────────────────

    async def check_content(
        self,
        tenant_id: str,
        period: str,
        now: datetime | None = None,
        retry_interval: timedelta | None = None,
        max_retry_duration: timedelta | None = None,
    ) -> ContentOutcome:
        """Fetch the period's content and deliver it once.

        Not-found, fetch errors and delivery errors all count as a failed
        attempt for the (tenant, period) retry state.
        """
        now = as_utc(now or self._clock())
        if not self.retry.should_attempt(tenant_id, period, now):
            return ContentOutcome.SKIPPED
        key = (tenant_id, period)
        if key in self._fetching:
            return ContentOutcome.SKIPPED
        self._fetching.add(key)
        try:
            try:
                result = await self.fetcher.fetch(tenant_id, period)
            except FetchFailed as e:
                logger.warning("Content fetch failed", extra={"period": period, "error": str(e)})
                return await self._attempt_failed(
                    tenant_id, period, now, retry_interval, max_retry_duration)
            except Exception:
                logger.exception("Content fetcher raised", extra={"period": period})
                return await self._attempt_failed(
                    tenant_id, period, now, retry_interval, max_retry_duration)

            if not result.found or not result.content:
                logger.info("Content not available yet", extra={"period": period})
                return await self._attempt_failed(
                    tenant_id, period, now, retry_interval, max_retry_duration)

            digest = self.guard.hash(result.content)
            if self.guard.is_duplicate(tenant_id, digest, now):
                logger.info("Content already delivered", extra={"period": period})
                await self.retry.mark_success(tenant_id, period, now)
                return ContentOutcome.DUPLICATE

            try:
                await self.sink.deliver(tenant_id, result.content)
            except Exception as e:
                logger.warning("Content delivery failed", extra={"period": period, "error": str(e)})
                return await self._attempt_failed(
                    tenant_id, period, now, retry_interval, max_retry_duration)

            self.guard.record(tenant_id, digest, now)
            await self.retry.mark_success(tenant_id, period, now)
            await self._audit(AuditEventType.CONTENT_DELIVERED, tenant_id, now,
                              period=period, digest=digest[:12])
            return ContentOutcome.DELIVERED
        finally:
            self._fetching.discard(key)

    async def _attempt_failed(
        self,
        tenant_id: str,
        period: str,
        now: datetime,
        retry_interval: timedelta | None,
        max_retry_duration: timedelta | None,
    ) -> ContentOutcome:
        decision = await self.retry.increment_attempt(
            tenant_id, period, now,
            retry_interval=retry_interval, max_retry_duration=max_retry_duration,
        )
        state = decision.state
        if decision.outcome == RetryOutcome.TERMINAL:
            return ContentOutcome.SKIPPED
        if decision.exhausted:
            await self._audit(AuditEventType.RETRY_EXHAUSTED, tenant_id, now,
                              period=period, attempts=state.attempt_count)
            await self._report_exhausted(state, now)
            return ContentOutcome.EXHAUSTED
        if decision.first_attempt:
            await self._audit(AuditEventType.RETRY_STARTED, tenant_id, now,
                              period=period, next_attempt=state.next_attempt.isoformat())
            hours = state.retry_interval.total_seconds() / 3600
            await self._notify_once(
                tenant_id,
                f"Content for {period} is not available yet. "
                f"Checking again every {hours:g} hour(s).",
                now,
            )
        return ContentOutcome.RETRY_SCHEDULED

    async def _report_exhausted(self, state: RetryState, now: datetime) -> None:
        """Send the final failure notice; it stays pending until delivered."""
        message = (f"Content for {state.period} is still unavailable after "
                   f"{state.attempt_count} attempts. Giving up.")
        if await self._notify_once(state.tenant_id, message, now):
            await self.retry.mark_notified(state.tenant_id, state.period)

    async def _notify_once(self, tenant_id: str, message: str, now: datetime) -> bool:
        """False when the sink failed; a duplicate counts as delivered."""
        digest = self.guard.hash(message)
        if self.guard.is_duplicate(tenant_id, digest, now):
            return True
        try:
            await self.sink.deliver(tenant_id, message)
        except Exception:
            logger.exception("Notice delivery failed", extra={"tenant_id": tenant_id})
            return False
        self.guard.record(tenant_id, digest, now)
        return True

    # ── Reminders ────────────────────────────────────────────────────────────

    async def deliver_due_reminders(
        self, now: datetime | None = None, tenant_id: str | None = None
    ) -> list[Reminder]:
        """Deliver pending reminders whose time has passed.  Returns those sent."""
        now = as_utc(now or self._clock())
        return await self._deliver_pending(now, tenant_id, prefix="Reminder")

    async def recover_missed_reminders(self, now: datetime | None = None) -> list[Reminder]:
        """Startup sweep: reminders that fell due while the process was down."""
        now = as_utc(now or self._clock())
        sent = await self._deliver_pending(now, None, prefix="Missed reminder")
        if sent:
            logger.info("Recovered missed reminders", extra={"count": len(sent)})
        return sent

    async def _deliver_pending(
        self, now: datetime, tenant_id: str | None, prefix: str
    ) -> list[Reminder]:
        if tenant_id is not None:
            tenants = [tenant_id]
        else:
            tenants = sorted({r.tenant_id for r in await self.reminders.list_due(now)})

        results = await asyncio.gather(
            *(self._deliver_for_tenant(t, now, prefix) for t in tenants),
            return_exceptions=True,
        )
        delivered: list[Reminder] = []
        for tenant, result in zip(tenants, results):
            if isinstance(result, BaseException):
                logger.error("Reminder pass failed", exc_info=result,
                             extra={"tenant_id": tenant})
                continue
            delivered.extend(result)
        return delivered

    async def _deliver_for_tenant(self, tenant_id: str, now: datetime, prefix: str) -> list[Reminder]:
        # due list is re-read under the lock so concurrent passes never both send
        async with self._reminder_locks.setdefault(tenant_id, asyncio.Lock()):
            due = await self.reminders.list_due(now, tenant_id)
            sent: list[Reminder] = []
            for reminder in due:
                message = f"{prefix} ({reminder.remind_at:%Y-%m-%d %H:%M} UTC): {reminder.text}"
                try:
                    await self.sink.deliver(tenant_id, message)
                except Exception as e:
                    logger.warning(
                        "Reminder delivery failed, will retry",
                        extra={"tenant_id": tenant_id, "reminder_id": reminder.reminder_id,
                               "error": str(e)},
                    )
                    continue
                await self.reminders.mark_sent(reminder.reminder_id, now)
                reminder.sent = True
                reminder.sent_at = now
                sent.append(reminder)
                await self._audit(AuditEventType.REMINDER_DELIVERED, tenant_id, now,
                                  reminder_id=reminder.reminder_id,
                                  source=reminder.source.value)
        return sent

    # ── Tenant operations ────────────────────────────────────────────────────

    async def create_task(
        self,
        tenant_id: str,
        name: str,
        cron_expression: str,
        description: str = "",
        kind: TaskKind = TaskKind.MESSAGE,
        retry_interval: timedelta | None = None,
        max_retry_duration: timedelta | None = None,
    ) -> ScheduledTask:
        """Raises QuotaExceeded, InvalidCronExpression or DuplicateTaskName."""
        now = as_utc(self._clock())
        async with self._lock(tenant_id):
            denial = self.limiter.schedule_denial(tenant_id, now)
            if denial:
                await self._reject(tenant_id, denial, now, operation="create")
            task = await self.registry.create(
                tenant_id,
                name,
                cron_expression,
                description=description,
                kind=kind,
                retry_interval=retry_interval or self.retry.retry_interval,
                max_retry_duration=max_retry_duration or self.retry.max_retry_duration,
                now=now,
            )
            self.limiter.record_scheduled(tenant_id, now)
        await self._audit(AuditEventType.TASK_CREATED, tenant_id, now,
                          task_id=task.task_id, task=task.name, cron=task.cron_expression)
        return task

    def list_tasks(self, tenant_id: str) -> list[ScheduledTask]:
        return self.registry.list(tenant_id)

    def get_task(self, tenant_id: str, task_id: str) -> ScheduledTask | None:
        return self.registry.get(tenant_id, task_id)

    async def cancel_task(self, tenant_id: str, task_id: str) -> bool:
        """False when the task does not exist for this tenant."""
        now = as_utc(self._clock())
        async with self._lock(tenant_id):
            task = self.registry.get(tenant_id, task_id)
            if task is None:
                return False
            denial = self.limiter.operation_denial(tenant_id, now)
            if denial:
                await self._reject(tenant_id, denial, now, operation="cancel")
            removed = await self.registry.cancel(tenant_id, task_id)
            if removed:
                self.limiter.record_cancelled(tenant_id, now)
        if removed:
            await self._audit(AuditEventType.TASK_CANCELLED, tenant_id, now,
                              task_id=task_id, task=task.name)
        return removed

    async def set_task_enabled(self, tenant_id: str, task_id: str, enabled: bool) -> bool:
        now = as_utc(self._clock())
        async with self._lock(tenant_id):
            if self.registry.get(tenant_id, task_id) is None:
                return False
            denial = self.limiter.operation_denial(tenant_id, now)
            if denial:
                await self._reject(tenant_id, denial, now,
                                   operation="enable" if enabled else "disable")
            changed = await self.registry.set_enabled(tenant_id, task_id, enabled, now)
            if changed:
                self.limiter.record_operation(tenant_id, now)
        if changed:
            event = AuditEventType.TASK_ENABLED if enabled else AuditEventType.TASK_DISABLED
            await self._audit(event, tenant_id, now, task_id=task_id)
        return changed

    async def add_reminder(
        self,
        tenant_id: str,
        text: str,
        remind_at: datetime,
        source: ReminderSource = ReminderSource.MANUAL,
        created_by: str = "bot",
    ) -> Reminder:
        reminder = Reminder(
            tenant_id=tenant_id,
            text=text,
            remind_at=remind_at,
            source=source,
            created_by=created_by,
            created_at=self._clock(),
        )
        await self.reminders.save(reminder)
        logger.info("Reminder added", extra={"tenant_id": tenant_id,
                                             "reminder_id": reminder.reminder_id,
                                             "remind_at": reminder.remind_at.isoformat()})
        return reminder

    async def list_reminders(self, tenant_id: str, include_sent: bool = False) -> list[Reminder]:
        return await self.reminders.list_for_tenant(tenant_id, include_sent=include_sent)

    async def delete_reminder(self, tenant_id: str, reminder_id: str) -> bool:
        return await self.reminders.delete(tenant_id, reminder_id)

    def list_retries(self, tenant_id: str) -> list[RetryState]:
        return self.retry.list(tenant_id)

    async def reset_retry(self, tenant_id: str, period: str) -> bool:
        return await self.retry.reset(tenant_id, period)

    async def remove_tenant(self, tenant_id: str) -> int:
        """Tenant teardown: drop tasks, reminders, retry states and counters."""
        async with self._lock(tenant_id):
            removed = await self.registry.remove_tenant(tenant_id)
            await self.retry.forget_tenant(tenant_id)
            for reminder in await self.reminders.list_for_tenant(tenant_id, include_sent=True):
                await self.reminders.delete(tenant_id, reminder.reminder_id)
            self.limiter.forget(tenant_id)
            self.guard.forget(tenant_id)
        self._tenant_locks.pop(tenant_id, None)
        logger.info("Tenant removed", extra={"tenant_id": tenant_id, "tasks": removed})
        return removed

    # ── Internal ─────────────────────────────────────────────────────────────

    def _stores(self) -> list:
        return [s for s in (self.registry.store, self.reminders, self.retry.store) if s is not None]

    def _lock(self, tenant_id: str) -> asyncio.Lock:
        return self._tenant_locks.setdefault(tenant_id, asyncio.Lock())

    async def _reject(self, tenant_id: str, denial: Denial, now: datetime, operation: str) -> None:
        await self._audit(AuditEventType.RATE_LIMITED, tenant_id, now,
                          operation=operation, gate=denial.gate.value, reason=denial.reason)
        raise QuotaExceeded(tenant_id, denial.gate.value, denial.reason)

    async def _audit(
        self, event_type: AuditEventType, tenant_id: str, now: datetime, **details
    ) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.record(
                AuditEvent(event_type=event_type, tenant_id=tenant_id,
                           occurred_at=now, details=details)
            )
        except Exception:
            logger.exception("Audit sink failed", extra={"event": event_type.value})
