"""Bounded retry tracking per (tenant, period)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from scheduler.models import RetryState, as_utc, utcnow

if TYPE_CHECKING:
    from scheduler.interfaces import RetryStore

logger = logging.getLogger(__name__)


class RetryOutcome(str, Enum):
    SCHEDULED = "scheduled"    # another attempt is planned at next_attempt
    EXHAUSTED = "exhausted"    # this call hit the ceiling; report the final failure
    TERMINAL = "terminal"      # already succeeded or exhausted earlier; nothing to do


@dataclass
class RetryDecision:
    outcome: RetryOutcome
    state: RetryState
    first_attempt: bool = False

    @property
    def exhausted(self) -> bool:
        return self.outcome == RetryOutcome.EXHAUSTED


def max_attempts_for(retry_interval: timedelta, max_retry_duration: timedelta) -> int:
    return max(1, int(max_retry_duration / retry_interval))


class RetryCoordinator:
    """Counts failed fetch attempts and decides when to give up.

    A state is created on the first failure.  Each further failure bumps the
    count and schedules the next attempt ``retry_interval`` later, until
    ``max_retry_duration`` has elapsed since the first failure (or the attempt
    ceiling derived from the two durations is reached), at which point the
    state becomes exhausted.  Success and exhaustion are terminal until
    ``reset`` is called.

    The durations are fixed on the state when it is created, so per-task
    overrides keep applying to the retry pass.
    """

    def __init__(
        self,
        store: RetryStore | None = None,
        retry_interval: timedelta = timedelta(hours=1),
        max_retry_duration: timedelta = timedelta(hours=48),
    ):
        if retry_interval <= timedelta(0):
            raise ValueError("retry_interval must be positive")
        self.store = store
        self.retry_interval = retry_interval
        self.max_retry_duration = max_retry_duration
        self._states: dict[str, dict[str, RetryState]] = {}

    async def load(self) -> int:
        """Restore persisted states.  Returns how many were loaded."""
        if not self.store:
            return 0
        states = await self.store.list_all()
        for state in states:
            self._states.setdefault(state.tenant_id, {})[state.period] = state
        return len(states)

    # ── Queries ──────────────────────────────────────────────────────────────

    @property
    def max_attempts(self) -> int:
        return max_attempts_for(self.retry_interval, self.max_retry_duration)

    def get(self, tenant_id: str, period: str) -> RetryState | None:
        return self._states.get(tenant_id, {}).get(period)

    def list(self, tenant_id: str) -> list[RetryState]:
        return sorted(self._states.get(tenant_id, {}).values(), key=lambda s: s.period)

    def is_terminal(self, tenant_id: str, period: str) -> bool:
        state = self.get(tenant_id, period)
        return state is not None and state.terminal

    def should_attempt(self, tenant_id: str, period: str, now: datetime | None = None) -> bool:
        """False while waiting for next_attempt, and forever once terminal."""
        state = self.get(tenant_id, period)
        if state is None:
            return True
        if state.terminal:
            return False
        now = as_utc(now or utcnow())
        return state.next_attempt is None or now >= state.next_attempt

    def due(self, now: datetime | None = None) -> list[RetryState]:
        """Non-terminal states whose next attempt has arrived, oldest first."""
        now = as_utc(now or utcnow())
        pending = [
            s
            for per_tenant in list(self._states.values())
            for s in list(per_tenant.values())
            if not s.terminal and s.next_attempt is not None and s.next_attempt <= now
        ]
        return sorted(pending, key=lambda s: (s.next_attempt, s.tenant_id, s.period))

    def unnotified(self) -> list[RetryState]:
        """Exhausted states whose final notice has not been delivered yet."""
        return [
            s
            for per_tenant in list(self._states.values())
            for s in list(per_tenant.values())
            if s.exhausted and not s.notified
        ]

    # ── Mutators ─────────────────────────────────────────────────────────────

    async def increment_attempt(
        self,
        tenant_id: str,
        period: str,
        now: datetime | None = None,
        retry_interval: timedelta | None = None,
        max_retry_duration: timedelta | None = None,
    ) -> RetryDecision:
        """Record one failed attempt.  The durations only apply to a new state."""
        now = as_utc(now or utcnow())
        per_tenant = self._states.setdefault(tenant_id, {})
        state = per_tenant.get(period)

        if state is None:
            interval = retry_interval or self.retry_interval
            ceiling = max_retry_duration or self.max_retry_duration
            state = RetryState(
                tenant_id=tenant_id,
                period=period,
                attempt_count=1,
                max_attempts=max_attempts_for(interval, ceiling),
                retry_interval=interval,
                max_retry_duration=ceiling,
                first_attempt=now,
                last_attempt=now,
                next_attempt=now + interval,
            )
            per_tenant[period] = state
            await self._save(state)
            logger.info(
                "First retry attempt recorded",
                extra={"tenant_id": tenant_id, "period": period,
                       "next_attempt": state.next_attempt.isoformat()},
            )
            return RetryDecision(RetryOutcome.SCHEDULED, state, first_attempt=True)

        if state.terminal:
            return RetryDecision(RetryOutcome.TERMINAL, state)

        state.last_attempt = now
        elapsed = now - state.first_attempt
        if elapsed >= state.max_retry_duration or state.attempt_count >= state.max_attempts:
            state.exhausted = True
            state.next_attempt = None
            await self._save(state)
            logger.warning(
                "Retries exhausted",
                extra={"tenant_id": tenant_id, "period": period,
                       "attempts": state.attempt_count,
                       "elapsed_hours": round(elapsed.total_seconds() / 3600, 2)},
            )
            return RetryDecision(RetryOutcome.EXHAUSTED, state)

        state.attempt_count += 1
        state.next_attempt = now + state.retry_interval
        await self._save(state)
        logger.info(
            "Retry attempt incremented",
            extra={"tenant_id": tenant_id, "period": period, "attempts": state.attempt_count},
        )
        return RetryDecision(RetryOutcome.SCHEDULED, state)

    async def mark_success(
        self, tenant_id: str, period: str, now: datetime | None = None
    ) -> RetryState:
        """Record that content for the period was obtained."""
        now = as_utc(now or utcnow())
        per_tenant = self._states.setdefault(tenant_id, {})
        state = per_tenant.get(period)
        if state is None:
            state = RetryState(
                tenant_id=tenant_id,
                period=period,
                max_attempts=self.max_attempts,
                retry_interval=self.retry_interval,
                max_retry_duration=self.max_retry_duration,
                first_attempt=now,
                last_attempt=now,
            )
            per_tenant[period] = state
        state.succeeded = True
        state.next_attempt = None
        state.last_attempt = now
        await self._save(state)
        logger.info("Retry tracking closed", extra={"tenant_id": tenant_id, "period": period})
        return state

    async def mark_notified(self, tenant_id: str, period: str) -> None:
        state = self.get(tenant_id, period)
        if state is None or state.notified:
            return
        state.notified = True
        await self._save(state)

    async def reset(self, tenant_id: str, period: str) -> bool:
        state = self._states.get(tenant_id, {}).pop(period, None)
        if state is None:
            return False
        if self.store:
            await self.store.delete(tenant_id, period)
        logger.info("Retry state reset", extra={"tenant_id": tenant_id, "period": period})
        return True

    async def forget_tenant(self, tenant_id: str) -> None:
        for period in list(self._states.get(tenant_id, {})):
            await self.reset(tenant_id, period)
        self._states.pop(tenant_id, None)

    async def _save(self, state: RetryState) -> None:
        if self.store:
            await self.store.save(state)
