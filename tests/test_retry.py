"""Tests for the bounded retry coordinator."""

from datetime import datetime, timedelta, timezone

import pytest

from scheduler.retry import RetryCoordinator, RetryOutcome
from store.retry_store import SqliteRetryStore

T0 = datetime(2025, 10, 1, 8, 0, tzinfo=timezone.utc)
PERIOD = "2025-W40"


@pytest.fixture
def coordinator():
    return RetryCoordinator()


@pytest.fixture
async def store(tmp_path):
    s = SqliteRetryStore(f"sqlite+aiosqlite:///{tmp_path}/retries.db")
    await s.init()
    yield s
    await s.close()


def test_default_max_attempts(coordinator):
    assert coordinator.max_attempts == 48


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        RetryCoordinator(retry_interval=timedelta(0))


async def test_first_failure_creates_state(coordinator):
    decision = await coordinator.increment_attempt("X", PERIOD, T0)
    assert decision.outcome == RetryOutcome.SCHEDULED
    assert decision.first_attempt
    assert decision.state.attempt_count == 1
    assert decision.state.next_attempt == T0 + timedelta(hours=1)


async def test_hourly_failures_exhaust_after_48_hours(coordinator):
    for hour in range(48):
        decision = await coordinator.increment_attempt("X", PERIOD, T0 + timedelta(hours=hour))
        assert decision.outcome == RetryOutcome.SCHEDULED
        assert decision.state.attempt_count == hour + 1

    final = await coordinator.increment_attempt("X", PERIOD, T0 + timedelta(hours=48))
    assert final.exhausted
    assert final.state.attempt_count == 48
    assert final.state.attempt_count <= final.state.max_attempts
    assert final.state.next_attempt is None

    # nothing further is scheduled
    assert not coordinator.should_attempt("X", PERIOD, T0 + timedelta(hours=49))
    assert coordinator.due(T0 + timedelta(hours=100)) == []
    again = await coordinator.increment_attempt("X", PERIOD, T0 + timedelta(hours=49))
    assert again.outcome == RetryOutcome.TERMINAL
    assert again.state.attempt_count == 48


async def test_exhausted_by_elapsed_time_regardless_of_count(coordinator):
    await coordinator.increment_attempt("X", PERIOD, T0)
    decision = await coordinator.increment_attempt("X", PERIOD, T0 + timedelta(hours=50))
    assert decision.exhausted
    assert decision.state.attempt_count == 1


async def test_rapid_failures_never_exceed_max_attempts():
    coordinator = RetryCoordinator(retry_interval=timedelta(hours=1),
                                   max_retry_duration=timedelta(hours=3))
    outcomes = []
    for minute in range(10):
        d = await coordinator.increment_attempt("X", PERIOD, T0 + timedelta(minutes=minute))
        outcomes.append(d.outcome)
        assert d.state.attempt_count <= 3
    assert RetryOutcome.EXHAUSTED in outcomes


async def test_state_keeps_its_own_durations(coordinator):
    await coordinator.increment_attempt(
        "X", PERIOD, T0,
        retry_interval=timedelta(hours=2), max_retry_duration=timedelta(hours=4),
    )
    state = coordinator.get("X", PERIOD)
    assert state.max_attempts == 2
    assert state.next_attempt == T0 + timedelta(hours=2)

    second = await coordinator.increment_attempt("X", PERIOD, T0 + timedelta(hours=2))
    assert second.outcome == RetryOutcome.SCHEDULED
    assert second.state.next_attempt == T0 + timedelta(hours=4)

    third = await coordinator.increment_attempt("X", PERIOD, T0 + timedelta(hours=4))
    assert third.exhausted


async def test_should_attempt_waits_for_next_attempt(coordinator):
    assert coordinator.should_attempt("X", PERIOD, T0)
    await coordinator.increment_attempt("X", PERIOD, T0)
    assert not coordinator.should_attempt("X", PERIOD, T0 + timedelta(minutes=59))
    assert coordinator.should_attempt("X", PERIOD, T0 + timedelta(hours=1))


async def test_due_lists_oldest_first(coordinator):
    await coordinator.increment_attempt("B", PERIOD, T0 + timedelta(minutes=10))
    await coordinator.increment_attempt("A", PERIOD, T0)
    due = coordinator.due(T0 + timedelta(hours=2))
    assert [s.tenant_id for s in due] == ["A", "B"]
    assert coordinator.due(T0 + timedelta(minutes=30)) == []


async def test_success_is_terminal_until_reset(coordinator):
    await coordinator.increment_attempt("X", PERIOD, T0)
    await coordinator.mark_success("X", PERIOD, T0 + timedelta(hours=1))
    assert coordinator.is_terminal("X", PERIOD)
    assert not coordinator.should_attempt("X", PERIOD, T0 + timedelta(hours=5))

    decision = await coordinator.increment_attempt("X", PERIOD, T0 + timedelta(hours=2))
    assert decision.outcome == RetryOutcome.TERMINAL

    assert await coordinator.reset("X", PERIOD)
    assert coordinator.get("X", PERIOD) is None
    fresh = await coordinator.increment_attempt("X", PERIOD, T0 + timedelta(hours=3))
    assert fresh.first_attempt


async def test_reset_unknown_period(coordinator):
    assert not await coordinator.reset("X", "1999-W01")


async def test_periods_and_tenants_are_independent(coordinator):
    await coordinator.increment_attempt("X", PERIOD, T0)
    await coordinator.mark_success("Y", PERIOD, T0)
    other = await coordinator.increment_attempt("X", "2025-W41", T0)
    assert other.first_attempt
    assert not coordinator.is_terminal("X", PERIOD)
    assert [s.period for s in coordinator.list("X")] == ["2025-W40", "2025-W41"]


async def test_states_survive_restart(store):
    first = RetryCoordinator(store=store)
    await first.increment_attempt("X", PERIOD, T0)
    await first.increment_attempt("X", PERIOD, T0 + timedelta(hours=1))
    await first.mark_success("Y", PERIOD, T0)

    second = RetryCoordinator(store=store)
    assert await second.load() == 2
    restored = second.get("X", PERIOD)
    assert restored.attempt_count == 2
    assert restored.next_attempt == T0 + timedelta(hours=2)
    assert restored.retry_interval == timedelta(hours=1)
    assert second.is_terminal("Y", PERIOD)


async def test_reset_deletes_from_store(store):
    coordinator = RetryCoordinator(store=store)
    await coordinator.increment_attempt("X", PERIOD, T0)
    await coordinator.reset("X", PERIOD)
    assert await store.list_all() == []


async def test_unnotified_exhaustion_survives_restart(store):
    first = RetryCoordinator(store=store, max_retry_duration=timedelta(hours=1))
    await first.increment_attempt("X", PERIOD, T0)
    await first.increment_attempt("X", PERIOD, T0 + timedelta(hours=1))
    await first.increment_attempt("Y", PERIOD, T0)
    await first.increment_attempt("Y", PERIOD, T0 + timedelta(hours=1))
    await first.mark_notified("Y", PERIOD)

    second = RetryCoordinator(store=store)
    await second.load()
    assert [(s.tenant_id, s.period) for s in second.unnotified()] == [("X", PERIOD)]

    await second.mark_notified("X", PERIOD)
    assert second.unnotified() == []
