"""Tests for cron evaluation and the should_run predicate."""

from datetime import datetime, timedelta, timezone

import pytest
from croniter import croniter

from scheduler import cron
from scheduler.errors import InvalidCronExpression
from scheduler.models import ScheduledTask
from scheduler.registry import TaskRegistry


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# ── next_run ──────────────────────────────────────────────────────────────────

def test_next_run_is_strictly_after():
    assert cron.next_run("*/5 * * * *", utc(2025, 1, 1, 12, 5)) == utc(2025, 1, 1, 12, 10)


def test_next_run_from_mid_minute():
    assert cron.next_run("*/5 * * * *", utc(2025, 1, 1, 12, 4, 59)) == utc(2025, 1, 1, 12, 5)


def test_next_run_returns_utc():
    result = cron.next_run("0 9 * * *", utc(2025, 3, 1, 10, 0))
    assert result.tzinfo is not None
    assert result.utcoffset() == timedelta(0)
    assert result == utc(2025, 3, 2, 9, 0)


def test_next_run_treats_naive_as_utc():
    assert cron.next_run("30 8 * * *", datetime(2025, 3, 1, 8, 0)) == utc(2025, 3, 1, 8, 30)


def test_next_run_lists_ranges_and_steps():
    # weekdays 9-17 on the quarter hour
    after = utc(2025, 6, 6, 17, 50)   # Friday
    assert cron.next_run("0,15,30,45 9-17 * * 1-5", after) == utc(2025, 6, 9, 9, 0)


def test_day_of_month_or_day_of_week():
    # both restricted: either one matching is enough
    assert cron.next_run("0 0 13 * 5", utc(2025, 6, 1)) == utc(2025, 6, 6)


@pytest.mark.parametrize("expression", [
    "*/7 * * * *",
    "30 */2 * * *",
    "15,45 9-17 * * 1-5",
    "0-10/3 6 * * *",
])
@pytest.mark.parametrize("after", [
    utc(2025, 1, 1, 0, 0),
    utc(2025, 2, 28, 23, 59, 30),
    utc(2024, 12, 31, 17, 46),
])
def test_next_run_is_minimal(expression, after):
    result = cron.next_run(expression, after)
    assert result > after
    assert croniter.match(expression, result)
    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    while candidate < result:
        assert not croniter.match(expression, candidate), candidate
        candidate += timedelta(minutes=1)


@pytest.mark.parametrize("expression", [
    "",
    "* * * *",
    "* * * * * *",
    "61 * * * *",
    "* 24 * * *",
    "not a cron at all",
    "0 0 30 2 *",
])
def test_invalid_expressions_rejected(expression):
    with pytest.raises(InvalidCronExpression):
        cron.next_run(expression, utc(2025, 1, 1))


def test_invalid_expression_is_value_error():
    with pytest.raises(ValueError):
        cron.validate("99 * * * *", utc(2025, 1, 1))


def test_validate_normalizes_whitespace():
    assert cron.validate("  */5   *  * * * ", utc(2025, 1, 1)) == "*/5 * * * *"


def test_is_valid():
    assert cron.is_valid("0 12 * * 1", utc(2025, 1, 1))
    assert not cron.is_valid("0 12 * *", utc(2025, 1, 1))


# ── should_run ────────────────────────────────────────────────────────────────

def _task(**overrides) -> ScheduledTask:
    fields = {
        "tenant_id": "t1",
        "name": "every-five",
        "cron_expression": "*/5 * * * *",
        "created_at": utc(2025, 1, 1, 12, 0),
    }
    fields.update(overrides)
    return ScheduledTask(**fields)


def test_should_run_false_when_disabled():
    task = _task(enabled=False)
    assert not cron.should_run(task, utc(2030, 1, 1))


def test_should_run_false_for_unparseable_stored_expression():
    task = _task(cron_expression="every five minutes")
    assert not cron.should_run(task, utc(2030, 1, 1))


def test_should_run_anchors_on_last_run():
    task = _task(last_run=utc(2025, 1, 1, 12, 5))
    assert not cron.should_run(task, utc(2025, 1, 1, 12, 9, 59))
    assert cron.should_run(task, utc(2025, 1, 1, 12, 10))


async def test_scenario_every_five_minutes():
    registry = TaskRegistry()
    task = await registry.create("t1", "every-five", "*/5 * * * *", now=utc(2025, 1, 1, 12, 0))

    assert not cron.should_run(task, utc(2025, 1, 1, 12, 4, 59))
    assert cron.should_run(task, utc(2025, 1, 1, 12, 5, 0))

    ran = await registry.record_run("t1", task.task_id, utc(2025, 1, 1, 12, 5), succeeded=True)
    assert ran.next_run == utc(2025, 1, 1, 12, 10)
    # the same instant never fires twice
    assert not cron.should_run(ran, utc(2025, 1, 1, 12, 5, 30))
