"""Cron evaluation on top of croniter.

Only the standard 5-field form (minute, hour, day-of-month, month,
day-of-week) is accepted.  Day-of-month and day-of-week follow the usual
cron OR rule when both are restricted.
"""

from __future__ import annotations

from datetime import datetime

from croniter import croniter  # type: ignore[import-untyped]

from scheduler.errors import InvalidCronExpression
from scheduler.models import ScheduledTask, as_utc

CRON_FIELDS = 5
# Expressions that cannot fire within this many years (Feb 30, ...) are invalid.
SEARCH_HORIZON_YEARS = 4


def next_run(expression: str, after: datetime) -> datetime:
    """Return the earliest instant strictly after *after* matching *expression*.

    Raises InvalidCronExpression when the expression does not parse or never
    matches within the search horizon.
    """
    fields = expression.split() if isinstance(expression, str) else []
    if len(fields) != CRON_FIELDS:
        raise InvalidCronExpression(
            str(expression), f"expected {CRON_FIELDS} fields, got {len(fields)}"
        )
    normalized = " ".join(fields)
    try:
        it = croniter(
            normalized,
            as_utc(after),
            max_years_between_matches=SEARCH_HORIZON_YEARS,
        )
        result = it.get_next(datetime)
    except (ValueError, KeyError) as e:
        raise InvalidCronExpression(normalized, str(e)) from e
    return as_utc(result)


def validate(expression: str, now: datetime) -> str:
    """Return the normalized expression, or raise InvalidCronExpression."""
    next_run(expression, now)
    return " ".join(expression.split())


def is_valid(expression: str, now: datetime) -> bool:
    try:
        next_run(expression, now)
    except InvalidCronExpression:
        return False
    return True


def should_run(task: ScheduledTask, now: datetime) -> bool:
    """True when *task* is enabled and its next cron instant has arrived.

    The instant is computed from ``last_run`` (or ``created_at``), so once a
    run is committed the same instant never fires again.
    """
    if not task.enabled:
        return False
    try:
        due = next_run(task.cron_expression, task.anchor)
    except InvalidCronExpression:
        return False
    return as_utc(now) >= due
