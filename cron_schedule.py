"""Five-field cron expressions and named schedule presets."""

from __future__ import annotations

from datetime import datetime, timedelta

from croniter import CroniterBadDateError, CroniterError, croniter


SCHEDULE_PRESETS = {
    "every-minute": "* * * * *",
    "every-5-minutes": "*/5 * * * *",
    "every-15-minutes": "*/15 * * * *",
    "every-hour": "0 * * * *",
    "daily": "0 0 * * *",
    "daily-8am": "0 8 * * *",
    "weekly": "0 0 * * 0",
    "weekly-sunday-3am": "0 3 * * 0",
    "weekly-sunday-4am": "0 4 * * 0",
}

MAX_LOOKAHEAD_YEARS = 2
MAX_LOOKAHEAD_DAYS = 366 * MAX_LOOKAHEAD_YEARS


class CronError(ValueError):
    pass


def parse_cron(expression: str) -> str:
    """Return the expression with normalized whitespace, or raise CronError.

    Only plain five-field expressions are accepted; croniter's seconds field and
    ``@daily`` style keywords are rejected so presets stay the one alias form.
    """
    if not isinstance(expression, str):
        raise CronError("cron expression must be a string")
    parts = expression.split()
    if len(parts) != 5:
        raise CronError("cron expression must have exactly 5 fields")
    normalized = " ".join(parts)
    try:
        croniter(normalized)
    except CroniterError as exc:
        raise CronError(f"invalid cron expression {normalized!r}: {exc}") from exc
    return normalized


def resolve_schedule(schedule: str) -> str:
    """Map a preset name to its cron expression; anything else is returned as given."""
    if not isinstance(schedule, str):
        return schedule
    return SCHEDULE_PRESETS.get(schedule.strip(), schedule)


def validate_schedule(schedule: str) -> str | None:
    try:
        parse_cron(resolve_schedule(schedule))
    except CronError as exc:
        return str(exc)
    return None


def next_fire(schedule: str, after: datetime) -> datetime | None:
    """First matching minute strictly after ``after``, or None within two years.

    Day-of-month and day-of-week must both match when both are restricted.
    """
    expression = parse_cron(resolve_schedule(schedule))
    limit = after + timedelta(days=MAX_LOOKAHEAD_DAYS)
    try:
        fire = croniter(expression, after, day_or=False, max_years_between_matches=MAX_LOOKAHEAD_YEARS).get_next(datetime)
    except CroniterBadDateError:
        return None
    return fire if fire <= limit else None
