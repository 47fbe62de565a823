"""Cron expressions and next run times for update schedules."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from depbot.errors import ConfigurationError
from depbot.errors_catalog import actionable_error
from depbot.models import ScheduleConfig

DEFAULT_TIME = "02:00"
DEFAULT_TIMEZONE = "Etc/UTC"
DAYS = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
DAY_ABBREVIATIONS = {name[:3]: value for name, value in DAYS.items()}
MONTH_ABBREVIATIONS = {
    name: index
    for index, name in enumerate(
        ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"), start=1
    )
}
# (minimum, maximum) for minute, hour, day of month, month, day of week
FIELD_RANGES = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 7))
SEARCH_DAYS = 366 * 5


def _invalid(detail: str) -> ConfigurationError:
    return ConfigurationError(actionable_error("config_invalid", detail=detail))


def _parse_time(value: Optional[str]) -> Tuple[int, int]:
    text = (value or DEFAULT_TIME).strip()
    hour, _, minute = text.partition(":")
    try:
        hour_value, minute_value = int(hour), int(minute or 0)
    except ValueError as exc:
        raise _invalid(f"invalid schedule time '{text}'") from exc
    if not (0 <= hour_value <= 23 and 0 <= minute_value <= 59):
        raise _invalid(f"invalid schedule time '{text}'")
    return hour_value, minute_value


def generate_cron(schedule: ScheduleConfig) -> str:
    """Cron expression (minute hour day-of-month month day-of-week) for a schedule."""
    if schedule.interval == "cron":
        if not schedule.cronjob:
            raise _invalid("cron schedules require 'cronjob'")
        return schedule.cronjob.strip()

    hour, minute = _parse_time(schedule.time)
    if schedule.interval == "daily":
        return f"{minute} {hour} * * 1-5"
    if schedule.interval == "weekly":
        day = (schedule.day or "monday").strip().lower()
        if day not in DAYS:
            raise _invalid(f"invalid schedule day '{schedule.day}'")
        return f"{minute} {hour} * * {DAYS[day]}"
    if schedule.interval == "monthly":
        return f"{minute} {hour} 1 * *"
    if schedule.interval == "quarterly":
        return f"{minute} {hour} 1 1,4,7,10 *"
    if schedule.interval == "semiannually":
        return f"{minute} {hour} 1 1,7 *"
    if schedule.interval == "yearly":
        return f"{minute} {hour} 1 1 *"
    raise _invalid(f"unsupported schedule interval '{schedule.interval}'")


def schedule_timezone(schedule: ScheduleConfig) -> ZoneInfo:
    name = schedule.timezone or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise _invalid(f"unknown schedule timezone '{name}'") from exc


def _field_value(token: str, index: int) -> int:
    token = token.lower()
    if index == 4 and token in DAY_ABBREVIATIONS:
        return DAY_ABBREVIATIONS[token]
    if index == 3 and token in MONTH_ABBREVIATIONS:
        return MONTH_ABBREVIATIONS[token]
    return int(token)


def _parse_field(text: str, index: int) -> Set[int]:
    low, high = FIELD_RANGES[index]
    values: Set[int] = set()
    for part in text.split(","):
        base, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"invalid step in '{part}'")
        if base == "*":
            start, end = low, high
        elif "-" in base:
            first, _, last = base.partition("-")
            start, end = _field_value(first, index), _field_value(last, index)
        else:
            start = _field_value(base, index)
            end = high if step_text else start
        if start < low or end > high or start > end:
            raise ValueError(f"value out of range in '{part}'")
        values.update(range(start, end + 1, step))
    if index == 4 and 7 in values:
        values.discard(7)
        values.add(0)
    return values


def parse_cron(expression: str) -> List[Set[int]]:
    fields = expression.split()
    if len(fields) != 5:
        raise _invalid(f"cron expression '{expression}' must have 5 fields")
    try:
        return [_parse_field(field, index) for index, field in enumerate(fields)]
    except ValueError as exc:
        raise _invalid(f"invalid cron expression '{expression}': {exc}") from exc


def next_run(schedule: ScheduleConfig, after: Optional[datetime] = None) -> datetime:
    """Next firing time strictly after `after`, in the schedule's timezone."""
    expression = generate_cron(schedule)
    minutes, hours, days, months, weekdays = parse_cron(expression)
    fields = expression.split()
    day_restricted, weekday_restricted = fields[2] != "*", fields[4] != "*"

    zone = schedule_timezone(schedule)
    start = (after or datetime.now(timezone.utc)).astimezone(zone)
    start = start.replace(second=0, microsecond=0) + timedelta(minutes=1)

    current_day = start.date()
    for _ in range(SEARCH_DAYS):
        weekday = (current_day.weekday() + 1) % 7
        day_match = current_day.day in days
        weekday_match = weekday in weekdays
        if day_restricted and weekday_restricted:
            matches = day_match or weekday_match
        else:
            matches = day_match and weekday_match
        if current_day.month in months and matches:
            for hour in sorted(hours):
                for minute in sorted(minutes):
                    candidate = datetime(
                        current_day.year, current_day.month, current_day.day, hour, minute, tzinfo=zone
                    )
                    if candidate >= start:
                        return candidate
        current_day += timedelta(days=1)

    raise _invalid(f"cron expression '{expression}' never fires")
