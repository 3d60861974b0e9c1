"""Next-occurrence computation for recurrence rules.

`next_date` never raises for malformed rule parameters. Each variant has a
fallback that still yields a date strictly after the base date, so callers
always get either a valid next date or ``None`` for single-shot rules.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Mapping

from taskminder.models import (
    Custom,
    CustomWeekly,
    Daily,
    Monthly,
    MonthlyLastDay,
    NoRepeat,
    RecurrenceRule,
)

MONTHLY_DAY_CAP = 28
WEEKDAY_SEARCH_DAYS = 14

_ONE_DAY = timedelta(days=1)


def next_date(rule: RecurrenceRule, base_date: date) -> date | None:
    """Return the occurrence following ``base_date`` for ``rule``."""

    if isinstance(rule, NoRepeat):
        return None
    if isinstance(rule, Daily):
        return base_date + _ONE_DAY
    if isinstance(rule, CustomWeekly):
        return _next_weekday(base_date, rule.weekdays)
    if isinstance(rule, Monthly):
        year, month = shift_month(base_date.year, base_date.month, 1)
        return date(year, month, clamp_monthly_day(rule.day, base_date))
    if isinstance(rule, MonthlyLastDay):
        year, month = shift_month(base_date.year, base_date.month, 1)
        return last_day_of_month(year, month)
    if isinstance(rule, Custom):
        if rule.interval_days <= 0:
            return base_date + _ONE_DAY
        return base_date + timedelta(days=rule.interval_days)
    raise TypeError(f"Unsupported recurrence rule: {rule!r}")


def clamp_monthly_day(day: int | None, base_date: date) -> int:
    """Target day of month, defaulting to the base day and capped at 28."""

    target = base_date.day if day is None else day
    return max(1, min(target, MONTHLY_DAY_CAP))


def last_day_of_month(year: int, month: int) -> date:
    """Day 0 of the following month, i.e. the day before its first."""

    next_year, next_month = shift_month(year, month, 1)
    return date(next_year, next_month, 1) - _ONE_DAY


def _next_weekday(base_date: date, weekdays: frozenset[int]) -> date:
    candidate = base_date + _ONE_DAY
    for _ in range(WEEKDAY_SEARCH_DAYS):
        if candidate.isoweekday() in weekdays:
            return candidate
        candidate += _ONE_DAY
    return base_date + _ONE_DAY


def shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    years, month_index = divmod(month - 1 + months, 12)
    return year + years, month_index + 1


def rule_to_record(rule: RecurrenceRule) -> dict[str, Any]:
    """Flatten a rule into the stored record fields."""

    record: dict[str, Any] = {
        "repeat_type": rule.repeat_type,
        "repeat_interval": None,
        "selected_weekdays": None,
        "monthly_day": None,
    }
    if isinstance(rule, CustomWeekly):
        record["selected_weekdays"] = sorted(rule.weekdays)
    elif isinstance(rule, Monthly):
        record["monthly_day"] = rule.day
    elif isinstance(rule, Custom):
        record["repeat_interval"] = rule.interval_days
    return record


def rule_from_record(record: Mapping[str, Any]) -> RecurrenceRule:
    """Build a rule from stored record fields.

    Parameters that do not belong to the record's variant are ignored and an
    unknown ``repeat_type`` is read as a single-shot rule.
    """

    repeat_type = record.get("repeat_type") or "none"
    if repeat_type == "daily":
        return Daily()
    if repeat_type == "customWeekly":
        return CustomWeekly(frozenset(int(day) for day in record.get("selected_weekdays") or ()))
    if repeat_type == "monthly":
        day = record.get("monthly_day")
        return Monthly(None if day is None else int(day))
    if repeat_type == "monthlyLastDay":
        return MonthlyLastDay()
    if repeat_type == "custom":
        interval = record.get("repeat_interval")
        return Custom(0 if interval is None else int(interval))
    return NoRepeat()
