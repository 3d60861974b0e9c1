"""Projection of a template's recurrence rule onto a window of dates."""

from __future__ import annotations

from datetime import date, timedelta
from typing import Iterable

from taskminder.models import (
    Custom,
    CustomWeekly,
    Monthly,
    MonthlyLastDay,
    NoRepeat,
    RecurrenceRule,
    ScheduleTemplate,
)
from taskminder.recurrence import clamp_monthly_day, last_day_of_month, next_date, shift_month

MAX_PROJECTED_DATES = 365


def default_window_end(today: date) -> date:
    """Last day of the month after ``today``'s month."""

    year, month = shift_month(today.year, today.month, 1)
    return last_day_of_month(year, month)


def project_instances(
    template: ScheduleTemplate,
    today: date,
    existing_dates: Iterable[date] = (),
    window_end: date | None = None,
) -> list[date]:
    """Dates for which an instance of ``template`` should exist.

    The result is strictly ascending and holds at most 365 dates. Single-shot
    and completion-gated templates yield ``[today]`` until an instance exists
    on or after the template's effective start date, then nothing.
    """

    if not template.is_active:
        return []

    if isinstance(template.rule, NoRepeat) or template.is_gated:
        start = template.effective_start_date
        if any(existing >= start for existing in existing_dates):
            return []
        return [today]

    end = default_window_end(today) if window_end is None else window_end
    return _project_rule(template.rule, first_occurrence(template.rule, today), end)


def first_occurrence(rule: RecurrenceRule, today: date) -> date:
    """First date on or after ``today`` matching ``rule``."""

    if isinstance(rule, CustomWeekly):
        if today.isoweekday() in rule.weekdays:
            return today
        return next_date(rule, today - timedelta(days=1)) or today
    if isinstance(rule, Monthly):
        day = clamp_monthly_day(rule.day, today)
        if day >= today.day:
            return today.replace(day=day)
        year, month = shift_month(today.year, today.month, 1)
        return date(year, month, day)
    if isinstance(rule, MonthlyLastDay):
        month_end = last_day_of_month(today.year, today.month)
        if month_end >= today:
            return month_end
        year, month = shift_month(today.year, today.month, 1)
        return last_day_of_month(year, month)
    # Daily, Custom and anything single-shot start today.
    return today


def _project_rule(rule: RecurrenceRule, start: date, window_end: date) -> list[date]:
    dates: list[date] = []
    current: date | None = start
    while current is not None and current <= window_end:
        if dates and current <= dates[-1]:
            break
        dates.append(current)
        if len(dates) >= MAX_PROJECTED_DATES:
            break
        current = next_date(rule, current)
    return dates


def missing_dates(projected: Iterable[date], existing: Iterable[date]) -> list[date]:
    """Projected dates that have no instance yet, in projected order."""

    present = set(existing)
    return [day for day in projected if day not in present]


def next_gated_date(template: ScheduleTemplate, completed_on: date) -> date | None:
    """Follow-up date for a completion-gated template.

    ``completed_on`` is the scheduled date of the instance just completed.
    """

    if not template.is_gated:
        return None
    return next_date(template.rule, completed_on)


def month_bounds(today: date, months_ahead: int) -> tuple[date, date]:
    """First and last day of the month ``months_ahead`` after ``today``'s."""

    year, month = shift_month(today.year, today.month, months_ahead)
    return date(year, month, 1), last_day_of_month(year, month)


def series_start(template: ScheduleTemplate) -> date:
    """Date the template's series is anchored to."""

    return template.start_date or template.created_at.date()


def projection_start(template: ScheduleTemplate, today: date) -> date:
    """Date a generation run should project from.

    A start date in the future wins over ``today``. Ungated ``Custom`` series
    keep their cadence by stepping from the series start to the first
    occurrence on or after ``today``.
    """

    start = series_start(template)
    if start >= today:
        return start
    rule = template.rule
    if isinstance(rule, Custom) and rule.interval_days > 0 and not template.requires_completion:
        steps = -(-(today - start).days // rule.interval_days)
        return start + timedelta(days=steps * rule.interval_days)
    return today


def anchor_rule(rule: RecurrenceRule, start: date) -> RecurrenceRule:
    """Pin a ``Monthly`` rule without a day to the start date's day."""

    if isinstance(rule, Monthly) and rule.day is None:
        return Monthly(clamp_monthly_day(None, start))
    return rule
