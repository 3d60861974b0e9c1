"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Union


@dataclass(frozen=True, slots=True)
class NoRepeat:
    """Single occurrence, no repetition."""

    repeat_type = "none"

    def problems(self) -> list[str]:
        return []


@dataclass(frozen=True, slots=True)
class Daily:
    """Every calendar day."""

    repeat_type = "daily"

    def problems(self) -> list[str]:
        return []


@dataclass(frozen=True, slots=True)
class CustomWeekly:
    """One or more ISO weekdays (1=Monday .. 7=Sunday)."""

    weekdays: frozenset[int]

    repeat_type = "customWeekly"

    def __post_init__(self) -> None:
        object.__setattr__(self, "weekdays", frozenset(self.weekdays))

    def problems(self) -> list[str]:
        issues: list[str] = []
        if not self.weekdays:
            issues.append("weekday set is empty")
        invalid = sorted(day for day in self.weekdays if not 1 <= day <= 7)
        if invalid:
            issues.append(f"weekdays out of range 1..7: {invalid}")
        return issues


@dataclass(frozen=True, slots=True)
class Monthly:
    """Fixed day of month; None means the base date's day."""

    day: int | None = None

    repeat_type = "monthly"

    def problems(self) -> list[str]:
        if self.day is not None and not 1 <= self.day <= 28:
            return [f"monthly day {self.day} is outside 1..28 and will be clamped"]
        return []


@dataclass(frozen=True, slots=True)
class MonthlyLastDay:
    """Last calendar day of every month."""

    repeat_type = "monthlyLastDay"

    def problems(self) -> list[str]:
        return []


@dataclass(frozen=True, slots=True)
class Custom:
    """Every N calendar days from the base date."""

    interval_days: int

    repeat_type = "custom"

    def problems(self) -> list[str]:
        if self.interval_days <= 0:
            return [f"interval of {self.interval_days} days is not positive"]
        return []


RecurrenceRule = Union[NoRepeat, Daily, CustomWeekly, Monthly, MonthlyLastDay, Custom]


class TaskStatus(str, Enum):
    PENDING = "pending"
    OVERDUE = "overdue"
    COMPLETED = "completed"


class GroupRole(str, Enum):
    """Role of a member within a group."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"

    @classmethod
    def parse(cls, value: str) -> GroupRole:
        """Parse a stored role name; unknown values become MEMBER."""

        try:
            return cls(value)
        except ValueError:
            return cls.MEMBER


@dataclass(slots=True)
class ScheduleTemplate:
    """Recurring schedule definition that task instances are projected from."""

    id: str
    user_id: str
    title: str
    rule: RecurrenceRule
    created_at: datetime
    updated_at: datetime
    description: str = ""
    requires_completion: bool = False
    is_active: bool = True
    group_id: str | None = None
    start_date: date | None = None
    last_completed_date: date | None = None

    @property
    def is_gated(self) -> bool:
        """True when the next instance waits for completion of the current one."""

        return isinstance(self.rule, Custom) and self.requires_completion

    @property
    def effective_start_date(self) -> date:
        if self.last_completed_date is not None:
            return self.last_completed_date
        if self.start_date is not None:
            return self.start_date
        return self.created_at.date()


@dataclass(slots=True)
class TaskInstance:
    """One dated occurrence materialized from a template."""

    id: int | None
    template_id: str
    user_id: str
    title: str
    scheduled_date: date
    description: str = ""
    completed_at: datetime | None = None
    completed_by_member_id: str | None = None
    group_id: str | None = None
    # Copies of the template's rule parameters, kept for display.
    repeat_type: str = "none"
    weekdays: list[int] | None = None
    repeat_interval: int | None = None
    monthly_day: int | None = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def status(self, today: date) -> TaskStatus:
        if self.is_completed:
            return TaskStatus.COMPLETED
        if self.scheduled_date < today:
            return TaskStatus.OVERDUE
        return TaskStatus.PENDING


@dataclass(slots=True)
class CompletionHistory:
    """Record of who completed which task, kept apart from the task row."""

    id: int | None
    template_id: str
    task_id: int
    user_id: str
    title: str
    scheduled_date: date
    completed_at: datetime
    completed_by_member_id: str
    group_id: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class Group:
    """Shared group with exactly one owner and a member→role mapping."""

    id: str
    name: str
    owner_id: str
    invite_code: str
    member_roles: dict[str, GroupRole] = field(default_factory=dict)
    is_active: bool = True
    is_joinable: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def role_for(self, member_id: str) -> GroupRole | None:
        return self.member_roles.get(member_id)

    def is_owner(self, member_id: str) -> bool:
        return self.owner_id == member_id

    def is_member(self, member_id: str) -> bool:
        return member_id in self.member_roles
