from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Callable, Iterator, Optional

from budget_planner.errors import ProjectionCancelled, ValidationError

WEEKLY_DAYS = 7
BIWEEKLY_INTERVAL = 2
MONTHS_PER_QUARTER = 3
MONTHS_PER_YEAR = 12
WEEKDAY_NAMES = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)
ANCHOR_FIELDS = ("day_of_month", "day_of_week", "month_of_year")


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @classmethod
    def parse(cls, value: "Frequency | str") -> "Frequency":
        if isinstance(value, Frequency):
            return value
        if not isinstance(value, str):
            raise ValidationError("Frequency is required.")
        normalized = _normalize_frequency(value)
        if normalized == "byweekly":
            normalized = "biweekly"
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValidationError(
                "Only daily, weekly, biweekly, monthly, quarterly, or yearly patterns are supported."
            ) from exc


DAY_STEP_FREQUENCIES = {Frequency.DAILY, Frequency.WEEKLY, Frequency.BIWEEKLY}
REQUIRED_ANCHORS = {
    Frequency.DAILY: set(),
    Frequency.WEEKLY: {"day_of_week"},
    Frequency.BIWEEKLY: {"day_of_week"},
    Frequency.MONTHLY: {"day_of_month"},
    Frequency.QUARTERLY: {"day_of_month"},
    Frequency.YEARLY: {"day_of_month", "month_of_year"},
}
BASE_OCCURRENCES_PER_YEAR = {
    Frequency.DAILY: 365,
    Frequency.WEEKLY: 52,
    Frequency.BIWEEKLY: 26,
    Frequency.MONTHLY: 12,
    Frequency.QUARTERLY: 4,
    Frequency.YEARLY: 1,
}


@dataclass(frozen=True)
class RecurrencePattern:
    """A frequency rule anchored to an obligation's start date.

    Daily, weekly and biweekly patterns step a fixed number of days from the
    first aligned date on or after the anchor. Monthly, quarterly and yearly
    patterns step whole calendar months from the anchor's month (or from
    ``month_of_year`` for yearly patterns) and land on ``day_of_month``
    clamped to the length of each target month.
    """

    frequency: Frequency
    interval: int = 1
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    month_of_year: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "frequency", Frequency.parse(self.frequency))
        _validate_pattern(self)

    @classmethod
    def daily(cls, interval: int = 1) -> "RecurrencePattern":
        return cls(Frequency.DAILY, interval)

    @classmethod
    def weekly(cls, day_of_week: int, interval: int = 1) -> "RecurrencePattern":
        return cls(Frequency.WEEKLY, interval, day_of_week=day_of_week)

    @classmethod
    def biweekly(cls, day_of_week: int) -> "RecurrencePattern":
        return cls(Frequency.BIWEEKLY, BIWEEKLY_INTERVAL, day_of_week=day_of_week)

    @classmethod
    def monthly(cls, day_of_month: int, interval: int = 1) -> "RecurrencePattern":
        return cls(Frequency.MONTHLY, interval, day_of_month=day_of_month)

    @classmethod
    def quarterly(cls, day_of_month: int, interval: int = 1) -> "RecurrencePattern":
        return cls(Frequency.QUARTERLY, interval, day_of_month=day_of_month)

    @classmethod
    def yearly(
        cls, month_of_year: int, day_of_month: int, interval: int = 1
    ) -> "RecurrencePattern":
        return cls(
            Frequency.YEARLY,
            interval,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
        )

    def next_on_or_after(self, anchor: date, on_or_after: date) -> date:
        """Return the first occurrence of the series anchored at ``anchor``
        that falls on or after ``on_or_after``."""
        target = max(anchor, on_or_after)
        if self.frequency in DAY_STEP_FREQUENCIES:
            return self._next_day_step(anchor, target)
        return self._next_month_step(anchor, target)

    def occurrences(
        self,
        anchor: date,
        range_start: date,
        range_end: date,
        should_abort: Callable[[], bool] | None = None,
    ) -> Iterator[date]:
        current = self.next_on_or_after(anchor, range_start)
        while current <= range_end:
            if should_abort is not None and should_abort():
                raise ProjectionCancelled("Occurrence walk was cancelled.")
            yield current
            current = self.next_on_or_after(anchor, current + timedelta(days=1))

    def describe(self) -> str:
        weekday = WEEKDAY_NAMES[self.day_of_week] if self.day_of_week is not None else ""
        if self.frequency == Frequency.DAILY:
            return "Daily" if self.interval == 1 else f"Every {self.interval} days"
        if self.frequency == Frequency.WEEKLY:
            if self.interval == 1:
                return f"Weekly on {weekday}"
            return f"Every {self.interval} weeks on {weekday}"
        if self.frequency == Frequency.BIWEEKLY:
            return f"Every 2 weeks on {weekday}"
        if self.frequency == Frequency.MONTHLY:
            if self.interval == 1:
                return f"Monthly on day {self.day_of_month}"
            return f"Every {self.interval} months on day {self.day_of_month}"
        if self.frequency == Frequency.QUARTERLY:
            if self.interval == 1:
                return f"Quarterly on day {self.day_of_month}"
            return f"Every {self.interval} quarters on day {self.day_of_month}"
        if self.interval == 1:
            return f"Yearly on {self.month_of_year}/{self.day_of_month}"
        return f"Every {self.interval} years on {self.month_of_year}/{self.day_of_month}"

    def __str__(self) -> str:
        return self.describe()

    def _step_days(self) -> int:
        if self.frequency == Frequency.DAILY:
            return self.interval
        return WEEKLY_DAYS * self.interval

    def _step_months(self) -> int:
        if self.frequency == Frequency.QUARTERLY:
            return MONTHS_PER_QUARTER * self.interval
        if self.frequency == Frequency.YEARLY:
            return MONTHS_PER_YEAR * self.interval
        return self.interval

    def _next_day_step(self, anchor: date, target: date) -> date:
        first = anchor
        if self.day_of_week is not None:
            first = anchor + timedelta(days=(self.day_of_week - anchor.weekday()) % WEEKLY_DAYS)
        if first >= target:
            return first
        step = self._step_days()
        days_between = (target - first).days
        steps = (days_between + step - 1) // step
        return first + timedelta(days=step * steps)

    def _next_month_step(self, anchor: date, target: date) -> date:
        base_year = anchor.year
        base_month = self.month_of_year if self.frequency == Frequency.YEARLY else anchor.month
        step = self._step_months()
        months_between = (target.year - base_year) * MONTHS_PER_YEAR + (target.month - base_month)
        steps = max(months_between // step, 0)
        candidate = _add_months(base_year, base_month, steps * step, self.day_of_month)
        # the floor step lands in or before the target month, so one more step always suffices
        if candidate < target:
            candidate = _add_months(base_year, base_month, (steps + 1) * step, self.day_of_month)
        return candidate


def _validate_pattern(pattern: RecurrencePattern) -> None:
    if isinstance(pattern.interval, bool) or not isinstance(pattern.interval, int):
        raise ValidationError("Interval must be a whole number.")
    if pattern.interval < 1:
        raise ValidationError("Interval must be at least 1.")
    if pattern.day_of_month is not None and not 1 <= pattern.day_of_month <= 31:
        raise ValidationError("Day of month must be between 1 and 31.")
    if pattern.day_of_week is not None and not 0 <= pattern.day_of_week <= 6:
        raise ValidationError("Day of week must be between 0 (Monday) and 6 (Sunday).")
    if pattern.month_of_year is not None and not 1 <= pattern.month_of_year <= 12:
        raise ValidationError("Month of year must be between 1 and 12.")

    required = REQUIRED_ANCHORS[pattern.frequency]
    for name in ANCHOR_FIELDS:
        value = getattr(pattern, name)
        if name in required and value is None:
            raise ValidationError(
                f"{pattern.frequency.value.capitalize()} patterns require {name}."
            )
        if name not in required and value is not None:
            raise ValidationError(f"{name} is not used by {pattern.frequency.value} patterns.")

    if pattern.frequency == Frequency.BIWEEKLY and pattern.interval != BIWEEKLY_INTERVAL:
        raise ValidationError("Biweekly patterns always repeat every 2 weeks.")


def _normalize_frequency(value: str) -> str:
    return "".join(ch for ch in value.strip().lower() if ch.isalnum())


def _add_months(year: int, month: int, months: int, anchor_day: int) -> date:
    total_month = month - 1 + months
    target_year = year + total_month // 12
    target_month = total_month % 12 + 1
    last_day = monthrange(target_year, target_month)[1]
    return date(target_year, target_month, min(anchor_day, last_day))
