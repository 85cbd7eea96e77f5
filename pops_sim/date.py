"""Simulated calendar date.

A small immutable (year, month, day) value with the stepping rules the
simulation loop needs:
  - weekly steps advance by 7 days and drift across year boundaries
  - monthly steps advance the month and keep the day
  - the last week of a year is the week whose successor lies in the next year
  - the last month of a year is December
  - a week never ends after Dec 31, so yearly outputs are dated in their own year
"""

from __future__ import annotations

import calendar
import datetime as dt
from dataclasses import dataclass

from pops_sim.types import StepUnit


@dataclass(frozen=True, order=True)
class Date:
    year: int
    month: int
    day: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month {self.month}")
        if not 1 <= self.day <= self.days_in_month():
            raise ValueError(
                f"Invalid day {self.day} for {self.year}-{self.month:02d}"
            )

    # ── construction ─────────────────────────────────────────────────

    @classmethod
    def year_start(cls, year: int) -> "Date":
        return cls(year, 1, 1)

    @classmethod
    def year_end(cls, year: int) -> "Date":
        return cls(year, 12, 31)

    @classmethod
    def from_pydate(cls, value: dt.date) -> "Date":
        return cls(value.year, value.month, value.day)

    def to_pydate(self) -> dt.date:
        return dt.date(self.year, self.month, self.day)

    # ── arithmetic ───────────────────────────────────────────────────

    def days_in_month(self) -> int:
        return calendar.monthrange(self.year, self.month)[1]

    def add_days(self, days: int) -> "Date":
        return Date.from_pydate(self.to_pydate() + dt.timedelta(days=days))

    def next_week(self) -> "Date":
        return self.add_days(7)

    def next_month(self) -> "Date":
        year, month = (self.year + 1, 1) if self.month == 12 else (self.year, self.month + 1)
        day = min(self.day, calendar.monthrange(year, month)[1])
        return Date(year, month, day)

    def next_step(self, unit: StepUnit) -> "Date":
        return self.next_month() if unit is StepUnit.MONTH else self.next_week()

    def last_day_of_week(self) -> "Date":
        """Six days on, but never past Dec 31 of this date's year."""
        return min(self.add_days(6), Date.year_end(self.year))

    def last_day_of_month(self) -> "Date":
        return Date(self.year, self.month, self.days_in_month())

    def last_day_of_step(self, unit: StepUnit) -> "Date":
        if unit is StepUnit.MONTH:
            return self.last_day_of_month()
        return self.last_day_of_week()

    def next_year_end(self) -> "Date":
        """The closest year boundary (Dec 31) at or after this date."""
        return Date.year_end(self.year)

    # ── predicates ───────────────────────────────────────────────────

    def is_last_week_of_year(self) -> bool:
        return self.month == 12 and self.day + 7 > 31

    def is_last_month_of_year(self) -> bool:
        return self.month == 12

    def is_last_step_of_year(self, unit: StepUnit) -> bool:
        if unit is StepUnit.MONTH:
            return self.is_last_month_of_year()
        return self.is_last_week_of_year()

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"


def month_in_season(month: int, season) -> bool:
    """Whether ``month`` lies in the inclusive ``(from_month, to_month)`` window."""
    return season[0] <= month <= season[1]
