"""
Payment Cadence Module

Rules that generate successive installment due dates, and the day-count
conventions that turn a pair of dates into a period length.

Three cadence variants exist:
    IntervalCadence        - every N days from the first payment date
    MonthlyCalendarCadence - same calendar day each month
    SemiMonthlyCadence     - two calendar days each month

When a calendar day does not exist in a month (day 31 in April, day 30 in
February) the end-of-month fallback flag decides the outcome: clamp to the
last day of that month, or skip forward to the first day of the next month.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional
import calendar

from .errors import ValidationError


class DayCountConvention(Enum):
    """Conventions converting an annual rate to a period rate"""
    ACTUAL_360 = "actual_360"    # Actual days / 360
    ACTUAL_365 = "actual_365"    # Actual days / 365
    THIRTY_360 = "thirty_360"    # 30-day months / 360

    @property
    def year_base(self) -> Decimal:
        if self == DayCountConvention.ACTUAL_365:
            return Decimal('365')
        return Decimal('360')

    def days_between(self, start: date, end: date) -> int:
        """Days in the period (start, end] under this convention"""
        if self != DayCountConvention.THIRTY_360:
            return (end - start).days

        d1 = min(start.day, 30)
        d2 = end.day
        if d2 == 31 and d1 == 30:
            d2 = 30
        return (
            360 * (end.year - start.year)
            + 30 * (end.month - start.month)
            + (d2 - d1)
        )


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(year: int, month: int, months: int) -> tuple:
    """Shift a (year, month) pair by a number of months"""
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def calendar_date(year: int, month: int, day: int, end_of_month_fallback: bool) -> date:
    """
    Build the date for a calendar day in a month, resolving days the month
    does not have through the fallback rule.
    """
    last_day = last_day_of_month(year, month)
    if day <= last_day:
        return date(year, month, day)
    if end_of_month_fallback:
        return date(year, month, last_day)
    next_year, next_month = add_months(year, month, 1)
    return date(next_year, next_month, 1)


def _validate_day(day: int, name: str) -> None:
    if not isinstance(day, int) or day < 1 or day > 31:
        raise ValidationError(f"{name} must be a calendar day between 1 and 31", {"value": day})


class Cadence(ABC):
    """A rule generating successive due dates"""

    @property
    @abstractmethod
    def nominal_days(self) -> int:
        """Nominal period length in days, used when no actual period start is known"""
        pass

    @abstractmethod
    def due_dates(self, first_payment_date: date, count: int) -> List[date]:
        """Generate `count` due dates starting with the first payment date"""
        pass

    @abstractmethod
    def first_collection_on_or_after(self, earliest: date) -> date:
        """Earliest due date this cadence allows on or after `earliest`"""
        pass

    def _check_count(self, count: int) -> None:
        if count < 1:
            raise ValidationError("Installment count must be at least 1", {"count": count})


@dataclass(frozen=True)
class IntervalCadence(Cadence):
    """Fixed interval of N days"""
    days: int

    def __post_init__(self):
        if not isinstance(self.days, int) or self.days <= 0:
            raise ValidationError("Payment interval must be a positive number of days",
                                  {"days": self.days})

    @property
    def nominal_days(self) -> int:
        return self.days

    def due_dates(self, first_payment_date: date, count: int) -> List[date]:
        self._check_count(count)
        return [first_payment_date + timedelta(days=self.days * i) for i in range(count)]

    def first_collection_on_or_after(self, earliest: date) -> date:
        return earliest


@dataclass(frozen=True)
class MonthlyCalendarCadence(Cadence):
    """
    Same calendar day every month. When `day_of_month` is None the day of
    the first payment date is the anchor.
    """
    day_of_month: Optional[int] = None
    end_of_month_fallback: bool = True

    def __post_init__(self):
        if self.day_of_month is not None:
            _validate_day(self.day_of_month, "day_of_month")

    @property
    def nominal_days(self) -> int:
        return 30

    def due_dates(self, first_payment_date: date, count: int) -> List[date]:
        self._check_count(count)
        anchor = self.day_of_month or first_payment_date.day
        dates = [first_payment_date]
        # Each date is computed from the first month so clamping never drifts the anchor
        for i in range(1, count):
            year, month = add_months(first_payment_date.year, first_payment_date.month, i)
            dates.append(calendar_date(year, month, anchor, self.end_of_month_fallback))
        return dates

    def first_collection_on_or_after(self, earliest: date) -> date:
        if self.day_of_month is None:
            return earliest
        year, month = earliest.year, earliest.month
        while True:
            candidate = calendar_date(year, month, self.day_of_month, self.end_of_month_fallback)
            if candidate >= earliest:
                return candidate
            year, month = add_months(year, month, 1)


@dataclass(frozen=True)
class SemiMonthlyCadence(Cadence):
    """Two calendar days each month; the days are kept in ascending order"""
    day1: int = 15
    day2: int = 30
    end_of_month_fallback: bool = True

    def __post_init__(self):
        _validate_day(self.day1, "day1")
        _validate_day(self.day2, "day2")
        if self.day1 == self.day2:
            raise ValidationError("Semi-monthly days must differ",
                                  {"day1": self.day1, "day2": self.day2})
        if self.day1 > self.day2:
            low, high = self.day2, self.day1
            object.__setattr__(self, 'day1', low)
            object.__setattr__(self, 'day2', high)

    @property
    def nominal_days(self) -> int:
        return 15

    def _candidates(self, year: int, month: int) -> List[date]:
        return [
            calendar_date(year, month, self.day1, self.end_of_month_fallback),
            calendar_date(year, month, self.day2, self.end_of_month_fallback),
        ]

    def next_due(self, previous: date) -> date:
        """First collection day strictly after `previous`"""
        year, month = previous.year, previous.month
        while True:
            for candidate in self._candidates(year, month):
                if candidate > previous:
                    return candidate
            year, month = add_months(year, month, 1)

    def due_dates(self, first_payment_date: date, count: int) -> List[date]:
        self._check_count(count)
        dates = [first_payment_date]
        for _ in range(1, count):
            dates.append(self.next_due(dates[-1]))
        return dates

    def first_collection_on_or_after(self, earliest: date) -> date:
        return self.next_due(earliest - timedelta(days=1))


def period_days(convention: DayCountConvention, cadence: Cadence, due_dates: List[date],
                period_start: Optional[date] = None) -> List[int]:
    """
    Length in days of each period ending at a due date. The first period runs
    from `period_start` (usually the disbursement date) or, when that is not
    known, has the cadence's nominal length.
    """
    days = []
    previous = period_start
    for index, due in enumerate(due_dates):
        if index == 0 and previous is None:
            days.append(cadence.nominal_days)
        else:
            days.append(max(convention.days_between(previous, due), 0))
        previous = due
    return days
