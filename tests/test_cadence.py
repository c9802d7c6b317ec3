"""
Tests for payment cadences and day-count conventions
"""

import pytest
from datetime import date

from lending_core.cadence import (
    DayCountConvention, IntervalCadence, MonthlyCalendarCadence, SemiMonthlyCadence,
    add_months, calendar_date, period_days
)
from lending_core.errors import ValidationError


class TestDayCountConvention:

    def test_actual_days(self):
        """Test actual day count"""
        start, end = date(2024, 1, 31), date(2024, 3, 1)
        assert DayCountConvention.ACTUAL_360.days_between(start, end) == 30
        assert DayCountConvention.ACTUAL_365.days_between(start, end) == 30

    def test_thirty_360(self):
        """Test thirty 360 day count"""
        convention = DayCountConvention.THIRTY_360
        assert convention.days_between(date(2024, 1, 15), date(2024, 2, 15)) == 30
        assert convention.days_between(date(2024, 1, 31), date(2024, 2, 29)) == 29
        assert convention.days_between(date(2024, 1, 30), date(2024, 3, 31)) == 60
        assert convention.days_between(date(2024, 1, 15), date(2025, 1, 15)) == 360

    def test_year_base(self):
        """Test year base per convention"""
        assert DayCountConvention.ACTUAL_365.year_base == 365
        assert DayCountConvention.ACTUAL_360.year_base == 360
        assert DayCountConvention.THIRTY_360.year_base == 360


class TestCalendarHelpers:

    def test_add_months_wraps_year(self):
        """Test add months wraps year"""
        assert add_months(2024, 11, 3) == (2025, 2)
        assert add_months(2024, 1, -1) == (2023, 12)

    def test_missing_day_with_fallback_clamps(self):
        """Test missing day with fallback clamps"""
        assert calendar_date(2023, 2, 30, True) == date(2023, 2, 28)
        assert calendar_date(2024, 2, 31, True) == date(2024, 2, 29)

    def test_missing_day_without_fallback_skips_to_next_month(self):
        """Test missing day without fallback skips to next month"""
        assert calendar_date(2023, 2, 30, False) == date(2023, 3, 1)
        assert calendar_date(2024, 4, 31, False) == date(2024, 5, 1)


class TestIntervalCadence:

    def test_every_fourteen_days(self):
        """Test every fourteen days"""
        dates = IntervalCadence(14).due_dates(date(2024, 1, 1), 3)
        assert dates == [date(2024, 1, 1), date(2024, 1, 15), date(2024, 1, 29)]

    def test_rejects_non_positive_interval(self):
        """Test rejects non positive interval"""
        with pytest.raises(ValidationError):
            IntervalCadence(0)

    def test_rejects_zero_count(self):
        """Test rejects zero count"""
        with pytest.raises(ValidationError):
            IntervalCadence(30).due_dates(date(2024, 1, 1), 0)


class TestMonthlyCalendarCadence:

    def test_anchor_31_through_leap_february(self):
        """Test anchor 31 through leap february"""
        dates = MonthlyCalendarCadence(31).due_dates(date(2024, 1, 31), 4)
        assert dates == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]

    def test_anchor_does_not_drift_after_clamping(self):
        """Test anchor does not drift after clamping"""
        dates = MonthlyCalendarCadence().due_dates(date(2023, 1, 31), 3)
        assert dates == [date(2023, 1, 31), date(2023, 2, 28), date(2023, 3, 31)]

    def test_skip_to_next_month_without_fallback(self):
        """Test skip to next month without fallback"""
        cadence = MonthlyCalendarCadence(30, end_of_month_fallback=False)
        dates = cadence.due_dates(date(2023, 1, 30), 3)
        assert dates == [date(2023, 1, 30), date(2023, 3, 1), date(2023, 3, 30)]

    def test_dates_strictly_increasing(self):
        """Test dates strictly increasing"""
        dates = MonthlyCalendarCadence(31).due_dates(date(2024, 1, 31), 24)
        assert all(a < b for a, b in zip(dates, dates[1:]))

    def test_first_collection_on_configured_day(self):
        """Test first collection on configured day"""
        cadence = MonthlyCalendarCadence(5)
        assert cadence.first_collection_on_or_after(date(2024, 1, 17)) == date(2024, 2, 5)
        assert cadence.first_collection_on_or_after(date(2024, 1, 5)) == date(2024, 1, 5)

    def test_first_collection_without_anchor_is_the_date_itself(self):
        """Test first collection without anchor is the date itself"""
        assert MonthlyCalendarCadence().first_collection_on_or_after(date(2024, 1, 17)) == date(2024, 1, 17)

    def test_invalid_day(self):
        """Test invalid calendar day rejected"""
        with pytest.raises(ValidationError):
            MonthlyCalendarCadence(32)


class TestSemiMonthlyCadence:

    def test_fifteenth_and_thirtieth(self):
        """Test fifteenth and thirtieth"""
        dates = SemiMonthlyCadence(15, 30).due_dates(date(2023, 1, 15), 5)
        assert dates == [
            date(2023, 1, 15), date(2023, 1, 30),
            date(2023, 2, 15), date(2023, 2, 28),
            date(2023, 3, 15),
        ]

    def test_days_are_sorted(self):
        """Test days are sorted"""
        cadence = SemiMonthlyCadence(30, 15)
        assert (cadence.day1, cadence.day2) == (15, 30)

    def test_equal_days_rejected(self):
        """Test equal days rejected"""
        with pytest.raises(ValidationError, match="differ"):
            SemiMonthlyCadence(15, 15)

    def test_first_collection_on_or_after(self):
        """Test first collection on or after"""
        cadence = SemiMonthlyCadence(15, 30)
        assert cadence.first_collection_on_or_after(date(2024, 1, 17)) == date(2024, 1, 30)
        assert cadence.first_collection_on_or_after(date(2024, 1, 15)) == date(2024, 1, 15)
        assert cadence.first_collection_on_or_after(date(2024, 1, 31)) == date(2024, 2, 15)


class TestPeriodDays:

    def test_first_period_nominal_without_start(self):
        """Test first period nominal without start"""
        cadence = MonthlyCalendarCadence()
        dates = cadence.due_dates(date(2024, 2, 15), 3)
        assert period_days(DayCountConvention.ACTUAL_365, cadence, dates) == [30, 29, 31]

    def test_first_period_from_disbursement(self):
        """Test first period from disbursement"""
        cadence = MonthlyCalendarCadence()
        dates = cadence.due_dates(date(2024, 2, 15), 2)
        days = period_days(DayCountConvention.THIRTY_360, cadence, dates, date(2024, 1, 25))
        assert days == [20, 30]
