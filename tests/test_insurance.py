"""
Tests for insurer rate tables and factor resolution
"""

import pytest
from decimal import Decimal

from lending_core.errors import NoApplicableRangeError, NotFoundError, ValidationError
from lending_core.insurance import (
    FixedAmountFactor, InsuranceRateRange, InsuranceRateType, InsurerManager,
    PercentageFactor, RangeMetric, find_rate_range, resolve_factor
)
from lending_core.storage import InMemoryStorage


def amount_range(low, high, rate_type, value):
    return InsuranceRateRange(RangeMetric.AMOUNT, Decimal(low), Decimal(high), rate_type, Decimal(value))


class TestRateRanges:

    def setup_method(self):
        self.ranges = [
            amount_range('1', '500000', InsuranceRateType.PERCENTAGE, '2'),
            amount_range('501', '2000000', InsuranceRateType.PERCENTAGE, '1.5'),
        ]

    def test_resolves_single_matching_range(self):
        """Test resolves single matching range"""
        factor = resolve_factor(self.ranges, RangeMetric.AMOUNT, Decimal('1200000'))
        assert factor == PercentageFactor(rate_percent=Decimal('1.5'))

    def test_no_range_contains_metric(self):
        """Test no range contains metric"""
        with pytest.raises(NoApplicableRangeError):
            resolve_factor(self.ranges, RangeMetric.AMOUNT, Decimal('2500000'))

    def test_bounds_are_inclusive(self):
        """Test bounds are inclusive"""
        assert find_rate_range(self.ranges, RangeMetric.AMOUNT, Decimal('2000000')).rate_value == Decimal('1.5')
        assert find_rate_range(self.ranges, RangeMetric.AMOUNT, Decimal('1')).rate_value == Decimal('2')

    def test_overlap_resolves_to_first_configured_range(self):
        """Amounts inside both tiers take the earlier tier"""
        factor = resolve_factor(self.ranges, RangeMetric.AMOUNT, Decimal('100000'))
        assert factor == PercentageFactor(rate_percent=Decimal('2'))
        assert find_rate_range(self.ranges, RangeMetric.AMOUNT, Decimal('500000')).rate_value == Decimal('2')

    def test_overlap_follows_configured_order(self):
        """Test overlap follows configured order"""
        reordered = list(reversed(self.ranges))
        assert find_rate_range(reordered, RangeMetric.AMOUNT, Decimal('100000')).rate_value == Decimal('1.5')

    def test_other_metric_ignored(self):
        """Test other metric ignored"""
        with pytest.raises(NoApplicableRangeError):
            find_rate_range(self.ranges, RangeMetric.INSTALLMENT_COUNT, Decimal('12'))

    def test_inverted_bounds_rejected(self):
        """Test inverted bounds rejected"""
        with pytest.raises(ValidationError):
            amount_range('10', '1', InsuranceRateType.PERCENTAGE, '1')

    def test_negative_rate_rejected(self):
        """Test negative rate rejected"""
        with pytest.raises(ValidationError):
            amount_range('1', '10', InsuranceRateType.PERCENTAGE, '-1')


class TestFactorShapes:

    def test_fixed_amount_floor_applies(self):
        """Test fixed amount floor applies"""
        ranges = [amount_range('1', '1000', InsuranceRateType.FIXED_AMOUNT, '5')]
        factor = resolve_factor(ranges, RangeMetric.AMOUNT, Decimal('500'), Decimal('8'))
        assert factor == FixedAmountFactor(amount=Decimal('8.00'))

    def test_zero_fixed_amount_not_floored(self):
        """Test zero fixed amount not floored"""
        ranges = [amount_range('1', '1000', InsuranceRateType.FIXED_AMOUNT, '0')]
        factor = resolve_factor(ranges, RangeMetric.AMOUNT, Decimal('500'), Decimal('8'))
        assert factor == FixedAmountFactor(amount=Decimal('0.00'))

    def test_percentage_carries_floor(self):
        """Test percentage carries floor"""
        ranges = [amount_range('1', '1000', InsuranceRateType.PERCENTAGE, '0.5')]
        factor = resolve_factor(ranges, RangeMetric.AMOUNT, Decimal('500'), Decimal('3'))
        assert isinstance(factor, PercentageFactor)
        assert factor.minimum_amount == Decimal('3')


class TestInsurerManager:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.insurers = InsurerManager(self.storage)
        self.insurer = self.insurers.create_insurer(
            "Safe Insurance",
            [
                InsuranceRateRange(RangeMetric.INSTALLMENT_COUNT, Decimal('1'), Decimal('12'),
                                   InsuranceRateType.PERCENTAGE, Decimal('0.5')),
                InsuranceRateRange(RangeMetric.INSTALLMENT_COUNT, Decimal('13'), Decimal('36'),
                                   InsuranceRateType.FIXED_AMOUNT, Decimal('2500')),
            ],
            minimum_amount=Decimal('1000'),
        )

    def test_rate_ranges_persist(self):
        """Test rate ranges persist"""
        loaded = self.insurers.get_insurer(self.insurer.id)
        assert len(loaded.rate_ranges) == 2
        assert loaded.rate_ranges[1].rate_type == InsuranceRateType.FIXED_AMOUNT
        assert loaded.minimum_amount == Decimal('1000')

    def test_resolve_by_installment_count(self):
        """Test resolve by installment count"""
        assert self.insurers.resolve(self.insurer.id, RangeMetric.INSTALLMENT_COUNT, Decimal('12')) == \
            PercentageFactor(rate_percent=Decimal('0.5'), minimum_amount=Decimal('1000'))
        assert self.insurers.resolve(self.insurer.id, RangeMetric.INSTALLMENT_COUNT, Decimal('24')) == \
            FixedAmountFactor(amount=Decimal('2500.00'))

    def test_inactive_insurer_not_found(self):
        """Test inactive insurer not found"""
        self.insurers.set_active(self.insurer.id, False)
        with pytest.raises(NotFoundError):
            self.insurers.resolve(self.insurer.id, RangeMetric.INSTALLMENT_COUNT, Decimal('12'))

    def test_unknown_insurer(self):
        """Test unknown insurer not found"""
        with pytest.raises(NotFoundError):
            self.insurers.get_active_insurer("missing")

    def test_name_required(self):
        """Test name required"""
        with pytest.raises(ValidationError):
            self.insurers.create_insurer("", [])
