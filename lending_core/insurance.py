"""
Insurance Factor Module

Insurers publish tiered rate tables. Each range covers an inclusive
[value_from, value_to] interval of one metric (installment count or
principal amount) and carries either a percentage rate or a fixed amount.
Resolution returns exactly one of two factor shapes; there is no implicit
default when no range matches.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import logging
import uuid

from .errors import NoApplicableRangeError, NotFoundError, ValidationError
from .money import ZERO, round_money, to_decimal
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("lending.insurance")


class RangeMetric(Enum):
    """Metric an insurer rate range is keyed on"""
    INSTALLMENT_COUNT = "installment_count"
    AMOUNT = "amount"


class InsuranceRateType(Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


@dataclass(frozen=True)
class PercentageFactor:
    """Insurance charged as a percentage of a base amount, with an optional floor"""
    rate_percent: Decimal
    minimum_amount: Decimal = ZERO


@dataclass(frozen=True)
class FixedAmountFactor:
    """Insurance charged as a fixed amount per accrual (floor already applied)"""
    amount: Decimal


InsuranceFactor = Union[PercentageFactor, FixedAmountFactor]


@dataclass
class InsuranceRateRange:
    """One tier of an insurer's rate table"""
    range_metric: RangeMetric
    value_from: Decimal
    value_to: Decimal
    rate_type: InsuranceRateType
    rate_value: Decimal

    def __post_init__(self):
        self.value_from = to_decimal(self.value_from)
        self.value_to = to_decimal(self.value_to)
        self.rate_value = to_decimal(self.rate_value)
        if self.value_from > self.value_to:
            raise ValidationError("Rate range lower bound exceeds upper bound",
                                  {"value_from": str(self.value_from), "value_to": str(self.value_to)})
        if self.rate_value < ZERO:
            raise ValidationError("Rate range value cannot be negative",
                                  {"rate_value": str(self.rate_value)})

    def contains(self, metric: Decimal) -> bool:
        return self.value_from <= metric <= self.value_to

    def to_dict(self) -> Dict[str, Any]:
        return {
            'range_metric': self.range_metric.value,
            'value_from': str(self.value_from),
            'value_to': str(self.value_to),
            'rate_type': self.rate_type.value,
            'rate_value': str(self.rate_value),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InsuranceRateRange':
        return cls(
            range_metric=RangeMetric(data['range_metric']),
            value_from=Decimal(data['value_from']),
            value_to=Decimal(data['value_to']),
            rate_type=InsuranceRateType(data['rate_type']),
            rate_value=Decimal(data['rate_value']),
        )


@dataclass
class Insurer(StorageRecord):
    """Insurance company and its rate table"""
    name: str
    is_active: bool = True
    minimum_amount: Decimal = ZERO
    rate_ranges: List[InsuranceRateRange] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['rate_ranges'] = [r.to_dict() for r in self.rate_ranges]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Insurer':
        data = dict(data)
        ranges = [InsuranceRateRange.from_dict(r) for r in data.pop('rate_ranges', [])]
        insurer = super().from_dict(data)
        insurer.rate_ranges = ranges
        return insurer


def find_rate_range(ranges: List[InsuranceRateRange], metric: RangeMetric,
                    value: Decimal) -> InsuranceRateRange:
    """
    Select the first range, in configured order, of the given metric whose
    bounds contain the value. Overlapping tiers are allowed.

    Raises:
        NoApplicableRangeError: No range contains the value
    """
    value = to_decimal(value)
    for rate_range in ranges:
        if rate_range.range_metric == metric and rate_range.contains(value):
            return rate_range
    raise NoApplicableRangeError(
        f"No insurance rate range applies to {metric.value} {value}",
        {"metric": metric.value, "value": str(value)}
    )


def resolve_factor(ranges: List[InsuranceRateRange], metric: RangeMetric, value: Decimal,
                   minimum_amount: Decimal = ZERO) -> InsuranceFactor:
    """Resolve an insurer rate table and metric value to an insurance factor"""
    rate_range = find_rate_range(ranges, metric, value)
    minimum_amount = to_decimal(minimum_amount)

    if rate_range.rate_type == InsuranceRateType.FIXED_AMOUNT:
        amount = rate_range.rate_value
        if amount > ZERO and minimum_amount > amount:
            amount = minimum_amount
        return FixedAmountFactor(amount=round_money(amount))

    return PercentageFactor(rate_percent=rate_range.rate_value, minimum_amount=minimum_amount)


class InsurerManager:
    """Stores insurers and resolves their rate tables"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "insurers"

    def create_insurer(self, name: str, rate_ranges: List[InsuranceRateRange],
                       minimum_amount: Decimal = ZERO, is_active: bool = True) -> Insurer:
        if not name:
            raise ValidationError("Insurer name is required")
        minimum_amount = to_decimal(minimum_amount)
        if minimum_amount < ZERO:
            raise ValidationError("Insurer minimum amount cannot be negative")

        now = datetime.now(timezone.utc)
        insurer = Insurer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            is_active=is_active,
            minimum_amount=minimum_amount,
            rate_ranges=list(rate_ranges),
        )
        self.storage.save(self.table_name, insurer.id, insurer.to_dict())
        logger.info("Insurer created", extra={"resource": insurer.id})
        return insurer

    def get_insurer(self, insurer_id: str) -> Optional[Insurer]:
        data = self.storage.load(self.table_name, insurer_id)
        return Insurer.from_dict(data) if data else None

    def get_active_insurer(self, insurer_id: str) -> Insurer:
        insurer = self.get_insurer(insurer_id)
        if not insurer or not insurer.is_active:
            raise NotFoundError(f"Insurer {insurer_id} not found or inactive",
                                {"insurer_id": insurer_id})
        return insurer

    def set_active(self, insurer_id: str, is_active: bool) -> Insurer:
        insurer = self.get_insurer(insurer_id)
        if not insurer:
            raise NotFoundError(f"Insurer {insurer_id} not found")
        insurer.is_active = is_active
        insurer.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, insurer.id, insurer.to_dict())
        return insurer

    def resolve(self, insurer_id: str, metric: RangeMetric, value: Decimal) -> InsuranceFactor:
        """Resolve the factor for an active insurer and a metric value"""
        insurer = self.get_active_insurer(insurer_id)
        return resolve_factor(insurer.rate_ranges, metric, value, insurer.minimum_amount)
