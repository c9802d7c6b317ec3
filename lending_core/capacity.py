"""
Payment Capacity Module

Advisory comparison of a borrower's net disposable income against the worst
installment of a schedule. The verdict never blocks persistence; callers
surface the warning.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .errors import ValidationError
from .money import ZERO, Number, format_money, round_money, to_decimal


@dataclass(frozen=True)
class CapacityAssessment:
    """Outcome of comparing capacity against the maximum installment payment"""
    can_pay: bool
    net_capacity: Decimal
    max_installment_payment: Decimal
    margin: Decimal = ZERO       # Capacity left over when the borrower can pay
    shortfall: Decimal = ZERO    # Amount missing when the borrower cannot pay
    warning: Optional[str] = None


def _non_negative(name: str, value: Number) -> Decimal:
    amount = to_decimal(value)
    if amount < ZERO:
        raise ValidationError(f"{name} cannot be negative", {name: str(amount)})
    return amount


def net_capacity(salary: Number, other_income: Number = ZERO, other_credits: Number = ZERO) -> Decimal:
    """Salary + other income - other credit obligations, floored at zero"""
    total = (_non_negative("salary", salary)
             + _non_negative("other_income", other_income)
             - _non_negative("other_credits", other_credits))
    return round_money(max(total, ZERO))


def assess_capacity(salary: Number, other_income: Number, other_credits: Number,
                    max_installment_payment: Number) -> CapacityAssessment:
    """
    Compare net capacity against the schedule's maximum installment payment.

    The borrower can pay when the maximum installment does not exceed the
    net capacity.
    """
    capacity = net_capacity(salary, other_income, other_credits)
    max_payment = _non_negative("max_installment_payment", max_installment_payment)
    gap = round_money(capacity - max_payment)

    if gap >= ZERO:
        return CapacityAssessment(
            can_pay=True,
            net_capacity=capacity,
            max_installment_payment=max_payment,
            margin=gap,
        )

    return CapacityAssessment(
        can_pay=False,
        net_capacity=capacity,
        max_installment_payment=max_payment,
        shortfall=-gap,
        warning=(f"Maximum installment {format_money(max_payment)} exceeds payment "
                 f"capacity {format_money(capacity)} by {format_money(-gap)}"),
    )
