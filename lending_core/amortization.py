"""
Amortization Calculator Module

Pure schedule computation: (principal, rate, financing mode, day-count
convention, cadence, installment count, first payment date, insurance policy)
-> ordered installments with running balances and a summary.

Every figure is a Decimal rounded half-up to cents as each installment is
computed. The final installment absorbs any rounding residual so the schedule
closes at exactly zero. Identical inputs always produce identical output.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_CEILING
from enum import Enum
from typing import List, Optional, Tuple

from .cadence import Cadence, DayCountConvention, period_days
from .errors import ValidationError
from .insurance import FixedAmountFactor, InsuranceFactor, PercentageFactor
from .money import CENT, ZERO, RoundingMode, round_by_mode, round_money, to_decimal, Number


HUNDRED = Decimal('100')


class FinancingMode(Enum):
    """How interest is computed over the term"""
    ADD_ON = "add_on"                        # Interest once on full principal, spread evenly
    DECLINING_BALANCE = "declining_balance"  # Interest each period on the opening balance


class InsuranceAccrual(Enum):
    """Base and timing of the insurance charge"""
    FLAT = "flat"            # Original principal, every installment
    DECLINING = "declining"  # Opening balance, every installment
    ONE_TIME = "one_time"    # Original principal, first installment only


@dataclass(frozen=True)
class InsurancePolicy:
    """Insurance terms applied by the calculator"""
    rate_percent: Decimal = ZERO
    fixed_amount: Decimal = ZERO
    minimum_amount: Decimal = ZERO
    accrual: InsuranceAccrual = InsuranceAccrual.FLAT

    @classmethod
    def from_factor(cls, factor: Optional[InsuranceFactor],
                    accrual: InsuranceAccrual = InsuranceAccrual.FLAT) -> 'InsurancePolicy':
        """Build a policy from a resolved insurer factor (None means no insurance)"""
        if factor is None:
            return cls(accrual=accrual)
        if isinstance(factor, FixedAmountFactor):
            return cls(fixed_amount=factor.amount, accrual=accrual)
        if isinstance(factor, PercentageFactor):
            return cls(rate_percent=factor.rate_percent,
                       minimum_amount=factor.minimum_amount, accrual=accrual)
        raise TypeError(f"Unknown insurance factor {type(factor).__name__}")

    def validate(self) -> None:
        for name in ('rate_percent', 'fixed_amount', 'minimum_amount'):
            if to_decimal(getattr(self, name)) < ZERO:
                raise ValidationError(f"Insurance {name} cannot be negative",
                                      {name: str(getattr(self, name))})

    def charge(self, installment_number: int, original_principal: Decimal,
               opening_balance: Decimal) -> Decimal:
        """Insurance for one installment, rounded, with the minimum floor applied"""
        if self.accrual == InsuranceAccrual.ONE_TIME and installment_number > 1:
            return ZERO

        if self.fixed_amount > ZERO:
            insurance = self.fixed_amount
        else:
            base = opening_balance if self.accrual == InsuranceAccrual.DECLINING else original_principal
            insurance = base * self.rate_percent / HUNDRED

        if self.minimum_amount > ZERO and insurance > ZERO:
            insurance = max(insurance, self.minimum_amount)

        return round_money(insurance)


NO_INSURANCE = InsurancePolicy()


@dataclass(frozen=True)
class ScheduleInstallment:
    """One planned installment"""
    number: int
    due_date: date
    days: int
    opening_balance: Decimal
    principal: Decimal
    interest: Decimal
    insurance: Decimal
    payment: Decimal
    closing_balance: Decimal


@dataclass(frozen=True)
class ScheduleSummary:
    principal: Decimal
    rate_percent: Decimal
    installment_count: int
    total_principal: Decimal
    total_interest: Decimal
    total_insurance: Decimal
    total_payment: Decimal
    first_installment_payment: Decimal
    max_installment_payment: Decimal
    min_installment_payment: Decimal


@dataclass(frozen=True)
class Schedule:
    installments: Tuple[ScheduleInstallment, ...]
    summary: ScheduleSummary

    @property
    def due_dates(self) -> List[date]:
        return [i.due_date for i in self.installments]

    @property
    def maturity_date(self) -> date:
        return self.installments[-1].due_date


def period_rates(rate_percent: Decimal, days: List[int],
                 convention: DayCountConvention) -> List[Decimal]:
    """Unrounded periodic rates: rate% / 100 x days / year base"""
    base = convention.year_base
    return [rate_percent / HUNDRED * Decimal(d) / base for d in days]


def _spread_evenly(total: Decimal, count: int) -> List[Decimal]:
    """
    Split a rounded total into `count` rounded parts; the last takes the residual.

    Parts round half-up unless that would leave the last part negative (tiny
    totals over many installments), in which case they round down.
    """
    part = round_money(total / count)
    if part * (count - 1) > total:
        part = round_by_mode(total / count, RoundingMode.DOWN)
    parts = [part] * (count - 1)
    parts.append(round_money(total - part * (count - 1)))
    return parts


def _add_on_schedule(principal: Decimal, rates: List[Decimal], dates: List[date],
                     days: List[int], insurance: InsurancePolicy) -> List[ScheduleInstallment]:
    count = len(dates)
    total_interest = round_money(principal * sum(rates, ZERO))
    principal_parts = _spread_evenly(principal, count)
    interest_parts = _spread_evenly(total_interest, count)

    installments = []
    balance = principal
    for index in range(count):
        number = index + 1
        opening = balance
        principal_part = principal_parts[index]
        interest = interest_parts[index]
        insurance_charge = insurance.charge(number, principal, opening)
        closing = opening - principal_part
        installments.append(ScheduleInstallment(
            number=number,
            due_date=dates[index],
            days=days[index],
            opening_balance=opening,
            principal=principal_part,
            interest=interest,
            insurance=insurance_charge,
            payment=principal_part + interest + insurance_charge,
            closing_balance=closing,
        ))
        balance = closing
    return installments


def _remaining_after(payment: Decimal, principal: Decimal, rates: List[Decimal],
                     insurance: InsurancePolicy) -> Optional[Decimal]:
    """
    Balance left after paying a level total `payment` every period, or None
    when the payment does not even cover interest and insurance.
    """
    balance = principal
    for index, rate in enumerate(rates):
        interest = round_money(balance * rate)
        insurance_charge = insurance.charge(index + 1, principal, balance)
        principal_part = payment - interest - insurance_charge
        if principal_part <= ZERO:
            return None
        balance -= min(principal_part, balance)
        if balance == ZERO:
            return ZERO
    return balance


def level_payment(principal: Decimal, rates: List[Decimal], insurance: InsurancePolicy) -> Decimal:
    """
    Smallest whole-cent level payment that retires the principal within the
    schedule, found by bisection over integer cents.
    """
    def settles(cents: int) -> bool:
        remaining = _remaining_after(Decimal(cents) * CENT, principal, rates, insurance)
        return remaining is not None and remaining == ZERO

    low = 0
    high = int((principal / len(rates) / CENT).to_integral_value(rounding=ROUND_CEILING))
    high = max(high, 1)
    while not settles(high):
        low = high
        high *= 2

    while high - low > 1:
        mid = (low + high) // 2
        if settles(mid):
            high = mid
        else:
            low = mid

    return Decimal(high) * CENT


def _declining_schedule(principal: Decimal, rates: List[Decimal], dates: List[date],
                        days: List[int], insurance: InsurancePolicy) -> List[ScheduleInstallment]:
    count = len(dates)
    payment_level = level_payment(principal, rates, insurance) if count > 1 else ZERO

    installments = []
    balance = principal
    for index in range(count):
        number = index + 1
        opening = balance
        interest = round_money(opening * rates[index])
        insurance_charge = insurance.charge(number, principal, opening)

        if number == count:
            principal_part = opening
        else:
            principal_part = payment_level - interest - insurance_charge
            principal_part = min(max(principal_part, ZERO), opening)

        closing = opening - principal_part
        installments.append(ScheduleInstallment(
            number=number,
            due_date=dates[index],
            days=days[index],
            opening_balance=opening,
            principal=principal_part,
            interest=interest,
            insurance=insurance_charge,
            payment=principal_part + interest + insurance_charge,
            closing_balance=closing,
        ))
        balance = closing
    return installments


def summarize(principal: Decimal, rate_percent: Decimal,
              installments: List[ScheduleInstallment]) -> ScheduleSummary:
    payments = [i.payment for i in installments]
    total_principal = sum((i.principal for i in installments), ZERO)
    total_interest = sum((i.interest for i in installments), ZERO)
    total_insurance = sum((i.insurance for i in installments), ZERO)
    return ScheduleSummary(
        principal=principal,
        rate_percent=rate_percent,
        installment_count=len(installments),
        total_principal=total_principal,
        total_interest=total_interest,
        total_insurance=total_insurance,
        total_payment=total_principal + total_interest + total_insurance,
        first_installment_payment=payments[0],
        max_installment_payment=max(payments),
        min_installment_payment=min(payments),
    )


def calculate_schedule(
    principal: Number,
    rate_percent: Number,
    financing_mode: FinancingMode,
    day_count: DayCountConvention,
    cadence: Cadence,
    installment_count: int,
    first_payment_date: date,
    insurance_policy: Optional[InsurancePolicy] = None,
    disbursement_date: Optional[date] = None,
) -> Schedule:
    """
    Calculate an installment schedule

    Args:
        principal: Amount financed, > 0
        rate_percent: Annual nominal rate in percent, >= 0
        financing_mode: ADD_ON or DECLINING_BALANCE
        day_count: Convention converting the annual rate to period rates
        cadence: Rule generating due dates
        installment_count: Number of installments, >= 1
        first_payment_date: Due date of installment 1
        insurance_policy: Insurance terms; no insurance when omitted
        disbursement_date: Start of the first period; the cadence's nominal
            period length is used when omitted

    Returns:
        Schedule with installments ordered 1..N and its summary

    Raises:
        ValidationError: For out-of-range inputs
    """
    principal = to_decimal(principal)
    rate_percent = to_decimal(rate_percent)
    insurance = insurance_policy or NO_INSURANCE

    if principal <= ZERO:
        raise ValidationError("Principal must be positive", {"principal": str(principal)})
    if not isinstance(installment_count, int) or installment_count < 1:
        raise ValidationError("Installment count must be at least 1",
                              {"installment_count": installment_count})
    if rate_percent < ZERO:
        raise ValidationError("Rate cannot be negative", {"rate_percent": str(rate_percent)})
    insurance.validate()
    if disbursement_date is not None and disbursement_date > first_payment_date:
        raise ValidationError("First payment date cannot precede the disbursement date",
                              {"disbursement_date": disbursement_date.isoformat(),
                               "first_payment_date": first_payment_date.isoformat()})

    principal = round_money(principal)
    dates = cadence.due_dates(first_payment_date, installment_count)
    days = period_days(day_count, cadence, dates, disbursement_date)
    rates = period_rates(rate_percent, days, day_count)

    if financing_mode == FinancingMode.ADD_ON:
        installments = _add_on_schedule(principal, rates, dates, days, insurance)
    elif financing_mode == FinancingMode.DECLINING_BALANCE:
        installments = _declining_schedule(principal, rates, dates, days, insurance)
    else:
        raise ValidationError(f"Unsupported financing mode: {financing_mode}")

    return Schedule(installments=tuple(installments),
                    summary=summarize(principal, rate_percent, installments))
