"""
Loan Statement Module

Read-only balance summaries built from the portfolio. Summaries are cached
through an injected TTLCache; the posting engine invalidates a loan's entry
after every commit that moves its balances.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, Optional
import logging

from .cache import TTLCache
from .money import ZERO
from .portfolio import PortfolioLedger, PortfolioStatus


logger = logging.getLogger("lending.statements")


def summary_cache_key(loan_id: str) -> str:
    return f"loan-summary:{loan_id}"


@dataclass(frozen=True)
class BalanceSummary:
    loan_id: str
    as_of: date
    total_charged: Decimal
    total_paid: Decimal
    outstanding: Decimal
    overdue: Decimal
    next_due_date: Optional[date]
    outstanding_by_account: Dict[str, Decimal] = field(default_factory=dict)


class LoanStatementService:
    """Builds loan balance summaries"""

    def __init__(self, portfolio: PortfolioLedger, cache: Optional[TTLCache] = None,
                 clock: Callable[[], date] = date.today):
        self.portfolio = portfolio
        self.cache = cache
        self.clock = clock

    def balance_summary(self, loan_id: str, as_of: Optional[date] = None) -> BalanceSummary:
        """
        Summary of what was charged, paid and is still owed.

        Summaries for the current date are served from the cache; an explicit
        `as_of` date is always computed.
        """
        if as_of is not None or self.cache is None:
            return self._build(loan_id, as_of or self.clock())
        return self.cache.get_or_compute(summary_cache_key(loan_id),
                                         lambda: self._build(loan_id, self.clock()))

    def _build(self, loan_id: str, as_of: date) -> BalanceSummary:
        entries = self.portfolio.entries_for_loan(loan_id)

        total_charged = ZERO
        total_paid = ZERO
        overdue = ZERO
        by_account: Dict[str, Decimal] = {}
        next_due: Optional[date] = None

        for entry in entries:
            total_charged += entry.charge_amount
            total_paid += entry.payment_amount
            if entry.status != PortfolioStatus.OPEN or entry.balance <= ZERO:
                continue
            by_account[entry.gl_account_id] = by_account.get(entry.gl_account_id, ZERO) + entry.balance
            if entry.due_date < as_of:
                overdue += entry.balance
            elif next_due is None or entry.due_date < next_due:
                next_due = entry.due_date

        logger.debug("Balance summary built for loan %s", loan_id)
        return BalanceSummary(
            loan_id=loan_id,
            as_of=as_of,
            total_charged=total_charged,
            total_paid=total_paid,
            outstanding=sum(by_account.values(), ZERO),
            overdue=overdue,
            next_due_date=next_due,
            outstanding_by_account=by_account,
        )
