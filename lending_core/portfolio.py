"""
Loan Portfolio Module

Open ledger lines of a loan: one row per (GL account, loan, installment)
holding what was charged, what was paid and the balance still owed. Balances
only move through deltas applied inside the posting unit of work.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple
import logging

from .errors import InvariantViolationError
from .money import EPSILON, ZERO, is_negligible
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("lending.portfolio")


class PortfolioStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class PortfolioEntry(StorageRecord):
    """Outstanding ledger line for one loan, installment and account"""
    gl_account_id: str
    loan_id: str
    installment_number: int
    due_date: date
    charge_amount: Decimal = ZERO
    payment_amount: Decimal = ZERO
    balance: Decimal = ZERO
    status: PortfolioStatus = PortfolioStatus.OPEN
    last_movement_date: Optional[date] = None

    @property
    def key(self) -> Tuple[str, str, int]:
        return self.gl_account_id, self.loan_id, self.installment_number


@dataclass(frozen=True)
class PortfolioDelta:
    """Change to one portfolio line: new charges and/or payments"""
    gl_account_id: str
    loan_id: str
    installment_number: int
    due_date: date
    charge_delta: Decimal = ZERO
    payment_delta: Decimal = ZERO

    @property
    def key(self) -> Tuple[str, str, int]:
        return self.gl_account_id, self.loan_id, self.installment_number


def entry_id(gl_account_id: str, loan_id: str, installment_number: int) -> str:
    return f"{loan_id}:{installment_number:04d}:{gl_account_id}"


class PortfolioLedger:
    """Reads and updates portfolio entries"""

    def __init__(self, storage: StorageInterface, epsilon: Decimal = EPSILON):
        self.storage = storage
        self.epsilon = epsilon
        self.table_name = "portfolio_entries"

    def get_entry(self, gl_account_id: str, loan_id: str, installment_number: int) -> Optional[PortfolioEntry]:
        data = self.storage.load(self.table_name, entry_id(gl_account_id, loan_id, installment_number))
        return PortfolioEntry.from_dict(data) if data else None

    def entries_for_loan(self, loan_id: str) -> List[PortfolioEntry]:
        entries = [PortfolioEntry.from_dict(d)
                   for d in self.storage.find(self.table_name, {"loan_id": loan_id})]
        return sorted(entries, key=lambda e: (e.due_date, e.installment_number, e.id))

    def open_entries(self, loan_id: str) -> List[PortfolioEntry]:
        """Open entries with a positive balance, oldest obligation first"""
        return [e for e in self.entries_for_loan(loan_id)
                if e.status == PortfolioStatus.OPEN and e.balance > ZERO]

    def outstanding(self, loan_id: str) -> Decimal:
        return sum((e.balance for e in self.open_entries(loan_id)), ZERO)

    def apply_deltas(self, deltas: Iterable[PortfolioDelta], movement_date: date) -> List[PortfolioEntry]:
        """
        Merge deltas by (account, loan, installment) and apply them.

        Raises:
            InvariantViolationError: A balance would become negative
        """
        merged: Dict[Tuple[str, str, int], PortfolioDelta] = {}
        for delta in deltas:
            current = merged.get(delta.key)
            if current is None:
                merged[delta.key] = delta
            else:
                merged[delta.key] = PortfolioDelta(
                    gl_account_id=delta.gl_account_id,
                    loan_id=delta.loan_id,
                    installment_number=delta.installment_number,
                    due_date=current.due_date,
                    charge_delta=current.charge_delta + delta.charge_delta,
                    payment_delta=current.payment_delta + delta.payment_delta,
                )

        now = datetime.now(timezone.utc)
        updated = []
        for key, delta in merged.items():
            entry = self.get_entry(*key)
            if entry is None:
                entry = PortfolioEntry(
                    id=entry_id(*key),
                    created_at=now,
                    updated_at=now,
                    gl_account_id=delta.gl_account_id,
                    loan_id=delta.loan_id,
                    installment_number=delta.installment_number,
                    due_date=delta.due_date,
                )

            entry.charge_amount += delta.charge_delta
            entry.payment_amount += delta.payment_delta
            entry.balance = entry.charge_amount - entry.payment_amount
            if entry.balance < ZERO:
                logger.critical("Portfolio entry %s would go negative: %s", entry.id, entry.balance)
                raise InvariantViolationError(
                    f"Portfolio entry {entry.id} balance would become negative",
                    {"entry_id": entry.id, "balance": str(entry.balance)}
                )
            entry.status = PortfolioStatus.CLOSED if is_negligible(entry.balance, self.epsilon) \
                else PortfolioStatus.OPEN
            entry.last_movement_date = movement_date
            entry.updated_at = now
            self.storage.save(self.table_name, entry.id, entry.to_dict())
            updated.append(entry)

        return updated
