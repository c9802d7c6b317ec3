"""
Payment Posting Module

Applies cash receipts against a loan's open portfolio entries, oldest
obligation first, and writes the balanced receipt document. A posting either
updates payment, ledger, portfolio and loan status together or changes
nothing. Voiding a payment reverses all of those effects.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple
import logging
import random
import uuid

from .cache import TTLCache
from .config import LendingConfig, get_config
from .errors import (
    ConflictError, InsufficientBalanceError, NotFoundError, RoundingResidueError,
    ValidationError
)
from .ledger import (
    AccountingLedger, EntryLine, EntryNature, EntrySourceType, ProcessType, document_code
)
from .loans import LoanManager, LoanStatus
from .logging_config import log_action
from .money import ZERO, Number, is_negligible, round_money, to_decimal
from .portfolio import PortfolioDelta, PortfolioEntry, PortfolioLedger
from .reference import ReferenceKind, ReferenceRegistry
from .statements import summary_cache_key
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("lending.payments")


class PaymentStatus(Enum):
    PAID = "paid"
    VOID = "void"


@dataclass
class TenderAllocation:
    """How part of a receipt was tendered (cash, transfer, check...)"""
    tender_type_id: str
    amount: Decimal
    reference: Optional[str] = None


@dataclass
class LoanPayment(StorageRecord):
    """Accepted cash receipt; only status and note change after creation"""
    payment_sequence: int
    payment_number: str
    loan_id: str
    receipt_type_id: str
    payment_date: date
    amount: Decimal
    applied_amount: Decimal
    overpaid_amount: Decimal
    gl_account_id: str
    accounting_document_code: str
    status: PaymentStatus = PaymentStatus.PAID
    status_note: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_by: Optional[str] = None
    void_document_code: Optional[str] = None
    voided_by: Optional[str] = None


@dataclass
class PaymentMethodAllocation(StorageRecord):
    payment_id: str
    tender_type_id: str
    amount: Decimal
    reference: Optional[str] = None


@dataclass(frozen=True)
class PaymentApplication:
    """Part of a payment applied to one portfolio entry"""
    gl_account_id: str
    installment_number: int
    due_date: date
    amount: Decimal


def allocate_payment(entries: Sequence[PortfolioEntry], amount: Decimal) -> Tuple[List[PaymentApplication], Decimal]:
    """
    Walk ordered open entries applying as much of `amount` as each balance
    allows. Returns the applications and the amount left unapplied.
    """
    applications = []
    remaining = amount
    for entry in entries:
        if remaining <= ZERO:
            break
        if entry.balance <= ZERO:
            continue
        applied = min(entry.balance, remaining)
        applications.append(PaymentApplication(
            gl_account_id=entry.gl_account_id,
            installment_number=entry.installment_number,
            due_date=entry.due_date,
            amount=applied,
        ))
        remaining -= applied
    return applications, remaining


class PaymentPostingEngine:
    """
    Posts and voids loan payments
    """

    def __init__(
        self,
        storage: StorageInterface,
        loans: LoanManager,
        references: ReferenceRegistry,
        ledger: AccountingLedger,
        portfolio: PortfolioLedger,
        cache: Optional[TTLCache] = None,
        settings: Optional[LendingConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.storage = storage
        self.loans = loans
        self.references = references
        self.ledger = ledger
        self.portfolio = portfolio
        self.cache = cache
        self.settings = settings or get_config()
        self.clock = clock
        self.epsilon = Decimal(self.settings.balance_epsilon)
        self.active_statuses = {LoanStatus(s) for s in self.settings.payment_active_statuses}

        self.payments_table = "loan_payments"
        self.allocations_table = "loan_payment_methods"

    def post_payment(
        self,
        loan_id: str,
        receipt_type_id: str,
        payment_date: date,
        amount: Number,
        allocations: List[TenderAllocation],
        user_id: str,
        idempotency_key: Optional[str] = None
    ) -> LoanPayment:
        """
        Post a cash receipt against a loan

        Args:
            loan_id: Loan receiving the payment
            receipt_type_id: Receipt type; must be active and enabled for the user
            payment_date: Date of the receipt
            amount: Amount received
            allocations: Tender methods; their amounts must sum to `amount`
            user_id: Acting user
            idempotency_key: Optional caller token; a repeat post with the
                same key for the same loan returns the original payment

        Returns:
            The LoanPayment (the original one on an idempotent repeat)

        Raises:
            ValidationError: Bad amount or allocations, receipt type not enabled
            NotFoundError: Loan, receipt type or tender type missing/inactive
            ConflictError: Loan not in an active status
            InsufficientBalanceError: Nothing is owed on the loan
            RoundingResidueError: Part of the amount could not be applied
            LedgerImbalanceError: The receipt document does not balance
        """
        amount = to_decimal(amount)
        self._validate_amounts(amount, allocations)

        if idempotency_key:
            existing = self._find_by_idempotency_key(loan_id, idempotency_key)
            if existing:
                logger.info("Idempotent repeat of payment %s", existing.id)
                return existing

        receipt_type = self.references.require_receipt_type_for_user(receipt_type_id, user_id)
        for allocation in allocations:
            self.references.require_active(ReferenceKind.TENDER_TYPE, allocation.tender_type_id)

        with self.storage.atomic():
            loan = self.loans.lock_loan(loan_id)

            if idempotency_key:
                existing = self._find_by_idempotency_key(loan_id, idempotency_key)
                if existing:
                    return existing

            if loan.status not in self.active_statuses:
                raise ConflictError(f"Loan {loan_id} is {loan.status.value} and cannot take payments",
                                    {"loan_id": loan_id, "status": loan.status.value})

            open_entries = self.portfolio.open_entries(loan_id)
            if not open_entries:
                raise InsufficientBalanceError(f"Loan {loan_id} has no open balance",
                                               {"loan_id": loan_id})

            outstanding = sum((e.balance for e in open_entries), ZERO)
            to_apply = min(amount, outstanding)
            applications, remaining = allocate_payment(open_entries, to_apply)
            if remaining > self.epsilon:
                logger.critical("Unapplied residue %s on loan %s", remaining, loan_id)
                raise RoundingResidueError(
                    f"Residue {remaining} could not be applied to loan {loan_id}",
                    {"loan_id": loan_id, "residue": str(remaining)}
                )
            applied = to_apply - remaining
            overpaid = amount - applied

            sequence = self.storage.next_sequence(self.payments_table)
            code = document_code(ProcessType.RECEIPT, sequence)
            now = self.clock()
            payment = LoanPayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                payment_sequence=sequence,
                payment_number=self._unique_payment_number(receipt_type.code),
                loan_id=loan_id,
                receipt_type_id=receipt_type.id,
                payment_date=payment_date,
                amount=amount,
                applied_amount=applied,
                overpaid_amount=overpaid,
                gl_account_id=receipt_type.gl_account_id,
                accounting_document_code=code,
                idempotency_key=idempotency_key,
                created_by=user_id,
            )
            self._save_payment(payment)
            for allocation in allocations:
                row = PaymentMethodAllocation(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    payment_id=payment.id,
                    tender_type_id=allocation.tender_type_id,
                    amount=to_decimal(allocation.amount),
                    reference=allocation.reference,
                )
                self.storage.save(self.allocations_table, row.id, row.to_dict())

            lines = [EntryLine(receipt_type.gl_account_id, EntryNature.DEBIT, applied,
                               third_party_id=loan.third_party_id, description="Receipt")]
            for application in applications:
                lines.append(EntryLine(
                    application.gl_account_id, EntryNature.CREDIT, application.amount,
                    third_party_id=loan.third_party_id,
                    installment_number=application.installment_number,
                    due_date=application.due_date,
                    description="Payment applied",
                ))
            self.ledger.post_document(ProcessType.RECEIPT, code, payment_date,
                                      EntrySourceType.LOAN_PAYMENT, payment.id, lines,
                                      loan_id=loan_id)

            self.portfolio.apply_deltas(
                [PortfolioDelta(a.gl_account_id, loan_id, a.installment_number, a.due_date,
                                payment_delta=a.amount) for a in applications],
                payment_date
            )

            if loan.last_payment_date is None or payment_date > loan.last_payment_date:
                loan.last_payment_date = payment_date
            if is_negligible(self.portfolio.outstanding(loan_id), self.epsilon):
                self.loans.change_status(loan, LoanStatus.PAID, payment_date, user_id,
                                         note="Loan paid in full",
                                         metadata={"payment_id": payment.id})
            else:
                self.loans.save_loan(loan)

        self._invalidate(loan_id)
        log_action(logger, "info", "Payment posted", user_id=user_id, action="post_payment",
                   resource="loan_payments", loan_id=loan_id, document_code=code,
                   extra={"payment_id": payment.id, "amount": str(amount),
                          "applied": str(applied), "overpaid": str(overpaid)})
        return payment

    def void_payment(self, payment_id: str, note: str, user_id: Optional[str] = None,
                     void_date: Optional[date] = None) -> LoanPayment:
        """
        Void a payment and reverse its effects: mirror the receipt document,
        restore portfolio balances, recompute the last payment date and
        reopen a PAID loan.

        Raises:
            ValidationError: Empty note
            NotFoundError: Payment missing
            ConflictError: Payment already void
        """
        if not note or not note.strip():
            raise ValidationError("A note is required to void a payment")
        void_date = void_date or self.clock().date()

        with self.storage.atomic():
            payment = self.get_payment(payment_id)
            if not payment:
                raise NotFoundError(f"Payment {payment_id} not found", {"payment_id": payment_id})
            loan = self.loans.lock_loan(payment.loan_id)
            payment = self.get_payment(payment_id)
            if payment.status == PaymentStatus.VOID:
                raise ConflictError(f"Payment {payment.payment_number} is already void",
                                    {"payment_id": payment_id})

            original = self.ledger.get_document(payment.accounting_document_code, payment.id)
            void_code = document_code(ProcessType.RECEIPT_VOID, payment.payment_sequence)
            self.ledger.reverse_document(payment.accounting_document_code, void_code, void_date,
                                         EntrySourceType.LOAN_PAYMENT_VOID, payment.id)

            deltas = [
                PortfolioDelta(e.gl_account_id, loan.id, e.installment_number, e.due_date,
                               payment_delta=-e.amount)
                for e in original
                if e.nature == EntryNature.CREDIT and e.installment_number is not None
            ]
            self.portfolio.apply_deltas(deltas, void_date)

            payment.status = PaymentStatus.VOID
            payment.status_note = note.strip()
            payment.void_document_code = void_code
            payment.voided_by = user_id
            payment.updated_at = self.clock()
            self._save_payment(payment)

            loan.last_payment_date = self._last_payment_date(loan.id)
            if loan.status == LoanStatus.PAID and not is_negligible(
                    self.portfolio.outstanding(loan.id), self.epsilon):
                self.loans.change_status(loan, LoanStatus.ACTIVE, void_date, user_id,
                                         note="Payment voided, balance reopened",
                                         metadata={"payment_id": payment.id})
            else:
                self.loans.save_loan(loan)

        self._invalidate(loan.id)
        log_action(logger, "warning", "Payment voided", user_id=user_id, action="void_payment",
                   resource="loan_payments", loan_id=loan.id, document_code=void_code,
                   extra={"payment_id": payment.id, "note": payment.status_note})
        return payment

    def get_payment(self, payment_id: str) -> Optional[LoanPayment]:
        data = self.storage.load(self.payments_table, payment_id)
        return LoanPayment.from_dict(data) if data else None

    def get_payments_for_loan(self, loan_id: str) -> List[LoanPayment]:
        payments = [LoanPayment.from_dict(d)
                    for d in self.storage.find(self.payments_table, {"loan_id": loan_id})]
        return sorted(payments, key=lambda p: p.payment_sequence)

    def get_allocations(self, payment_id: str) -> List[PaymentMethodAllocation]:
        return [PaymentMethodAllocation.from_dict(d)
                for d in self.storage.find(self.allocations_table, {"payment_id": payment_id})]

    def _validate_amounts(self, amount: Decimal, allocations: List[TenderAllocation]) -> None:
        if amount <= ZERO:
            raise ValidationError("Payment amount must be positive", {"amount": str(amount)})
        if round_money(amount) != amount:
            raise ValidationError("Payment amount has sub-cent precision", {"amount": str(amount)})
        if not allocations:
            raise ValidationError("At least one tender allocation is required")
        total = ZERO
        for allocation in allocations:
            allocated = to_decimal(allocation.amount)
            if allocated <= ZERO:
                raise ValidationError("Tender allocation amounts must be positive")
            total += allocated
        if total != amount:
            raise ValidationError(
                f"Tender allocations total {total} but payment amount is {amount}",
                {"allocated": str(total), "amount": str(amount)}
            )

    def _find_by_idempotency_key(self, loan_id: str, key: str) -> Optional[LoanPayment]:
        matches = self.storage.find(self.payments_table, {"loan_id": loan_id, "idempotency_key": key})
        return LoanPayment.from_dict(matches[0]) if matches else None

    def _unique_payment_number(self, prefix: str) -> str:
        """Receipt prefix + yymmddHHMMSS + three random digits, retried until unused"""
        normalized = prefix.strip().upper()[:5]
        for _ in range(self.settings.payment_number_attempts):
            candidate = f"{normalized}{self.clock():%y%m%d%H%M%S}{random.randint(100, 999)}"
            if not self.storage.find(self.payments_table, {"payment_number": candidate}):
                return candidate
        raise ConflictError("Could not generate a unique payment number")

    def _last_payment_date(self, loan_id: str) -> Optional[date]:
        dates = [p.payment_date for p in self.get_payments_for_loan(loan_id)
                 if p.status == PaymentStatus.PAID]
        return max(dates) if dates else None

    def _invalidate(self, loan_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate(summary_cache_key(loan_id))

    def _save_payment(self, payment: LoanPayment) -> None:
        self.storage.save(self.payments_table, payment.id, payment.to_dict())
