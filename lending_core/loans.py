"""
Loan Module

Loan aggregate: the loan record, its planned installments and its status
history. Loans are created at approval in GENERATED status and liquidated to
ACTIVE, at which point the schedule is booked to the accounting ledger and
charged to the portfolio.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import uuid

from .amortization import FinancingMode, Schedule
from .errors import ConflictError, NotFoundError, ValidationError
from .ledger import (
    AccountingLedger, EntryLine, EntryNature, EntrySourceType, ProcessType, document_code
)
from .logging_config import log_action
from .money import ZERO
from .portfolio import PortfolioDelta, PortfolioLedger
from .products import ProductCatalog
from .reference import ReferenceRegistry
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("lending.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    GENERATED = "generated"    # Created at approval, not yet booked
    ACTIVE = "active"          # Liquidated, accepting payments
    ACCOUNTED = "accounted"    # Closed into an accounting period, accepting payments
    PAID = "paid"              # Open balance reached zero
    VOID = "void"              # Annulled


@dataclass
class Loan(StorageRecord):
    """Loan created from exactly one approved application"""
    loan_number: int
    credit_number: str
    loan_application_id: str
    third_party_id: str
    product_id: str
    principal: Decimal
    rate_percent: Decimal
    financing_mode: FinancingMode
    installment_count: int
    payment_frequency_id: str
    first_collection_date: date
    credit_start_date: date
    maturity_date: date
    initial_total_amount: Decimal
    insurance_value: Decimal = ZERO
    insurer_id: Optional[str] = None
    payee_third_party_id: Optional[str] = None
    agreement_id: Optional[str] = None
    repayment_method_id: Optional[str] = None
    guarantee_type_id: Optional[str] = None
    affiliation_office_id: Optional[str] = None
    disbursement_date: Optional[date] = None
    status: LoanStatus = LoanStatus.GENERATED
    status_date: Optional[date] = None
    last_payment_date: Optional[date] = None


@dataclass
class Installment(StorageRecord):
    """Planned installment; never mutated after approval"""
    loan_id: str
    number: int
    due_date: date
    days: int
    opening_balance: Decimal
    principal: Decimal
    interest: Decimal
    insurance: Decimal
    payment: Decimal
    closing_balance: Decimal


@dataclass
class LoanStatusHistory(StorageRecord):
    loan_id: str
    from_status: Optional[LoanStatus]
    to_status: LoanStatus
    changed_by: Optional[str] = None
    note: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class LoanManager:
    """
    Persists loans and their installments and drives loan status changes
    """

    def __init__(
        self,
        storage: StorageInterface,
        products: ProductCatalog,
        references: ReferenceRegistry,
        ledger: AccountingLedger,
        portfolio: PortfolioLedger
    ):
        self.storage = storage
        self.products = products
        self.references = references
        self.ledger = ledger
        self.portfolio = portfolio

        self.loans_table = "loans"
        self.installments_table = "loan_installments"
        self.history_table = "loan_status_history"

    def insert_loan(self, loan: Loan, schedule: Schedule, changed_by: Optional[str] = None) -> List[Installment]:
        """
        Save a new loan, its installments and its first status history row.
        Runs inside the caller's unit of work.
        """
        self._save_loan(loan)
        self.record_status_change(loan, None, loan.status, changed_by, note="Loan generated")

        installments = []
        for planned in schedule.installments:
            installment = Installment(
                id=f"{loan.id}:{planned.number:04d}",
                created_at=loan.created_at,
                updated_at=loan.created_at,
                loan_id=loan.id,
                number=planned.number,
                due_date=planned.due_date,
                days=planned.days,
                opening_balance=planned.opening_balance,
                principal=planned.principal,
                interest=planned.interest,
                insurance=planned.insurance,
                payment=planned.payment,
                closing_balance=planned.closing_balance,
            )
            self.storage.save(self.installments_table, installment.id, installment.to_dict())
            installments.append(installment)
        return installments

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found", {"loan_id": loan_id})
        return loan

    def get_loan_for_application(self, application_id: str) -> Optional[Loan]:
        matches = self.storage.find(self.loans_table, {"loan_application_id": application_id})
        return Loan.from_dict(matches[0]) if matches else None

    def get_installments(self, loan_id: str) -> List[Installment]:
        installments = [Installment.from_dict(d)
                        for d in self.storage.find(self.installments_table, {"loan_id": loan_id})]
        return sorted(installments, key=lambda i: i.number)

    def get_status_history(self, loan_id: str) -> List[LoanStatusHistory]:
        return [LoanStatusHistory.from_dict(d)
                for d in self.storage.find(self.history_table, {"loan_id": loan_id})]

    def lock_loan(self, loan_id: str) -> Loan:
        """Lock the loan row for the rest of the unit of work and reload it"""
        self.storage.lock_for_update(self.loans_table, loan_id)
        return self.require_loan(loan_id)

    def change_status(self, loan: Loan, to_status: LoanStatus, status_date: date,
                      changed_by: Optional[str] = None, note: Optional[str] = None,
                      metadata: Optional[Dict[str, Any]] = None) -> Loan:
        """Move a loan to a new status and append a history row"""
        from_status = loan.status
        loan.status = to_status
        loan.status_date = status_date
        loan.updated_at = datetime.now(timezone.utc)
        self._save_loan(loan)
        self.record_status_change(loan, from_status, to_status, changed_by, note, metadata)
        logger.info("Loan %s status %s -> %s", loan.id,
                    from_status.value if from_status else None, to_status.value)
        return loan

    def record_status_change(self, loan: Loan, from_status: Optional[LoanStatus],
                             to_status: LoanStatus, changed_by: Optional[str] = None,
                             note: Optional[str] = None,
                             metadata: Optional[Dict[str, Any]] = None) -> LoanStatusHistory:
        now = datetime.now(timezone.utc)
        row = LoanStatusHistory(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            from_status=from_status,
            to_status=to_status,
            changed_by=changed_by,
            note=note,
            metadata=metadata or {},
        )
        self.storage.save(self.history_table, row.id, row.to_dict())
        return row

    def save_loan(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self._save_loan(loan)

    def liquidate_loan(self, loan_id: str, liquidation_date: date,
                       user_id: Optional[str] = None) -> Loan:
        """
        Book a GENERATED loan: post the liquidation document, charge the
        portfolio and move the loan to ACTIVE, all in one unit of work.

        Args:
            loan_id: Loan to liquidate
            liquidation_date: Accounting date of the liquidation
            user_id: Acting user

        Returns:
            The ACTIVE loan

        Raises:
            NotFoundError: Loan or one of the product's accounts missing
            ConflictError: Loan is not GENERATED
            ValidationError: Product accounts not configured
        """
        with self.storage.atomic():
            loan = self.lock_loan(loan_id)
            if loan.status != LoanStatus.GENERATED:
                raise ConflictError(f"Loan {loan_id} is {loan.status.value}, only generated loans can be liquidated",
                                    {"loan_id": loan_id, "status": loan.status.value})

            product = self.products.get_product(loan.product_id)
            if not product:
                raise NotFoundError(f"Credit product {loan.product_id} not found")

            installments = self.get_installments(loan.id)
            pairs = [
                ('principal', product.principal_receivable_account_id, product.disbursement_payable_account_id),
                ('interest', product.interest_receivable_account_id, product.interest_income_account_id),
                ('insurance', product.insurance_receivable_account_id, product.insurance_payable_account_id),
            ]

            lines: List[EntryLine] = []
            deltas: List[PortfolioDelta] = []
            for component, debit_account_id, credit_account_id in pairs:
                component_total = sum((getattr(i, component) for i in installments), ZERO)
                if component_total <= ZERO:
                    continue
                if not debit_account_id or not credit_account_id:
                    raise ValidationError(
                        f"Product {product.code} has no accounts configured for {component}",
                        {"product_id": product.id, "component": component}
                    )
                debit_account = self.references.require_gl_account(debit_account_id)
                self.references.require_gl_account(credit_account_id)

                for installment in installments:
                    amount = getattr(installment, component)
                    if amount <= ZERO:
                        continue
                    common = dict(third_party_id=loan.third_party_id,
                                  installment_number=installment.number,
                                  due_date=installment.due_date)
                    lines.append(EntryLine(debit_account_id, EntryNature.DEBIT, amount,
                                           description=f"{component} receivable", **common))
                    lines.append(EntryLine(credit_account_id, EntryNature.CREDIT, amount,
                                           description=f"{component} liquidation", **common))
                    if debit_account.is_receivable:
                        deltas.append(PortfolioDelta(
                            gl_account_id=debit_account_id,
                            loan_id=loan.id,
                            installment_number=installment.number,
                            due_date=installment.due_date,
                            charge_delta=amount,
                        ))

            code = document_code(ProcessType.LIQUIDATION, loan.loan_number)
            self.ledger.post_document(ProcessType.LIQUIDATION, code, liquidation_date,
                                      EntrySourceType.LOAN_APPROVAL, loan.id, lines, loan_id=loan.id)
            self.portfolio.apply_deltas(deltas, liquidation_date)

            if loan.disbursement_date is None:
                loan.disbursement_date = liquidation_date
            self.change_status(loan, LoanStatus.ACTIVE, liquidation_date, user_id,
                               note="Loan liquidated", metadata={"document_code": code})

        log_action(logger, "info", "Loan liquidated", user_id=user_id,
                   action="liquidate_loan", resource="loans", loan_id=loan.id, document_code=code)
        return loan

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
