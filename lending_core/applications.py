"""
Loan Application Module

Application lifecycle and approval orchestration.

State machine:
    PENDING -> APPROVED | REJECTED | CANCELED

Only PENDING applications accept changes or transitions; the three target
states are terminal. Approval prices the loan, builds its schedule and
billing snapshot, then creates the loan with its installments and history
inside one unit of work.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional
import logging
import uuid

from .amortization import InsurancePolicy, Schedule, calculate_schedule
from .billing import BillingManager
from .capacity import assess_capacity
from .config import LendingConfig, get_config
from .errors import ConflictError, NotFoundError, ValidationError
from .insurance import FixedAmountFactor, InsuranceFactor, InsuranceRateType, PercentageFactor
from .loans import Loan, LoanManager, LoanStatus
from .logging_config import log_action
from .money import ZERO, Number, to_decimal
from .products import CreditProduct, ProductCatalog
from .reference import ReferenceKind, ReferenceRegistry
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("lending.applications")


class ApplicationStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELED = "canceled"


@dataclass
class LoanApplication(StorageRecord):
    """Requested credit terms and their pricing"""
    credit_number: str
    third_party_id: str
    affiliation_office_id: str
    product_id: str
    category_code: str
    installment_count: int
    requested_amount: Decimal
    payment_frequency_id: str
    financing_rate_percent: Decimal
    insurer_id: Optional[str] = None
    insurance_rate_type: Optional[InsuranceRateType] = None
    insurance_rate_percent: Decimal = ZERO
    insurance_fixed_amount: Decimal = ZERO
    insurance_minimum_amount: Decimal = ZERO
    salary: Decimal = ZERO
    other_income: Decimal = ZERO
    other_credits: Decimal = ZERO
    payment_capacity: Decimal = ZERO
    capacity_warning: Optional[str] = None
    status: ApplicationStatus = ApplicationStatus.PENDING
    status_date: Optional[date] = None
    status_note: Optional[str] = None
    rejection_reason: Optional[str] = None
    approved_amount: Optional[Decimal] = None
    first_collection_date: Optional[date] = None
    repayment_method_id: Optional[str] = None
    guarantee_type_id: Optional[str] = None
    payee_third_party_id: Optional[str] = None
    agreement_id: Optional[str] = None
    created_by: Optional[str] = None
    status_changed_by: Optional[str] = None

    def insurance_factor(self) -> Optional[InsuranceFactor]:
        if self.insurance_rate_type == InsuranceRateType.FIXED_AMOUNT:
            return FixedAmountFactor(amount=self.insurance_fixed_amount)
        if self.insurance_rate_type == InsuranceRateType.PERCENTAGE:
            return PercentageFactor(rate_percent=self.insurance_rate_percent,
                                    minimum_amount=self.insurance_minimum_amount)
        return None

    def set_insurance_factor(self, factor: Optional[InsuranceFactor]) -> None:
        self.insurance_rate_type = None
        self.insurance_rate_percent = ZERO
        self.insurance_fixed_amount = ZERO
        self.insurance_minimum_amount = ZERO
        if isinstance(factor, FixedAmountFactor):
            self.insurance_rate_type = InsuranceRateType.FIXED_AMOUNT
            self.insurance_fixed_amount = factor.amount
        elif isinstance(factor, PercentageFactor):
            self.insurance_rate_type = InsuranceRateType.PERCENTAGE
            self.insurance_rate_percent = factor.rate_percent
            self.insurance_minimum_amount = factor.minimum_amount


@dataclass
class ApplicationStatusHistory(StorageRecord):
    application_id: str
    from_status: Optional[ApplicationStatus]
    to_status: ApplicationStatus
    changed_by: Optional[str] = None
    note: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ApprovalInputs:
    """Terms fixed by the approver"""
    approved_amount: Decimal
    first_collection_date: date
    repayment_method_id: str
    guarantee_type_id: str
    payee_third_party_id: str
    approved_by: str
    agreement_id: Optional[str] = None
    disbursement_date: Optional[date] = None
    approval_date: Optional[date] = None


UPDATABLE_FIELDS = {
    'product_id', 'category_code', 'installment_count', 'requested_amount',
    'payment_frequency_id', 'insurer_id', 'affiliation_office_id',
    'salary', 'other_income', 'other_credits',
}


class LoanApplicationService:
    """
    Creates, updates and resolves loan applications
    """

    def __init__(
        self,
        storage: StorageInterface,
        products: ProductCatalog,
        references: ReferenceRegistry,
        billing: BillingManager,
        loans: LoanManager,
        settings: Optional[LendingConfig] = None,
        clock: Callable[[], date] = date.today
    ):
        self.storage = storage
        self.products = products
        self.references = references
        self.billing = billing
        self.loans = loans
        self.settings = settings or get_config()
        self.clock = clock

        self.table_name = "loan_applications"
        self.history_table = "loan_application_status_history"

    def create_application(
        self,
        third_party_id: str,
        affiliation_office_id: str,
        product_id: str,
        category_code: str,
        installment_count: int,
        requested_amount: Number,
        payment_frequency_id: str,
        insurer_id: Optional[str] = None,
        salary: Number = ZERO,
        other_income: Number = ZERO,
        other_credits: Number = ZERO,
        created_by: Optional[str] = None
    ) -> LoanApplication:
        """
        Create a PENDING application priced from the product configuration.

        The capacity check is advisory: a borrower who cannot pay still gets
        an application, with `capacity_warning` set.

        Raises:
            ValidationError: Invalid amounts or counts
            NotFoundError: Product, category tier, frequency, insurer or
                reference entity missing or inactive
            NoApplicableRangeError: No insurer range covers the request
        """
        self.references.require_active(ReferenceKind.THIRD_PARTY, third_party_id)
        self.references.require_active(ReferenceKind.OFFICE, affiliation_office_id)

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            sequence = self.storage.next_sequence("credit_numbers")
            application = LoanApplication(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                credit_number=f"CR{sequence:08d}",
                third_party_id=third_party_id,
                affiliation_office_id=affiliation_office_id,
                product_id=product_id,
                category_code=category_code,
                installment_count=installment_count,
                requested_amount=to_decimal(requested_amount),
                payment_frequency_id=payment_frequency_id,
                financing_rate_percent=ZERO,
                insurer_id=insurer_id,
                salary=to_decimal(salary),
                other_income=to_decimal(other_income),
                other_credits=to_decimal(other_credits),
                status_date=self.clock(),
                created_by=created_by,
            )
            self._price(application)
            self._save_application(application)
            self._record_status_change(application, None, ApplicationStatus.PENDING, created_by)

        log_action(logger, "info", "Loan application created", user_id=created_by,
                   action="create_application", resource="loan_applications",
                   extra={"application_id": application.id,
                          "capacity_warning": application.capacity_warning})
        return application

    def update_application(self, application_id: str, updated_by: Optional[str] = None,
                           **changes: Any) -> LoanApplication:
        """
        Change requested terms of a PENDING application and re-price it

        Raises:
            ConflictError: Application is not PENDING
            ValidationError: Unknown field
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        with self.storage.atomic():
            application = self._require_pending(application_id)
            for name, value in changes.items():
                if name in ('requested_amount', 'salary', 'other_income', 'other_credits'):
                    value = to_decimal(value)
                setattr(application, name, value)
            if 'affiliation_office_id' in changes:
                self.references.require_active(ReferenceKind.OFFICE, application.affiliation_office_id)
            self._price(application)
            application.updated_at = datetime.now(timezone.utc)
            self._save_application(application)

        logger.info("Loan application %s updated by %s", application_id, updated_by)
        return application

    def reject_application(self, application_id: str, reason: str,
                           user_id: Optional[str] = None) -> LoanApplication:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        return self._close(application_id, ApplicationStatus.REJECTED, reason.strip(), user_id)

    def cancel_application(self, application_id: str, note: str,
                           user_id: Optional[str] = None) -> LoanApplication:
        if not note or not note.strip():
            raise ValidationError("A cancellation note is required")
        return self._close(application_id, ApplicationStatus.CANCELED, note.strip(), user_id)

    def approve_application(self, application_id: str, inputs: ApprovalInputs) -> Loan:
        """
        Approve a PENDING application and create its loan

        Every precondition is checked before anything is written. The loan,
        its installments, its billing snapshot and both status history rows
        are then written in one unit of work.

        Args:
            application_id: Application to approve
            inputs: Approved amount, first collection date and references

        Returns:
            The created Loan in GENERATED status

        Raises:
            NotFoundError: Application or a referenced entity missing/inactive
            ConflictError: Application not PENDING or a loan already exists
            ValidationError: Amount, cadence, lead time, installment count or
                billing configuration invalid
        """
        application = self.get_application(application_id)
        if not application:
            raise NotFoundError(f"Loan application {application_id} not found")
        self._check_approvable(application)

        approved_amount = to_decimal(inputs.approved_amount)
        if approved_amount <= ZERO:
            raise ValidationError("Approved amount must be positive",
                                  {"approved_amount": str(approved_amount)})

        cadence = self.products.resolve_cadence(application.payment_frequency_id)

        today = self.clock()
        earliest = cadence.first_collection_on_or_after(
            today + timedelta(days=self.settings.min_days_before_first_collection))
        if inputs.first_collection_date < earliest:
            raise ValidationError(
                f"First collection date {inputs.first_collection_date.isoformat()} is earlier than "
                f"the first allowed collection date {earliest.isoformat()}",
                {"first_collection_date": inputs.first_collection_date.isoformat(),
                 "earliest_allowed": earliest.isoformat()}
            )

        product = self.products.get_active_product(application.product_id)
        if application.installment_count > product.max_installments:
            raise ValidationError(
                f"Installment count {application.installment_count} exceeds product maximum "
                f"{product.max_installments}",
                {"installment_count": application.installment_count,
                 "max_installments": product.max_installments}
            )

        self.references.require_active(ReferenceKind.OFFICE, application.affiliation_office_id)
        self.references.require_active(ReferenceKind.REPAYMENT_METHOD, inputs.repayment_method_id)
        self.references.require_active(ReferenceKind.GUARANTEE_TYPE, inputs.guarantee_type_id)
        self.references.require_active(ReferenceKind.THIRD_PARTY, inputs.payee_third_party_id)
        if inputs.agreement_id:
            self.references.require_active(ReferenceKind.AGREEMENT, inputs.agreement_id)

        rate = self.products.resolve_rate(product.id, application.category_code,
                                          application.installment_count)
        factor = self.products.resolve_insurance(product.id, application.insurer_id,
                                                 approved_amount, application.installment_count)
        schedule = calculate_schedule(
            principal=approved_amount,
            rate_percent=rate.financing_rate_percent,
            financing_mode=product.financing_mode,
            day_count=product.day_count_convention,
            cadence=cadence,
            installment_count=application.installment_count,
            first_payment_date=inputs.first_collection_date,
            insurance_policy=InsurancePolicy.from_factor(factor, product.insurance_accrual),
            disbursement_date=inputs.disbursement_date,
        )

        approval_date = inputs.approval_date or today
        loan_id = str(uuid.uuid4())
        snapshots = self.billing.build_loan_snapshots(
            product.id, loan_id, approval_date, schedule.summary.principal,
            schedule.summary.first_installment_payment)

        with self.storage.atomic():
            self.storage.lock_for_update(self.table_name, application_id)
            application = self.get_application(application_id)
            self._check_approvable(application)

            from_status = application.status
            application.status = ApplicationStatus.APPROVED
            application.status_date = approval_date
            application.status_changed_by = inputs.approved_by
            application.approved_amount = approved_amount
            application.first_collection_date = inputs.first_collection_date
            application.repayment_method_id = inputs.repayment_method_id
            application.guarantee_type_id = inputs.guarantee_type_id
            application.payee_third_party_id = inputs.payee_third_party_id
            application.agreement_id = inputs.agreement_id
            application.financing_rate_percent = rate.financing_rate_percent
            application.set_insurance_factor(factor)
            application.updated_at = datetime.now(timezone.utc)
            self._save_application(application)

            loan = self._build_loan(loan_id, application, product, schedule, inputs, approval_date)
            self.loans.insert_loan(loan, schedule, changed_by=inputs.approved_by)
            for snapshot in snapshots:
                self.billing.save_loan_snapshot(snapshot)
            self._record_status_change(application, from_status, ApplicationStatus.APPROVED,
                                       inputs.approved_by, metadata={"loan_id": loan.id})

        log_action(logger, "info", "Loan application approved", user_id=inputs.approved_by,
                   action="approve_application", resource="loan_applications", loan_id=loan.id,
                   extra={"application_id": application_id,
                          "approved_amount": str(approved_amount),
                          "installments": application.installment_count})
        return loan

    def get_application(self, application_id: str) -> Optional[LoanApplication]:
        data = self.storage.load(self.table_name, application_id)
        return LoanApplication.from_dict(data) if data else None

    def get_status_history(self, application_id: str):
        return [ApplicationStatusHistory.from_dict(d)
                for d in self.storage.find(self.history_table, {"application_id": application_id})]

    def _check_approvable(self, application: LoanApplication) -> None:
        if application.status != ApplicationStatus.PENDING:
            raise ConflictError(
                f"Loan application {application.id} is {application.status.value}",
                {"application_id": application.id, "status": application.status.value}
            )
        if self.loans.get_loan_for_application(application.id):
            raise ConflictError(f"A loan already exists for application {application.id}",
                                {"application_id": application.id})

    def _require_pending(self, application_id: str) -> LoanApplication:
        application = self.get_application(application_id)
        if not application:
            raise NotFoundError(f"Loan application {application_id} not found")
        if application.status != ApplicationStatus.PENDING:
            raise ConflictError(
                f"Loan application {application_id} is {application.status.value}, only pending "
                f"applications can change",
                {"application_id": application_id, "status": application.status.value}
            )
        return application

    def _close(self, application_id: str, to_status: ApplicationStatus, note: str,
               user_id: Optional[str]) -> LoanApplication:
        with self.storage.atomic():
            self.storage.lock_for_update(self.table_name, application_id)
            application = self._require_pending(application_id)
            from_status = application.status
            application.status = to_status
            application.status_date = self.clock()
            application.status_note = note
            application.status_changed_by = user_id
            if to_status == ApplicationStatus.REJECTED:
                application.rejection_reason = note
            application.updated_at = datetime.now(timezone.utc)
            self._save_application(application)
            self._record_status_change(application, from_status, to_status, user_id, note)

        log_action(logger, "info", f"Loan application {to_status.value}", user_id=user_id,
                   action=f"{to_status.value}_application", resource="loan_applications",
                   extra={"application_id": application_id})
        return application

    def _price(self, application: LoanApplication) -> None:
        """Resolve rate and insurance and run the advisory capacity check"""
        if not isinstance(application.installment_count, int) or application.installment_count < 1:
            raise ValidationError("Installment count must be at least 1")
        if application.requested_amount <= ZERO:
            raise ValidationError("Requested amount must be positive")

        product = self.products.get_active_product(application.product_id)
        if application.installment_count > product.max_installments:
            raise ValidationError(
                f"Installment count {application.installment_count} exceeds product maximum "
                f"{product.max_installments}")

        rate = self.products.resolve_rate(product.id, application.category_code,
                                          application.installment_count)
        cadence = self.products.resolve_cadence(application.payment_frequency_id)
        factor = self.products.resolve_insurance(product.id, application.insurer_id,
                                                 application.requested_amount,
                                                 application.installment_count)
        application.financing_rate_percent = rate.financing_rate_percent
        application.set_insurance_factor(factor)

        first_date = cadence.first_collection_on_or_after(
            self.clock() + timedelta(days=self.settings.min_days_before_first_collection))
        schedule = calculate_schedule(
            principal=application.requested_amount,
            rate_percent=rate.financing_rate_percent,
            financing_mode=product.financing_mode,
            day_count=product.day_count_convention,
            cadence=cadence,
            installment_count=application.installment_count,
            first_payment_date=first_date,
            insurance_policy=InsurancePolicy.from_factor(factor, product.insurance_accrual),
        )

        assessment = assess_capacity(application.salary, application.other_income,
                                     application.other_credits,
                                     schedule.summary.max_installment_payment)
        application.payment_capacity = assessment.net_capacity
        application.capacity_warning = assessment.warning
        if assessment.warning:
            logger.warning("Application %s: %s", application.id, assessment.warning)

    def _build_loan(self, loan_id: str, application: LoanApplication, product: CreditProduct,
                    schedule: Schedule, inputs: ApprovalInputs, approval_date: date) -> Loan:
        now = datetime.now(timezone.utc)
        summary = schedule.summary
        return Loan(
            id=loan_id,
            created_at=now,
            updated_at=now,
            loan_number=self.storage.next_sequence(self.loans.loans_table),
            credit_number=application.credit_number,
            loan_application_id=application.id,
            third_party_id=application.third_party_id,
            product_id=product.id,
            principal=summary.principal,
            rate_percent=summary.rate_percent,
            financing_mode=product.financing_mode,
            installment_count=summary.installment_count,
            payment_frequency_id=application.payment_frequency_id,
            first_collection_date=inputs.first_collection_date,
            credit_start_date=schedule.installments[0].due_date,
            maturity_date=schedule.maturity_date,
            initial_total_amount=summary.total_payment,
            insurance_value=summary.total_insurance,
            insurer_id=application.insurer_id,
            payee_third_party_id=inputs.payee_third_party_id,
            agreement_id=inputs.agreement_id,
            repayment_method_id=inputs.repayment_method_id,
            guarantee_type_id=inputs.guarantee_type_id,
            affiliation_office_id=application.affiliation_office_id,
            disbursement_date=inputs.disbursement_date,
            status=LoanStatus.GENERATED,
            status_date=approval_date,
        )

    def _record_status_change(self, application: LoanApplication,
                              from_status: Optional[ApplicationStatus],
                              to_status: ApplicationStatus, changed_by: Optional[str],
                              note: Optional[str] = None,
                              metadata: Optional[Dict[str, Any]] = None) -> None:
        now = datetime.now(timezone.utc)
        row = ApplicationStatusHistory(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            application_id=application.id,
            from_status=from_status,
            to_status=to_status,
            changed_by=changed_by,
            note=note,
            metadata=metadata or {},
        )
        self.storage.save(self.history_table, row.id, row.to_dict())

    def _save_application(self, application: LoanApplication) -> None:
        self.storage.save(self.table_name, application.id, application.to_dict())
