"""
Shared fixtures: an engine over in-memory storage seeded with reference
data, a product, an insurer and a monthly payment frequency.
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

from lending_core.amortization import FinancingMode, InsuranceAccrual
from lending_core.applications import ApprovalInputs
from lending_core.cadence import DayCountConvention
from lending_core.config import LendingConfig
from lending_core.engine import build_engine
from lending_core.insurance import InsuranceRateRange, InsuranceRateType, RangeMetric
from lending_core.loans import Loan, LoanStatus
from lending_core.portfolio import PortfolioDelta
from lending_core.products import ProductCategory, ScheduleMode
from lending_core.reference import AccountType, ReferenceKind
from lending_core.storage import InMemoryStorage


TODAY = date(2024, 1, 10)


@pytest.fixture
def settings():
    return LendingConfig(
        database_url="memory://",
        min_days_before_first_collection=7,
        balance_epsilon="0.01",
        summary_cache_ttl_seconds=300,
    )


@pytest.fixture
def engine(settings):
    return build_engine(InMemoryStorage(), settings, today=lambda: TODAY)


def seed_world(engine):
    """Reference data, accounts, insurer, frequency and product"""
    refs = engine.references
    world = SimpleNamespace()

    world.cash = refs.create_gl_account("110505", "Cash", AccountType.ASSET)
    world.principal_rx = refs.create_gl_account("140505", "Principal receivable", AccountType.ASSET,
                                                is_receivable=True)
    world.interest_rx = refs.create_gl_account("140510", "Interest receivable", AccountType.ASSET,
                                               is_receivable=True)
    world.insurance_rx = refs.create_gl_account("140515", "Insurance receivable", AccountType.ASSET,
                                                is_receivable=True)
    world.disbursement = refs.create_gl_account("250505", "Disbursements payable", AccountType.LIABILITY)
    world.interest_income = refs.create_gl_account("270505", "Deferred interest", AccountType.LIABILITY)
    world.insurance_payable = refs.create_gl_account("250510", "Insurance payable", AccountType.LIABILITY)

    world.office = refs.create(ReferenceKind.OFFICE, "MAIN", "Main office")
    world.borrower = refs.create(ReferenceKind.THIRD_PARTY, "900123", "Ana Borrower")
    world.payee = refs.create(ReferenceKind.THIRD_PARTY, "800456", "Payee Ltd")
    world.repayment_method = refs.create(ReferenceKind.REPAYMENT_METHOD, "PAYROLL", "Payroll deduction")
    world.guarantee = refs.create(ReferenceKind.GUARANTEE_TYPE, "PROMISSORY", "Promissory note")
    world.agreement = refs.create(ReferenceKind.AGREEMENT, "AGR1", "Employer agreement")
    world.cash_tender = refs.create(ReferenceKind.TENDER_TYPE, "CASH", "Cash")
    world.transfer_tender = refs.create(ReferenceKind.TENDER_TYPE, "TRANSFER", "Bank transfer")
    world.receipt_type = refs.create_receipt_type("RC", "Cash receipt", world.cash.id,
                                                  enabled_user_ids=["cashier"])

    world.insurer = engine.insurers.create_insurer(
        "Safe Insurance",
        [
            InsuranceRateRange(RangeMetric.INSTALLMENT_COUNT, Decimal('1'), Decimal('12'),
                               InsuranceRateType.PERCENTAGE, Decimal('0.5')),
            InsuranceRateRange(RangeMetric.INSTALLMENT_COUNT, Decimal('13'), Decimal('36'),
                               InsuranceRateType.PERCENTAGE, Decimal('0.4')),
        ],
    )
    world.frequency = engine.products.create_payment_frequency(
        "Monthly", schedule_mode=ScheduleMode.MONTHLY_CALENDAR)
    world.product = engine.products.create_product(
        code="CONSUMER",
        name="Consumer credit",
        max_installments=24,
        categories=[ProductCategory("A", 1, 24, Decimal('24'))],
        financing_mode=FinancingMode.DECLINING_BALANCE,
        day_count_convention=DayCountConvention.THIRTY_360,
        pays_insurance=True,
        insurance_range_metric=RangeMetric.INSTALLMENT_COUNT,
        insurance_accrual=InsuranceAccrual.DECLINING,
        principal_receivable_account_id=world.principal_rx.id,
        interest_receivable_account_id=world.interest_rx.id,
        insurance_receivable_account_id=world.insurance_rx.id,
        disbursement_payable_account_id=world.disbursement.id,
        interest_income_account_id=world.interest_income.id,
        insurance_payable_account_id=world.insurance_payable.id,
    )
    return world


@pytest.fixture
def world(engine):
    return seed_world(engine)


def create_application(engine, world, amount=Decimal('1200000'), installments=12, **overrides):
    params = dict(
        third_party_id=world.borrower.id,
        affiliation_office_id=world.office.id,
        product_id=world.product.id,
        category_code="A",
        installment_count=installments,
        requested_amount=amount,
        payment_frequency_id=world.frequency.id,
        insurer_id=world.insurer.id,
        salary=Decimal('5000000'),
        created_by="analyst",
    )
    params.update(overrides)
    return engine.applications.create_application(**params)


def approval_inputs(world, amount=Decimal('1200000'), first_collection=date(2024, 2, 15), **overrides):
    params = dict(
        approved_amount=amount,
        first_collection_date=first_collection,
        repayment_method_id=world.repayment_method.id,
        guarantee_type_id=world.guarantee.id,
        payee_third_party_id=world.payee.id,
        approved_by="manager",
        agreement_id=world.agreement.id,
    )
    params.update(overrides)
    return ApprovalInputs(**params)


def active_loan(engine, world, amount=Decimal('1200000'), installments=12):
    """Create, approve and liquidate a loan"""
    application = create_application(engine, world, amount, installments)
    loan = engine.applications.approve_application(application.id, approval_inputs(world, amount))
    return engine.loans.liquidate_loan(loan.id, TODAY, user_id="manager")


def loan_with_balances(engine, world, balances):
    """
    Save an ACTIVE loan whose portfolio holds one principal entry per
    (due date, balance) pair, installments numbered from 1.
    """
    now = datetime.now(timezone.utc)
    total = sum((b for _, b in balances), Decimal('0'))
    loan = Loan(
        id=f"loan-{engine.storage.next_sequence('test_loans')}",
        created_at=now,
        updated_at=now,
        loan_number=engine.storage.next_sequence("loans"),
        credit_number="CR-TEST",
        loan_application_id="app-test",
        third_party_id=world.borrower.id,
        product_id=world.product.id,
        principal=total,
        rate_percent=Decimal('0'),
        financing_mode=FinancingMode.ADD_ON,
        installment_count=len(balances),
        payment_frequency_id=world.frequency.id,
        first_collection_date=balances[0][0],
        credit_start_date=balances[0][0],
        maturity_date=balances[-1][0],
        initial_total_amount=total,
        status=LoanStatus.ACTIVE,
    )
    engine.loans.save_loan(loan)
    engine.portfolio.apply_deltas(
        [PortfolioDelta(world.principal_rx.id, loan.id, number, due, charge_delta=balance)
         for number, (due, balance) in enumerate(balances, start=1)],
        TODAY,
    )
    return loan
