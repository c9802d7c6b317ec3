"""
Test suite for the double-entry accounting ledger and the loan portfolio
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.errors import (
    ConflictError, InvariantViolationError, LedgerImbalanceError, ValidationError
)
from lending_core.ledger import (
    AccountingLedger, EntryLine, EntryNature, EntrySourceType, EntryStatus, ProcessType,
    document_code
)
from lending_core.portfolio import PortfolioDelta, PortfolioLedger, PortfolioStatus
from lending_core.storage import InMemoryStorage


class TestDocumentCode:

    def test_prefix_and_padding(self):
        """Test prefix and padding"""
        assert document_code(ProcessType.LIQUIDATION, 42) == "L000042"
        assert document_code(ProcessType.RECEIPT, 123456) == "R123456"
        assert document_code(ProcessType.RECEIPT_VOID, 7) == "V000007"

    def test_wraps_at_six_digits(self):
        """Test wraps at six digits"""
        assert document_code(ProcessType.RECEIPT, 1_000_001) == "R000001"


class TestAccountingLedger:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = AccountingLedger(self.storage)

    def post_receipt(self, code="R000001"):
        return self.ledger.post_document(
            ProcessType.RECEIPT, code, date(2024, 3, 1), EntrySourceType.LOAN_PAYMENT, "pay-1",
            [
                EntryLine("cash", EntryNature.DEBIT, Decimal('70000.00')),
                EntryLine("principal", EntryNature.CREDIT, Decimal('50000.00'), installment_number=1),
                EntryLine("principal", EntryNature.CREDIT, Decimal('20000.00'), installment_number=2),
            ],
            loan_id="loan-1",
        )

    def test_post_balanced_document(self):
        """Test post balanced document"""
        entries = self.post_receipt()
        assert [e.sequence for e in entries] == [1, 2, 3]
        assert self.ledger.get_document("R000001") == entries
        assert self.ledger.account_balances("loan-1") == {
            "cash": Decimal('70000.00'),
            "principal": Decimal('-70000.00'),
        }

    def test_unbalanced_document_rejected(self):
        """Test unbalanced document rejected"""
        with pytest.raises(LedgerImbalanceError):
            self.ledger.post_document(
                ProcessType.RECEIPT, "R000002", date(2024, 3, 1), EntrySourceType.LOAN_PAYMENT, "pay-2",
                [
                    EntryLine("cash", EntryNature.DEBIT, Decimal('100.00')),
                    EntryLine("principal", EntryNature.CREDIT, Decimal('99.99')),
                ],
            )
        assert self.ledger.get_document("R000002") == []

    def test_imbalance_is_invariant_violation(self):
        """Test imbalance is invariant violation"""
        assert issubclass(LedgerImbalanceError, InvariantViolationError)

    def test_duplicate_code_rejected(self):
        """Test duplicate code rejected"""
        self.post_receipt()
        with pytest.raises(ConflictError, match="already exists"):
            self.post_receipt()

    def test_same_code_from_another_source(self):
        """Wrapped codes repeat, so a code is only unique per source record"""
        first = self.post_receipt()
        second = self.ledger.post_document(
            ProcessType.RECEIPT, "R000001", date(2024, 3, 1), EntrySourceType.LOAN_PAYMENT, "pay-2",
            [
                EntryLine("cash", EntryNature.DEBIT, Decimal('10.00')),
                EntryLine("principal", EntryNature.CREDIT, Decimal('10.00'), installment_number=3),
            ],
            loan_id="loan-1",
        )

        assert {e.id for e in first}.isdisjoint(e.id for e in second)
        assert self.ledger.get_document("R000001", "pay-2") == second
        assert len(self.ledger.get_document("R000001")) == 5

        self.ledger.reverse_document("R000001", "V000001", date(2024, 3, 2),
                                     EntrySourceType.LOAN_PAYMENT_VOID, "pay-2")
        assert {e.status for e in self.ledger.get_document("R000001", "pay-1")} == {EntryStatus.DRAFT}
        assert self.ledger.account_balances("loan-1")["cash"] == Decimal('70000.00')

    def test_line_validation(self):
        """Test line validation"""
        with pytest.raises(ValidationError, match="no lines"):
            self.ledger.post_document(ProcessType.RECEIPT, "R000003", date(2024, 3, 1),
                                      EntrySourceType.LOAN_PAYMENT, "pay-3", [])
        with pytest.raises(ValidationError, match="non-positive"):
            self.ledger.post_document(ProcessType.RECEIPT, "R000003", date(2024, 3, 1),
                                      EntrySourceType.LOAN_PAYMENT, "pay-3",
                                      [EntryLine("cash", EntryNature.DEBIT, Decimal('0')),
                                       EntryLine("principal", EntryNature.CREDIT, Decimal('0'))])
        with pytest.raises(ValidationError, match="sub-cent"):
            self.ledger.post_document(ProcessType.RECEIPT, "R000003", date(2024, 3, 1),
                                      EntrySourceType.LOAN_PAYMENT, "pay-3",
                                      [EntryLine("cash", EntryNature.DEBIT, Decimal('1.005')),
                                       EntryLine("principal", EntryNature.CREDIT, Decimal('1.005'))])

    def test_reverse_document(self):
        """Test reversing a posted document"""
        originals = self.post_receipt()
        reversal = self.ledger.reverse_document("R000001", "V000001", date(2024, 3, 2),
                                                EntrySourceType.LOAN_PAYMENT_VOID, "pay-1")

        assert [e.nature for e in reversal] == [o.nature.inverse for o in originals]
        assert [e.reversal_of_entry_id for e in self.ledger.get_document("V000001")] == \
            [o.id for o in originals]
        assert {e.status for e in self.ledger.get_document("R000001")} == {EntryStatus.VOIDED}
        assert all(balance == 0 for balance in self.ledger.account_balances("loan-1").values())

    def test_reverse_twice_rejected(self):
        """Test reverse twice rejected"""
        self.post_receipt()
        self.ledger.reverse_document("R000001", "V000001", date(2024, 3, 2),
                                     EntrySourceType.LOAN_PAYMENT_VOID, "pay-1")
        with pytest.raises(ConflictError, match="already voided"):
            self.ledger.reverse_document("R000001", "V000009", date(2024, 3, 2),
                                         EntrySourceType.LOAN_PAYMENT_VOID, "pay-1")

    def test_reverse_missing_document(self):
        """Test reverse missing document"""
        with pytest.raises(ConflictError, match="not found"):
            self.ledger.reverse_document("R999999", "V999999", date(2024, 3, 2),
                                         EntrySourceType.LOAN_PAYMENT_VOID, "pay-x")


class TestPortfolioLedger:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.portfolio = PortfolioLedger(self.storage, Decimal('0.01'))

    def charge(self, installment, due, amount, account="principal"):
        return PortfolioDelta(account, "loan-1", installment, due, charge_delta=Decimal(amount))

    def test_entries_ordered_oldest_first(self):
        """Test entries ordered oldest first"""
        self.portfolio.apply_deltas([
            self.charge(2, date(2024, 3, 15), '30000'),
            self.charge(1, date(2024, 2, 15), '50000', account="interest"),
            self.charge(1, date(2024, 2, 15), '50000'),
        ], date(2024, 1, 10))
        ordered = [(e.installment_number, e.gl_account_id) for e in self.portfolio.open_entries("loan-1")]
        assert ordered == [(1, "interest"), (1, "principal"), (2, "principal")]
        assert self.portfolio.outstanding("loan-1") == Decimal('130000')

    def test_deltas_for_same_entry_merge(self):
        """Test deltas for same entry merge"""
        self.portfolio.apply_deltas([
            self.charge(1, date(2024, 2, 15), '100'),
            PortfolioDelta("principal", "loan-1", 1, date(2024, 2, 15), payment_delta=Decimal('40')),
        ], date(2024, 2, 1))
        entry = self.portfolio.get_entry("principal", "loan-1", 1)
        assert entry.charge_amount == Decimal('100')
        assert entry.payment_amount == Decimal('40')
        assert entry.balance == Decimal('60')
        assert entry.status == PortfolioStatus.OPEN

    def test_entry_closes_within_epsilon(self):
        """Test entry closes within epsilon"""
        self.portfolio.apply_deltas([self.charge(1, date(2024, 2, 15), '100.01')], date(2024, 1, 10))
        self.portfolio.apply_deltas([
            PortfolioDelta("principal", "loan-1", 1, date(2024, 2, 15), payment_delta=Decimal('100.00'))
        ], date(2024, 2, 15))
        entry = self.portfolio.get_entry("principal", "loan-1", 1)
        assert entry.balance == Decimal('0.01')
        assert entry.status == PortfolioStatus.CLOSED
        assert entry.last_movement_date == date(2024, 2, 15)
        assert self.portfolio.open_entries("loan-1") == []

    def test_negative_balance_rejected(self):
        """Test negative balance rejected"""
        self.portfolio.apply_deltas([self.charge(1, date(2024, 2, 15), '100')], date(2024, 1, 10))
        with pytest.raises(InvariantViolationError):
            self.portfolio.apply_deltas([
                PortfolioDelta("principal", "loan-1", 1, date(2024, 2, 15), payment_delta=Decimal('100.02'))
            ], date(2024, 2, 15))
