"""
Tests for billing concepts, dated rules and loan snapshots
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from lending_core.billing import (
    BaseAmount, BillingConceptRule, BillingManager, CalcMethod, ConceptFinancingMode,
    ConceptFrequency, calculate_concept_amount, pick_applicable_rule
)
from lending_core.errors import NotFoundError, ValidationError
from lending_core.money import RoundingMode
from lending_core.storage import InMemoryStorage


def make_rule(sequence, effective_from=None, effective_to=None, is_active=True, **kwargs):
    now = datetime.now(timezone.utc)
    params = dict(calc_method=CalcMethod.FIXED_AMOUNT, amount=Decimal('10'))
    params.update(kwargs)
    return BillingConceptRule(
        id=f"rule-{sequence}",
        created_at=now,
        updated_at=now,
        concept_id="concept",
        sequence=sequence,
        effective_from=effective_from,
        effective_to=effective_to,
        is_active=is_active,
        **params
    )


class TestRuleSelection:

    def test_latest_effective_from_wins(self):
        """Test latest effective from wins"""
        rules = [make_rule(1, date(2023, 1, 1)), make_rule(2, date(2024, 1, 1)), make_rule(3, date(2025, 1, 1))]
        assert pick_applicable_rule(rules, date(2024, 6, 1)).id == "rule-2"

    def test_tie_goes_to_latest_created(self):
        """Test tie goes to latest created"""
        rules = [make_rule(5, date(2024, 1, 1)), make_rule(2, date(2024, 1, 1))]
        assert pick_applicable_rule(rules, date(2024, 6, 1)).id == "rule-5"

    def test_open_ended_rule_ranks_below_dated(self):
        """Test open ended rule ranks below dated"""
        rules = [make_rule(9), make_rule(1, date(2024, 1, 1))]
        assert pick_applicable_rule(rules, date(2024, 6, 1)).id == "rule-1"

    def test_expired_and_inactive_rules_skipped(self):
        """Test expired and inactive rules skipped"""
        rules = [make_rule(1, date(2023, 1, 1), date(2023, 12, 31)), make_rule(2, is_active=False)]
        assert pick_applicable_rule(rules, date(2024, 6, 1)) is None


class TestConceptAmount:

    def test_percentage_of_base(self):
        """Test percentage of base"""
        rule = make_rule(1, calc_method=CalcMethod.PERCENTAGE, base_amount=BaseAmount.PRINCIPAL,
                         rate=Decimal('1.5'), amount=None)
        assert calculate_concept_amount(rule, {BaseAmount.PRINCIPAL: Decimal('1000000')}) == Decimal('15000.00')

    def test_min_and_max_clamps(self):
        """Test min and max clamps"""
        rule = make_rule(1, calc_method=CalcMethod.PERCENTAGE, base_amount=BaseAmount.PRINCIPAL,
                         rate=Decimal('1'), amount=None, min_amount=Decimal('50'), max_amount=Decimal('500'))
        assert calculate_concept_amount(rule, {BaseAmount.PRINCIPAL: Decimal('1000')}) == Decimal('50.00')
        assert calculate_concept_amount(rule, {BaseAmount.PRINCIPAL: Decimal('100000')}) == Decimal('500.00')

    def test_rounding_mode(self):
        """Test configured rounding mode applied"""
        rule = make_rule(1, calc_method=CalcMethod.PERCENTAGE, base_amount=BaseAmount.INSTALLMENT_AMOUNT,
                         rate=Decimal('3'), amount=None, rounding_mode=RoundingMode.UP, rounding_decimals=0)
        assert calculate_concept_amount(rule, {BaseAmount.INSTALLMENT_AMOUNT: Decimal('1001')}) == Decimal('31.00')


class TestBillingManager:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.billing = BillingManager(self.storage)
        self.concept = self.billing.create_concept(
            "STUDY", "Study fee",
            default_frequency=ConceptFrequency.ONE_TIME,
            default_financing_mode=ConceptFinancingMode.DISCOUNT_FROM_DISBURSEMENT,
        )

    def test_snapshot_copies_rule_in_force(self):
        """Test snapshot copies rule in force"""
        old = self.billing.add_rule(self.concept.id, CalcMethod.FIXED_AMOUNT, amount=Decimal('20000'),
                                    effective_from=date(2023, 1, 1))
        new = self.billing.add_rule(self.concept.id, CalcMethod.FIXED_AMOUNT, amount=Decimal('25000'),
                                    effective_from=date(2024, 1, 1))
        self.billing.enable_for_product("product-1", self.concept.id)

        snapshots = self.billing.build_loan_snapshots("product-1", "loan-1", date(2024, 3, 1),
                                                      Decimal('1000000'), Decimal('100000'))
        assert len(snapshots) == 1
        assert snapshots[0].source_rule_id == new.id
        assert snapshots[0].calculated_amount == Decimal('25000.00')

        earlier = self.billing.build_loan_snapshots("product-1", "loan-2", date(2023, 6, 1),
                                                    Decimal('1000000'), Decimal('100000'))
        assert earlier[0].source_rule_id == old.id

    def test_override_rule_wins(self):
        """Test override rule wins"""
        self.billing.add_rule(self.concept.id, CalcMethod.FIXED_AMOUNT, amount=Decimal('100'))
        override = self.billing.add_rule(self.concept.id, CalcMethod.PERCENTAGE,
                                         base_amount=BaseAmount.DISBURSED_AMOUNT, rate=Decimal('2'),
                                         is_active=False)
        self.billing.enable_for_product("product-1", self.concept.id, override_rule_id=override.id,
                                        override_frequency=ConceptFrequency.PER_INSTALLMENT)

        snapshot = self.billing.build_loan_snapshots("product-1", "loan-1", date(2024, 3, 1),
                                                     Decimal('1000'), Decimal('100'))[0]
        assert snapshot.source_rule_id == override.id
        assert snapshot.calculated_amount == Decimal('20.00')
        assert snapshot.frequency == ConceptFrequency.PER_INSTALLMENT

    def test_snapshot_survives_rule_changes(self):
        """Test snapshot survives rule changes"""
        self.billing.add_rule(self.concept.id, CalcMethod.FIXED_AMOUNT, amount=Decimal('100'))
        self.billing.enable_for_product("product-1", self.concept.id)
        for snapshot in self.billing.build_loan_snapshots("product-1", "loan-1", date(2024, 3, 1),
                                                          Decimal('1000'), Decimal('100')):
            self.billing.save_loan_snapshot(snapshot)

        self.billing.add_rule(self.concept.id, CalcMethod.FIXED_AMOUNT, amount=Decimal('999'))
        stored = self.billing.get_loan_concepts("loan-1")
        assert [s.calculated_amount for s in stored] == [Decimal('100.00')]

    def test_no_rule_in_force_rejected(self):
        """Test no rule in force rejected"""
        self.billing.add_rule(self.concept.id, CalcMethod.FIXED_AMOUNT, amount=Decimal('100'),
                              effective_from=date(2025, 1, 1))
        self.billing.enable_for_product("product-1", self.concept.id)
        with pytest.raises(ValidationError, match="no rule in force"):
            self.billing.build_loan_snapshots("product-1", "loan-1", date(2024, 3, 1),
                                              Decimal('1000'), Decimal('100'))

    def test_disabled_concept_skipped(self):
        """Test disabled concept skipped"""
        self.billing.enable_for_product("product-1", self.concept.id, is_enabled=False)
        assert self.billing.build_loan_snapshots("product-1", "loan-1", date(2024, 3, 1),
                                                 Decimal('1000'), Decimal('100')) == []

    def test_rule_validation(self):
        """Test rule validation errors"""
        with pytest.raises(ValidationError):
            self.billing.add_rule(self.concept.id, CalcMethod.PERCENTAGE, rate=Decimal('1'))
        with pytest.raises(ValidationError):
            self.billing.add_rule(self.concept.id, CalcMethod.FIXED_AMOUNT, amount=Decimal('-5'))
        with pytest.raises(NotFoundError):
            self.billing.add_rule("missing", CalcMethod.FIXED_AMOUNT, amount=Decimal('5'))

    def test_rule_sequence_increases(self):
        """Test rule sequence increases"""
        first = self.billing.add_rule(self.concept.id, CalcMethod.FIXED_AMOUNT, amount=Decimal('1'))
        second = self.billing.add_rule(self.concept.id, CalcMethod.FIXED_AMOUNT, amount=Decimal('2'))
        assert second.sequence > first.sequence
