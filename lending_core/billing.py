"""
Billing Concept Module

Configurable fees and charges attached to credit products. Each concept has
dated rules; at approval the rule in force is copied onto the loan as a
snapshot so later rule changes never alter an existing loan.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
import logging
import uuid

from .errors import NotFoundError, ValidationError
from .money import ZERO, RoundingMode, round_by_mode, round_money, to_decimal
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("lending.billing")


class CalcMethod(Enum):
    FIXED_AMOUNT = "fixed_amount"
    PERCENTAGE = "percentage"


class BaseAmount(Enum):
    """Amount a percentage rule is applied to"""
    DISBURSED_AMOUNT = "disbursed_amount"
    PRINCIPAL = "principal"
    OUTSTANDING_BALANCE = "outstanding_balance"
    INSTALLMENT_AMOUNT = "installment_amount"


class ConceptFrequency(Enum):
    ONE_TIME = "one_time"
    PER_INSTALLMENT = "per_installment"


class ConceptFinancingMode(Enum):
    DISCOUNT_FROM_DISBURSEMENT = "discount_from_disbursement"
    FINANCED_IN_INSTALLMENTS = "financed_in_installments"
    BILLED_SEPARATELY = "billed_separately"


@dataclass
class BillingConcept(StorageRecord):
    code: str
    name: str
    default_frequency: ConceptFrequency = ConceptFrequency.ONE_TIME
    default_financing_mode: ConceptFinancingMode = ConceptFinancingMode.DISCOUNT_FROM_DISBURSEMENT
    default_gl_account_id: Optional[str] = None
    is_active: bool = True


@dataclass
class BillingConceptRule(StorageRecord):
    """Dated calculation rule of a concept; `sequence` orders rules by creation"""
    concept_id: str
    sequence: int
    calc_method: CalcMethod
    base_amount: Optional[BaseAmount] = None
    rate: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    rounding_mode: RoundingMode = RoundingMode.NEAREST
    rounding_decimals: int = 2
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    is_active: bool = True

    def is_effective_on(self, as_of: date) -> bool:
        if self.effective_from and self.effective_from > as_of:
            return False
        if self.effective_to and self.effective_to < as_of:
            return False
        return True


@dataclass
class ProductBillingConcept(StorageRecord):
    """Enablement of a concept on a product, with optional overrides"""
    product_id: str
    concept_id: str
    is_enabled: bool = True
    override_rule_id: Optional[str] = None
    override_frequency: Optional[ConceptFrequency] = None
    override_financing_mode: Optional[ConceptFinancingMode] = None
    override_gl_account_id: Optional[str] = None


@dataclass
class LoanBillingConcept(StorageRecord):
    """Snapshot of a concept and its rule taken when the loan was approved"""
    loan_id: str
    concept_id: str
    source_product_concept_id: str
    source_rule_id: str
    frequency: ConceptFrequency
    financing_mode: ConceptFinancingMode
    gl_account_id: Optional[str]
    calc_method: CalcMethod
    base_amount: Optional[BaseAmount]
    rate: Optional[Decimal]
    amount: Optional[Decimal]
    min_amount: Optional[Decimal]
    max_amount: Optional[Decimal]
    rounding_mode: RoundingMode
    rounding_decimals: int
    calculated_amount: Decimal


def pick_applicable_rule(rules: List[BillingConceptRule], as_of: date) -> Optional[BillingConceptRule]:
    """
    Rule in force on a date: among active rules effective on that date, the
    latest effective_from wins; ties go to the highest sequence.
    """
    applicable = [r for r in rules if r.is_active and r.is_effective_on(as_of)]
    if not applicable:
        return None
    return max(applicable, key=lambda r: (r.effective_from or date.min, r.sequence))


def calculate_concept_amount(rule: BillingConceptRule, base_values: Dict[BaseAmount, Decimal]) -> Decimal:
    """
    Amount a rule charges given the available base amounts.
    Min/max clamps apply only when positive.
    """
    if rule.calc_method == CalcMethod.FIXED_AMOUNT:
        calculated = rule.amount or ZERO
    else:
        base = base_values.get(rule.base_amount, ZERO) if rule.base_amount else ZERO
        calculated = base * (rule.rate or ZERO) / Decimal('100')

    if rule.min_amount and rule.min_amount > ZERO:
        calculated = max(calculated, rule.min_amount)
    if rule.max_amount and rule.max_amount > ZERO:
        calculated = min(calculated, rule.max_amount)

    return round_money(round_by_mode(calculated, rule.rounding_mode, rule.rounding_decimals))


class BillingManager:
    """Manages billing concepts, their rules and product enablement"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.concepts_table = "billing_concepts"
        self.rules_table = "billing_concept_rules"
        self.product_concepts_table = "product_billing_concepts"
        self.loan_concepts_table = "loan_billing_concepts"

    def create_concept(self, code: str, name: str,
                       default_frequency: ConceptFrequency = ConceptFrequency.ONE_TIME,
                       default_financing_mode: ConceptFinancingMode = ConceptFinancingMode.DISCOUNT_FROM_DISBURSEMENT,
                       default_gl_account_id: Optional[str] = None,
                       is_active: bool = True) -> BillingConcept:
        now = datetime.now(timezone.utc)
        concept = BillingConcept(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            default_frequency=default_frequency,
            default_financing_mode=default_financing_mode,
            default_gl_account_id=default_gl_account_id,
            is_active=is_active,
        )
        self.storage.save(self.concepts_table, concept.id, concept.to_dict())
        return concept

    def get_concept(self, concept_id: str) -> Optional[BillingConcept]:
        data = self.storage.load(self.concepts_table, concept_id)
        return BillingConcept.from_dict(data) if data else None

    def add_rule(self, concept_id: str, calc_method: CalcMethod,
                 base_amount: Optional[BaseAmount] = None,
                 rate: Optional[Decimal] = None,
                 amount: Optional[Decimal] = None,
                 min_amount: Optional[Decimal] = None,
                 max_amount: Optional[Decimal] = None,
                 rounding_mode: RoundingMode = RoundingMode.NEAREST,
                 rounding_decimals: int = 2,
                 effective_from: Optional[date] = None,
                 effective_to: Optional[date] = None,
                 is_active: bool = True) -> BillingConceptRule:
        """
        Add a dated rule to a concept

        Raises:
            NotFoundError: Concept does not exist
            ValidationError: Inconsistent rule parameters
        """
        if not self.get_concept(concept_id):
            raise NotFoundError(f"Billing concept {concept_id} not found")
        if calc_method == CalcMethod.PERCENTAGE and (rate is None or base_amount is None):
            raise ValidationError("Percentage rules need a rate and a base amount")
        if calc_method == CalcMethod.FIXED_AMOUNT and amount is None:
            raise ValidationError("Fixed amount rules need an amount")
        for name, value in (("rate", rate), ("amount", amount),
                            ("min_amount", min_amount), ("max_amount", max_amount)):
            if value is not None and to_decimal(value) < ZERO:
                raise ValidationError(f"Rule {name} cannot be negative")
        if effective_from and effective_to and effective_to < effective_from:
            raise ValidationError("Rule effective_to precedes effective_from")

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            rule = BillingConceptRule(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                concept_id=concept_id,
                sequence=self.storage.next_sequence(self.rules_table),
                calc_method=calc_method,
                base_amount=base_amount,
                rate=to_decimal(rate) if rate is not None else None,
                amount=to_decimal(amount) if amount is not None else None,
                min_amount=to_decimal(min_amount) if min_amount is not None else None,
                max_amount=to_decimal(max_amount) if max_amount is not None else None,
                rounding_mode=rounding_mode,
                rounding_decimals=rounding_decimals,
                effective_from=effective_from,
                effective_to=effective_to,
                is_active=is_active,
            )
            self.storage.save(self.rules_table, rule.id, rule.to_dict())
        return rule

    def get_rule(self, rule_id: str) -> Optional[BillingConceptRule]:
        data = self.storage.load(self.rules_table, rule_id)
        return BillingConceptRule.from_dict(data) if data else None

    def get_rules(self, concept_id: str) -> List[BillingConceptRule]:
        return [BillingConceptRule.from_dict(d)
                for d in self.storage.find(self.rules_table, {"concept_id": concept_id})]

    def enable_for_product(self, product_id: str, concept_id: str,
                           override_rule_id: Optional[str] = None,
                           override_frequency: Optional[ConceptFrequency] = None,
                           override_financing_mode: Optional[ConceptFinancingMode] = None,
                           override_gl_account_id: Optional[str] = None,
                           is_enabled: bool = True) -> ProductBillingConcept:
        if not self.get_concept(concept_id):
            raise NotFoundError(f"Billing concept {concept_id} not found")
        if override_rule_id:
            rule = self.get_rule(override_rule_id)
            if not rule or rule.concept_id != concept_id:
                raise ValidationError(f"Override rule {override_rule_id} does not belong to concept {concept_id}")

        now = datetime.now(timezone.utc)
        link = ProductBillingConcept(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            product_id=product_id,
            concept_id=concept_id,
            is_enabled=is_enabled,
            override_rule_id=override_rule_id,
            override_frequency=override_frequency,
            override_financing_mode=override_financing_mode,
            override_gl_account_id=override_gl_account_id,
        )
        self.storage.save(self.product_concepts_table, link.id, link.to_dict())
        return link

    def build_loan_snapshots(self, product_id: str, loan_id: str, as_of: date,
                             principal: Decimal, first_installment_amount: Decimal) -> List[LoanBillingConcept]:
        """
        Snapshot every active concept enabled on the product with the rule in
        force on `as_of`. Nothing is saved.

        Raises:
            ValidationError: An applicable concept has no rule in force
        """
        links = [ProductBillingConcept.from_dict(d)
                 for d in self.storage.find(self.product_concepts_table, {"product_id": product_id})]
        base_values = {
            BaseAmount.DISBURSED_AMOUNT: principal,
            BaseAmount.PRINCIPAL: principal,
            BaseAmount.OUTSTANDING_BALANCE: principal,
            BaseAmount.INSTALLMENT_AMOUNT: first_installment_amount,
        }

        snapshots = []
        now = datetime.now(timezone.utc)
        for link in links:
            if not link.is_enabled:
                continue
            concept = self.get_concept(link.concept_id)
            if not concept or not concept.is_active:
                continue

            rule = self.get_rule(link.override_rule_id) if link.override_rule_id else None
            if rule is None:
                rule = pick_applicable_rule(self.get_rules(concept.id), as_of)
            if rule is None:
                raise ValidationError(
                    f"Billing concept {concept.code} has no rule in force on {as_of.isoformat()}",
                    {"concept_id": concept.id, "as_of": as_of.isoformat()}
                )

            snapshots.append(LoanBillingConcept(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                concept_id=concept.id,
                source_product_concept_id=link.id,
                source_rule_id=rule.id,
                frequency=link.override_frequency or concept.default_frequency,
                financing_mode=link.override_financing_mode or concept.default_financing_mode,
                gl_account_id=link.override_gl_account_id or concept.default_gl_account_id,
                calc_method=rule.calc_method,
                base_amount=rule.base_amount,
                rate=rule.rate,
                amount=rule.amount,
                min_amount=rule.min_amount,
                max_amount=rule.max_amount,
                rounding_mode=rule.rounding_mode,
                rounding_decimals=rule.rounding_decimals,
                calculated_amount=calculate_concept_amount(rule, base_values),
            ))
        return snapshots

    def save_loan_snapshot(self, snapshot: LoanBillingConcept) -> None:
        self.storage.save(self.loan_concepts_table, snapshot.id, snapshot.to_dict())

    def get_loan_concepts(self, loan_id: str) -> List[LoanBillingConcept]:
        return [LoanBillingConcept.from_dict(d)
                for d in self.storage.find(self.loan_concepts_table, {"loan_id": loan_id})]
