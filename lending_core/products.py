"""
Credit Product Module

Credit products, their category/installment-range rate tables and the
payment frequencies loans are scheduled with. The catalog resolves the
financing rate, the payment cadence and the insurance factor an application
is priced with.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import uuid

from .amortization import FinancingMode, InsuranceAccrual
from .cadence import (
    Cadence, DayCountConvention, IntervalCadence, MonthlyCalendarCadence, SemiMonthlyCadence
)
from .errors import NotFoundError, ValidationError
from .insurance import InsuranceFactor, InsurerManager, RangeMetric
from .money import ZERO, to_decimal
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("lending.products")


class ScheduleMode(Enum):
    """How a payment frequency generates due dates"""
    INTERVAL_DAYS = "interval_days"
    MONTHLY_CALENDAR = "monthly_calendar"
    SEMI_MONTHLY = "semi_monthly"


@dataclass
class ProductCategory:
    """Rate tier of a product for a category code and installment range"""
    category_code: str
    installments_from: int
    installments_to: int
    financing_rate_percent: Decimal
    is_active: bool = True

    def covers(self, installment_count: int) -> bool:
        return self.installments_from <= installment_count <= self.installments_to

    def to_dict(self) -> Dict[str, Any]:
        return {
            'category_code': self.category_code,
            'installments_from': self.installments_from,
            'installments_to': self.installments_to,
            'financing_rate_percent': str(self.financing_rate_percent),
            'is_active': self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProductCategory':
        return cls(
            category_code=data['category_code'],
            installments_from=data['installments_from'],
            installments_to=data['installments_to'],
            financing_rate_percent=Decimal(data['financing_rate_percent']),
            is_active=data.get('is_active', True),
        )


@dataclass
class CreditProduct(StorageRecord):
    """Credit product definition"""
    code: str
    name: str
    max_installments: int
    financing_mode: FinancingMode = FinancingMode.DECLINING_BALANCE
    day_count_convention: DayCountConvention = DayCountConvention.THIRTY_360
    is_active: bool = True

    # Insurance
    pays_insurance: bool = False
    insurance_range_metric: RangeMetric = RangeMetric.INSTALLMENT_COUNT
    insurance_accrual: InsuranceAccrual = InsuranceAccrual.FLAT

    # Ledger accounts charged at liquidation
    principal_receivable_account_id: Optional[str] = None
    interest_receivable_account_id: Optional[str] = None
    insurance_receivable_account_id: Optional[str] = None
    disbursement_payable_account_id: Optional[str] = None
    interest_income_account_id: Optional[str] = None
    insurance_payable_account_id: Optional[str] = None

    categories: List[ProductCategory] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['categories'] = [c.to_dict() for c in self.categories]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CreditProduct':
        data = dict(data)
        categories = [ProductCategory.from_dict(c) for c in data.pop('categories', [])]
        product = super().from_dict(data)
        product.categories = categories
        return product


@dataclass
class PaymentFrequency(StorageRecord):
    """Named payment cadence configuration"""
    name: str
    schedule_mode: ScheduleMode = ScheduleMode.INTERVAL_DAYS
    interval_days: Optional[int] = None
    day_of_month: Optional[int] = None
    semi_month_day1: Optional[int] = None
    semi_month_day2: Optional[int] = None
    end_of_month_fallback: bool = True
    is_active: bool = True

    def to_cadence(self) -> Cadence:
        """Build the cadence rule; raises ValidationError for an unusable configuration"""
        if self.schedule_mode == ScheduleMode.MONTHLY_CALENDAR:
            return MonthlyCalendarCadence(self.day_of_month, self.end_of_month_fallback)
        if self.schedule_mode == ScheduleMode.SEMI_MONTHLY:
            return SemiMonthlyCadence(
                self.semi_month_day1 or 15,
                self.semi_month_day2 or 30,
                self.end_of_month_fallback,
            )
        if not self.interval_days or self.interval_days <= 0:
            raise ValidationError(
                f"Payment frequency {self.name} does not define a positive interval",
                {"payment_frequency_id": self.id, "interval_days": self.interval_days}
            )
        return IntervalCadence(self.interval_days)


@dataclass(frozen=True)
class RateResolution:
    product_id: str
    category_code: str
    installment_count: int
    financing_rate_percent: Decimal


class ProductCatalog:
    """
    Manages credit products and payment frequencies and resolves pricing
    """

    def __init__(self, storage: StorageInterface, insurers: InsurerManager,
                 default_day_count: DayCountConvention = DayCountConvention.THIRTY_360):
        self.storage = storage
        self.insurers = insurers
        self.default_day_count = default_day_count
        self.products_table = "credit_products"
        self.frequencies_table = "payment_frequencies"

    def create_product(
        self,
        code: str,
        name: str,
        max_installments: int,
        categories: List[ProductCategory],
        financing_mode: FinancingMode = FinancingMode.DECLINING_BALANCE,
        day_count_convention: Optional[DayCountConvention] = None,
        pays_insurance: bool = False,
        insurance_range_metric: RangeMetric = RangeMetric.INSTALLMENT_COUNT,
        insurance_accrual: InsuranceAccrual = InsuranceAccrual.FLAT,
        **accounts: Optional[str]
    ) -> CreditProduct:
        """
        Create a credit product

        Args:
            code: Unique product code
            name: Display name
            max_installments: Highest installment count the product allows
            categories: Rate tiers by category code and installment range
            financing_mode: ADD_ON or DECLINING_BALANCE
            day_count_convention: Convention for period rates; the catalog default when None
            pays_insurance: Whether loans of this product carry insurance
            insurance_range_metric: Metric used to pick the insurer rate range
            insurance_accrual: How insurance accrues over the term
            **accounts: Ledger account ids (principal_receivable_account_id, ...)

        Returns:
            Created CreditProduct
        """
        if not code or not name:
            raise ValidationError("Product code and name are required")
        if max_installments < 1:
            raise ValidationError("Product maximum installments must be at least 1",
                                  {"max_installments": max_installments})
        if self.get_product_by_code(code):
            raise ValidationError(f"Product code {code} already exists")
        for category in categories:
            if category.installments_from > category.installments_to:
                raise ValidationError(
                    f"Category {category.category_code} has an empty installment range")
            if to_decimal(category.financing_rate_percent) < ZERO:
                raise ValidationError(
                    f"Category {category.category_code} has a negative financing rate")

        now = datetime.now(timezone.utc)
        product = CreditProduct(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            max_installments=max_installments,
            financing_mode=financing_mode,
            day_count_convention=day_count_convention or self.default_day_count,
            pays_insurance=pays_insurance,
            insurance_range_metric=insurance_range_metric,
            insurance_accrual=insurance_accrual,
            categories=list(categories),
            **accounts
        )
        self._save_product(product)
        logger.info("Credit product %s created", code)
        return product

    def get_product(self, product_id: str) -> Optional[CreditProduct]:
        data = self.storage.load(self.products_table, product_id)
        return CreditProduct.from_dict(data) if data else None

    def get_product_by_code(self, code: str) -> Optional[CreditProduct]:
        matches = self.storage.find(self.products_table, {"code": code})
        return CreditProduct.from_dict(matches[0]) if matches else None

    def get_active_product(self, product_id: str) -> CreditProduct:
        product = self.get_product(product_id)
        if not product or not product.is_active:
            raise NotFoundError(f"Credit product {product_id} not found or inactive",
                                {"product_id": product_id})
        return product

    def set_product_active(self, product_id: str, is_active: bool) -> CreditProduct:
        product = self.get_product(product_id)
        if not product:
            raise NotFoundError(f"Credit product {product_id} not found")
        product.is_active = is_active
        product.updated_at = datetime.now(timezone.utc)
        self._save_product(product)
        return product

    def create_payment_frequency(
        self,
        name: str,
        schedule_mode: ScheduleMode = ScheduleMode.INTERVAL_DAYS,
        interval_days: Optional[int] = None,
        day_of_month: Optional[int] = None,
        semi_month_day1: Optional[int] = None,
        semi_month_day2: Optional[int] = None,
        end_of_month_fallback: bool = True,
        is_active: bool = True
    ) -> PaymentFrequency:
        now = datetime.now(timezone.utc)
        frequency = PaymentFrequency(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            schedule_mode=schedule_mode,
            interval_days=interval_days,
            day_of_month=day_of_month,
            semi_month_day1=semi_month_day1,
            semi_month_day2=semi_month_day2,
            end_of_month_fallback=end_of_month_fallback,
            is_active=is_active,
        )
        self.storage.save(self.frequencies_table, frequency.id, frequency.to_dict())
        return frequency

    def get_payment_frequency(self, frequency_id: str) -> Optional[PaymentFrequency]:
        data = self.storage.load(self.frequencies_table, frequency_id)
        return PaymentFrequency.from_dict(data) if data else None

    def resolve_rate(self, product_id: str, category_code: str, installment_count: int) -> RateResolution:
        """
        Resolve the financing rate for a product category and installment count

        Raises:
            NotFoundError: Product missing/inactive or no category tier covers the count
        """
        product = self.get_active_product(product_id)
        for category in product.categories:
            if (category.is_active and category.category_code == category_code
                    and category.covers(installment_count)):
                return RateResolution(
                    product_id=product.id,
                    category_code=category_code,
                    installment_count=installment_count,
                    financing_rate_percent=category.financing_rate_percent,
                )
        raise NotFoundError(
            f"No rate for product {product.code}, category {category_code}, "
            f"{installment_count} installments",
            {"product_id": product_id, "category_code": category_code,
             "installment_count": installment_count}
        )

    def resolve_cadence(self, frequency_id: Optional[str]) -> Cadence:
        """
        Resolve a payment frequency to its cadence rule

        Raises:
            ValidationError: No frequency given or it does not resolve to a positive interval
            NotFoundError: Frequency missing or inactive
        """
        if not frequency_id:
            raise ValidationError("A payment frequency is required")
        frequency = self.get_payment_frequency(frequency_id)
        if not frequency or not frequency.is_active:
            raise NotFoundError(f"Payment frequency {frequency_id} not found or inactive",
                                {"payment_frequency_id": frequency_id})
        return frequency.to_cadence()

    def resolve_insurance(self, product_id: str, insurer_id: Optional[str],
                          principal: Decimal, installment_count: int) -> Optional[InsuranceFactor]:
        """
        Resolve the insurance factor for a product, insurer and requested terms.
        Returns None when the product does not carry insurance.

        Raises:
            ValidationError: Product carries insurance but no insurer was chosen
            NotFoundError: Product or insurer missing/inactive
            NoApplicableRangeError: No insurer range covers the metric
        """
        product = self.get_active_product(product_id)
        if not product.pays_insurance:
            return None
        if not insurer_id:
            raise ValidationError(f"Product {product.code} requires an insurance company",
                                  {"product_id": product_id})

        if product.insurance_range_metric == RangeMetric.INSTALLMENT_COUNT:
            metric_value = Decimal(installment_count)
        else:
            metric_value = to_decimal(principal)
        return self.insurers.resolve(insurer_id, product.insurance_range_metric, metric_value)

    def _save_product(self, product: CreditProduct) -> None:
        self.storage.save(self.products_table, product.id, product.to_dict())
