"""
Engine Wiring Module

Builds the full set of lending components over one storage backend.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Callable, Optional

from .applications import LoanApplicationService
from .billing import BillingManager
from .cache import TTLCache
from .cadence import DayCountConvention
from .config import LendingConfig, get_config
from .insurance import InsurerManager
from .ledger import AccountingLedger
from .loans import LoanManager
from .logging_config import setup_logging_from_config
from .payments import PaymentPostingEngine
from .portfolio import PortfolioLedger
from .products import ProductCatalog
from .reference import ReferenceRegistry
from .statements import LoanStatementService
from .storage import StorageInterface, create_storage


@dataclass
class LendingEngine:
    storage: StorageInterface
    settings: LendingConfig
    cache: TTLCache
    insurers: InsurerManager
    products: ProductCatalog
    references: ReferenceRegistry
    billing: BillingManager
    ledger: AccountingLedger
    portfolio: PortfolioLedger
    loans: LoanManager
    applications: LoanApplicationService
    payments: PaymentPostingEngine
    statements: LoanStatementService


def build_engine(storage: Optional[StorageInterface] = None,
                 settings: Optional[LendingConfig] = None,
                 today: Callable[[], date] = date.today,
                 configure_logging: bool = True) -> LendingEngine:
    """
    Wire every component over a storage backend. The backend is created from
    `settings.database_url` when not supplied, and the "lending" logger is
    configured from the settings unless `configure_logging` is False.
    """
    settings = settings or get_config()
    if configure_logging:
        setup_logging_from_config(settings)
    if storage is None:
        storage = create_storage(settings.database_url, settings.transaction_timeout_seconds)

    cache = TTLCache(settings.summary_cache_ttl_seconds)
    insurers = InsurerManager(storage)
    products = ProductCatalog(storage, insurers,
                              DayCountConvention(settings.default_day_count_convention))
    references = ReferenceRegistry(storage)
    billing = BillingManager(storage)
    ledger = AccountingLedger(storage)
    portfolio = PortfolioLedger(storage, Decimal(settings.balance_epsilon))
    loans = LoanManager(storage, products, references, ledger, portfolio)

    return LendingEngine(
        storage=storage,
        settings=settings,
        cache=cache,
        insurers=insurers,
        products=products,
        references=references,
        billing=billing,
        ledger=ledger,
        portfolio=portfolio,
        loans=loans,
        applications=LoanApplicationService(storage, products, references, billing, loans,
                                            settings=settings, clock=today),
        payments=PaymentPostingEngine(storage, loans, references, ledger, portfolio,
                                      cache=cache, settings=settings),
        statements=LoanStatementService(portfolio, cache=cache, clock=today),
    )
