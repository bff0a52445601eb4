"""
Wiring of repositories and ledgers.

Ledgers are built bottom-up (stock, debts, treasury, statistics, audit) and
handed to the FinanceService, which is the only component calling more
than one of them.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from retail_core.core.config import Settings, settings as default_settings
from retail_core.core.logging import configure_logging
from retail_core.db.mongo import connect_to_mongo, close_mongo_connection, get_db
from retail_core.db.session import Storage, open_storage
from retail_core.repositories.daily_sales_repo import DailySalesRepository
from retail_core.repositories.debt_repo import DebtRepository
from retail_core.repositories.invoice_repo import InvoiceRepository
from retail_core.repositories.log_repo import LogRepository
from retail_core.repositories.party_repo import PartyRepository
from retail_core.repositories.product_repo import ProductRepository
from retail_core.repositories.treasury_repo import TreasuryRepository
from retail_core.services.daily_sales_service import DailySalesService
from retail_core.services.debt_service import DebtService
from retail_core.services.finance_service import FinanceService
from retail_core.services.log_service import LogService
from retail_core.services.operation_runner import OperationRunner
from retail_core.services.stock_service import StockService
from retail_core.services.treasury_service import TreasuryService

logger = logging.getLogger("retail_core")


@dataclass
class Container:
    storage: Storage
    settings: Settings
    products: ProductRepository
    parties: PartyRepository
    invoices: InvoiceRepository
    stock: StockService
    debts: DebtService
    treasury: TreasuryService
    daily_sales: DailySalesService
    logs: LogService
    runner: OperationRunner
    finance: FinanceService


def build_container(storage: Storage, settings: Optional[Settings] = None) -> Container:
    settings = settings or default_settings
    db = storage.db

    products = ProductRepository(db)
    parties = PartyRepository(db)
    invoices = InvoiceRepository(db)

    stock = StockService(products, settings)
    debts = DebtService(DebtRepository(db), parties, settings)
    treasury = TreasuryService(TreasuryRepository(db), settings)
    daily_sales = DailySalesService(DailySalesRepository(db))
    logs = LogService(LogRepository(db))
    runner = OperationRunner(storage, settings)

    finance = FinanceService(
        runner=runner,
        stock=stock,
        debts=debts,
        treasury=treasury,
        daily_sales=daily_sales,
        logs=logs,
        parties=parties,
        invoices=invoices,
        settings=settings,
    )
    return Container(
        storage=storage,
        settings=settings,
        products=products,
        parties=parties,
        invoices=invoices,
        stock=stock,
        debts=debts,
        treasury=treasury,
        daily_sales=daily_sales,
        logs=logs,
        runner=runner,
        finance=finance,
    )


_container: Optional[Container] = None


async def startup(settings: Optional[Settings] = None) -> Container:
    """Connect, probe transaction support and build the process-wide container."""
    global _container
    settings = settings or default_settings
    configure_logging(settings)
    await connect_to_mongo()
    storage = await open_storage(get_db(), settings.MONGODB_TRANSACTIONS)
    _container = build_container(storage, settings)
    logger.info(
        "Ledger core ready (%s)",
        "atomic transactions" if storage.supports_atomic_transactions else "compensating actions",
    )
    return _container


async def shutdown() -> None:
    global _container
    _container = None
    await close_mongo_connection()


def get_container() -> Container:
    if _container is None:
        raise RuntimeError("Ledger core is not started")
    return _container
