import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient
from motor.motor_asyncio import AsyncIOMotorDatabase

from retail_core.container import build_container
from retail_core.core.config import Settings
from retail_core.db.mongo import create_indexes
from retail_core.db.session import Storage
from retail_core.models.invoice import Invoice, InvoiceItem, PurchaseItem, PurchaseOrder
from retail_core.models.party import Customer, Supplier
from retail_core.models.product import Product

# Test database configuration
TEST_MONGODB_DB = "retail_core_test"


@pytest.fixture
def test_settings() -> Settings:
    return Settings(MONGODB_TRANSACTIONS=False, COST_UPDATE_RETRIES=3)


@pytest_asyncio.fixture
async def test_db() -> AsyncIOMotorDatabase:
    """In-memory MongoDB with the production indexes, fresh per test."""
    client = AsyncMongoMockClient()
    db = client[TEST_MONGODB_DB]
    await create_indexes(db)

    yield db

    await client.drop_database(TEST_MONGODB_DB)


@pytest_asyncio.fixture
async def storage(test_db) -> Storage:
    # mongomock has no sessions, so compound operations take the compensating path
    return Storage(test_db, supports_atomic_transactions=False)


@pytest_asyncio.fixture
async def container(storage, test_settings):
    return build_container(storage, test_settings)


@pytest_asyncio.fixture
async def customer(container) -> Customer:
    return await container.parties.insert(Customer(name="Alice", phone="0100000001"))


@pytest_asyncio.fixture
async def supplier(container) -> Supplier:
    return await container.parties.insert(Supplier(name="Acme Wholesale", phone="0200000002"))


@pytest_asyncio.fixture
async def product(container) -> Product:
    """10 in the warehouse, 5 in the shop, average cost 5."""
    return await container.products.insert(
        Product(
            name="Olive Oil 1L",
            code="OIL-1",
            buy_price=5.0,
            retail_price=9.0,
            warehouse_qty=10,
            shop_qty=5,
            stock_qty=15,
        )
    )


@pytest_asyncio.fixture
async def empty_product(container) -> Product:
    return await container.products.insert(Product(name="Rice 5kg", code="RICE-5", buy_price=0.0, retail_price=12.0))


@pytest.fixture
def make_invoice():
    """Invoice factory: lines are (product, qty, unit_price) tuples."""
    counter = {"n": 0}

    def factory(lines, paid=None, customer=None, payment_type="cash", **kwargs):
        counter["n"] += 1
        items = [
            InvoiceItem(product_id=p.id, product_name=p.name, qty=qty, unit_price=price)
            for p, qty, price in lines
        ]
        total = sum(item.qty * item.unit_price for item in items)
        return Invoice(
            number=f"INV-{counter['n']:04d}",
            items=items,
            total=total,
            paid_amount=total if paid is None else paid,
            payment_type=payment_type,
            customer_id=customer.id if customer else None,
            customer_name=customer.name if customer else None,
            **kwargs,
        )

    return factory


@pytest_asyncio.fixture
async def purchase_order(container, supplier, empty_product):
    """Five units at 8.0 for a product that already holds ten at 5.0."""
    await container.stock.register_initial_balance(empty_product.id, 10, 0, 5.0)
    return await container.invoices.insert_purchase_order(
        PurchaseOrder(
            po_number="PO-0001",
            supplier_id=supplier.id,
            items=[PurchaseItem(product_id=empty_product.id, product_name=empty_product.name, qty=5, cost_price=8.0)],
            total_cost=40.0,
        )
    )
