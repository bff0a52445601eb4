import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from retail_core.core.config import settings

logger = logging.getLogger("retail_core.db")


class MongoDatabase:
    """MongoDB connection manager."""

    client: AsyncIOMotorClient = None
    db: AsyncIOMotorDatabase = None

mongodb = MongoDatabase()

async def connect_to_mongo():
    """Connect to MongoDB."""
    mongodb.client = AsyncIOMotorClient(settings.MONGODB_URL)
    mongodb.db = mongodb.client[settings.DATABASE_NAME]

    await create_indexes(mongodb.db)
    logger.info("Connected to MongoDB: %s", settings.DATABASE_NAME)

async def close_mongo_connection():
    """Disconnect from MongoDB."""
    if mongodb.client is not None:
        mongodb.client.close()
    logger.info("Disconnected from MongoDB")

async def detect_transaction_support(client) -> bool:
    """Multi-document transactions need a replica set member or a mongos router."""
    try:
        hello = await client.admin.command("hello")
    except PyMongoError:
        logger.warning("Could not probe MongoDB topology, assuming no transactions", exc_info=True)
        return False
    return bool(hello.get("setName")) or hello.get("msg") == "isdbgrid"

async def create_indexes(db: AsyncIOMotorDatabase):
    """Create database indexes."""
    # Stock
    await db["stock_movements"].create_index([("product_id", ASCENDING), ("date", DESCENDING)])
    await db["stock_movements"].create_index("ref_id")

    # Debts: one debt per debtor and originating document
    await db["debts"].create_index(
        [
            ("debtor_type", ASCENDING),
            ("debtor_id", ASCENDING),
            ("reference_type", ASCENDING),
            ("reference_id", ASCENDING),
        ],
        unique=True,
    )
    await db["debts"].create_index([("debtor_type", ASCENDING), ("debtor_id", ASCENDING), ("status", ASCENDING)])
    await db["debts"].create_index([("due_date", ASCENDING), ("status", ASCENDING)])
    await db["payment_schedules"].create_index("debt_id")
    await db["payment_schedules"].create_index(
        [("entity_type", ASCENDING), ("entity_id", ASCENDING), ("status", ASCENDING)]
    )

    # Treasury
    await db["cashbox_daily"].create_index("day", unique=True)
    await db["treasury_transactions"].create_index([("reference_type", ASCENDING), ("reference_id", ASCENDING)])
    await db["treasury_transactions"].create_index("date")
    await db["treasury_transactions"].create_index("partner_id")

    # Documents and statistics
    await db["daily_sales"].create_index("day", unique=True)
    await db["invoices"].create_index("number", unique=True)
    await db["invoices"].create_index("customer_id")
    await db["purchase_orders"].create_index("po_number", unique=True)
    await db["sales_returns"].create_index("original_invoice_id")
    await db["logs"].create_index([("entity", ASCENDING), ("entity_id", ASCENDING)])

def get_db() -> AsyncIOMotorDatabase:
    """Get database instance."""
    return mongodb.db
