from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from retail_core.models.audit import DailySales, DailySalesEntry
from retail_core.utils.dates import utcnow

TOTAL_FIELDS = {
    "revenue": "total_revenue",
    "cost": "total_cost",
    "profit": "total_profit",
    "items_sold": "items_sold",
    "cash_sales": "cash_sales",
    "credit_sales": "credit_sales",
}


class DailySalesRepository:
    """One row per day; each invoice contributes at most once."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["daily_sales"]

    async def get(self, day: str, session=None) -> Optional[DailySales]:
        doc = await self.collection.find_one({"day": day}, session=session)
        if doc:
            return DailySales(**doc)
        return None

    async def ensure_day(self, day: str, session=None) -> None:
        seed = DailySales(day=day).to_mongo()
        seed.pop("day")
        await self.collection.update_one({"day": day}, {"$setOnInsert": seed}, upsert=True, session=session)

    async def add_entry(self, day: str, entry: DailySalesEntry, session=None) -> bool:
        inc = {field: getattr(entry, key) for key, field in TOTAL_FIELDS.items()}
        inc["invoice_count"] = 1
        result = await self.collection.update_one(
            {"day": day, "entries.invoice_id": {"$ne": entry.invoice_id}},
            {"$inc": inc, "$push": {"entries": entry.model_dump()}, "$set": {"updated_at": utcnow()}},
            session=session,
        )
        return result.modified_count > 0

    async def remove_entry(self, day: str, entry: DailySalesEntry, session=None) -> bool:
        inc = {field: -getattr(entry, key) for key, field in TOTAL_FIELDS.items()}
        inc["invoice_count"] = -1
        result = await self.collection.update_one(
            {"day": day, "entries.invoice_id": entry.invoice_id},
            {
                "$inc": inc,
                "$pull": {"entries": {"invoice_id": entry.invoice_id}},
                "$set": {"updated_at": utcnow()},
            },
            session=session,
        )
        return result.modified_count > 0

    async def find_entry(self, day: str, invoice_id: ObjectId, session=None) -> Optional[DailySalesEntry]:
        row = await self.get(day, session=session)
        if row is None:
            return None
        for entry in row.entries:
            if entry.invoice_id == invoice_id:
                return entry
        return None
