from typing import List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from retail_core.models.treasury import CashboxDaily, ManualEntry, TreasuryTransaction
from retail_core.utils.dates import utcnow


class TreasuryRepository:
    """Treasury transactions, daily cashbox rows and the receipt counter."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.transactions = db["treasury_transactions"]
        self.cashbox = db["cashbox_daily"]
        self.counters = db["counters"]

    async def next_sequence(self, name: str, session=None) -> int:
        """Atomic $inc upsert; never read-increment-write."""
        doc = await self.counters.find_one_and_update(
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return doc["seq"]

    # Transactions

    async def insert_transaction(self, tx: TreasuryTransaction, session=None) -> TreasuryTransaction:
        await self.transactions.insert_one(tx.to_mongo(), session=session)
        return tx

    async def get_transaction(self, tx_id: ObjectId, session=None) -> Optional[TreasuryTransaction]:
        doc = await self.transactions.find_one({"_id": tx_id}, session=session)
        if doc:
            return TreasuryTransaction(**doc)
        return None

    async def delete_transaction(self, tx_id: ObjectId, session=None) -> bool:
        result = await self.transactions.delete_one({"_id": tx_id}, session=session)
        return result.deleted_count > 0

    async def find_by_reference(
        self, reference_type: str, reference_id: ObjectId, session=None
    ) -> List[TreasuryTransaction]:
        cursor = self.transactions.find(
            {"reference_type": reference_type, "reference_id": reference_id}, session=session
        )
        docs = await cursor.to_list(None)
        return [TreasuryTransaction(**doc) for doc in docs]

    async def find_transactions(self, query: dict, page: int = 1, limit: int = 50) -> List[TreasuryTransaction]:
        skip = max(page - 1, 0) * limit
        cursor = self.transactions.find(query).sort("date", -1).skip(skip).limit(limit)
        docs = await cursor.to_list(None)
        return [TreasuryTransaction(**doc) for doc in docs]

    async def count_transactions(self, query: dict) -> int:
        return await self.transactions.count_documents(query)

    # Cashbox

    async def get_cashbox(self, day: str, session=None) -> Optional[CashboxDaily]:
        doc = await self.cashbox.find_one({"day": day}, session=session)
        if doc:
            return CashboxDaily(**doc)
        return None

    async def latest_before(self, day: str, session=None) -> Optional[CashboxDaily]:
        doc = await self.cashbox.find_one({"day": {"$lt": day}}, sort=[("day", -1)], session=session)
        if doc:
            return CashboxDaily(**doc)
        return None

    async def latest(self, session=None) -> Optional[CashboxDaily]:
        doc = await self.cashbox.find_one({}, sort=[("day", -1)], session=session)
        if doc:
            return CashboxDaily(**doc)
        return None

    async def insert_cashbox_if_missing(self, row: CashboxDaily, session=None) -> None:
        """Upsert on day; a concurrent creator wins and our seed is discarded."""
        doc = row.to_mongo()
        doc.pop("day")
        await self.cashbox.update_one(
            {"day": row.day},
            {"$setOnInsert": doc},
            upsert=True,
            session=session,
        )

    async def apply_contribution(
        self, day: str, field: str, amount: float, contribution_id: ObjectId, session=None
    ) -> bool:
        """Add amount to an accumulator once per contribution id."""
        result = await self.cashbox.update_one(
            {"day": day, "applied_contributions": {"$ne": contribution_id}},
            {
                "$inc": {field: amount},
                "$push": {"applied_contributions": contribution_id},
                "$set": {"updated_at": utcnow()},
            },
            session=session,
        )
        return result.modified_count > 0

    async def revert_contribution(
        self, day: str, field: str, amount: float, contribution_id: ObjectId, session=None
    ) -> bool:
        """Remove a contribution once. False when it was never applied or already reverted."""
        result = await self.cashbox.update_one(
            {"day": day, "applied_contributions": contribution_id},
            {
                "$inc": {field: -amount},
                "$pull": {"applied_contributions": contribution_id},
                "$set": {"updated_at": utcnow()},
            },
            session=session,
        )
        return result.modified_count > 0

    async def increment_fields(self, day: str, deltas: dict, session=None) -> None:
        await self.cashbox.update_one(
            {"day": day},
            {"$inc": deltas, "$set": {"updated_at": utcnow()}},
            session=session,
        )

    async def push_manual_entry(self, day: str, list_field: str, entry: ManualEntry, session=None) -> bool:
        result = await self.cashbox.update_one(
            {"day": day, f"{list_field}._id": {"$ne": entry.id}},
            {
                "$push": {list_field: entry.model_dump(by_alias=True)},
                "$set": {"updated_at": utcnow()},
            },
            session=session,
        )
        return result.modified_count > 0

    async def pull_manual_entry(self, day: str, list_field: str, entry_id: ObjectId, session=None) -> bool:
        result = await self.cashbox.update_one(
            {"day": day, f"{list_field}._id": entry_id},
            {"$pull": {list_field: {"_id": entry_id}}, "$set": {"updated_at": utcnow()}},
            session=session,
        )
        return result.modified_count > 0

    async def set_fields(self, day: str, updates: dict, session=None) -> Optional[CashboxDaily]:
        updates = dict(updates, updated_at=utcnow())
        doc = await self.cashbox.find_one_and_update(
            {"day": day},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc:
            return CashboxDaily(**doc)
        return None

    async def history(self, start: Optional[str] = None, end: Optional[str] = None) -> List[CashboxDaily]:
        query = {}
        if start or end:
            query["day"] = {}
            if start:
                query["day"]["$gte"] = start
            if end:
                query["day"]["$lte"] = end
        cursor = self.cashbox.find(query).sort("day", -1)
        docs = await cursor.to_list(None)
        return [CashboxDaily(**doc) for doc in docs]

