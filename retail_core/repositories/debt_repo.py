from datetime import datetime
from typing import List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from retail_core.models.debt import (
    Debt,
    DebtStatus,
    OPEN_STATUSES,
    PaymentSchedule,
    ScheduleStatus,
    UNPAID_SCHEDULE_STATUSES,
)
from retail_core.utils.dates import utcnow


class DebtRepository:
    """Debts and their installment schedules."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["debts"]
        self.schedules = db["payment_schedules"]

    async def insert(self, debt: Debt, session=None) -> Debt:
        await self.collection.insert_one(debt.to_mongo(), session=session)
        return debt

    async def get(self, debt_id: ObjectId, session=None) -> Optional[Debt]:
        doc = await self.collection.find_one({"_id": debt_id}, session=session)
        if doc:
            return Debt(**doc)
        return None

    async def find_by_key(
        self, debtor_type: str, debtor_id: ObjectId, reference_type: str, reference_id: ObjectId, session=None
    ) -> Optional[Debt]:
        doc = await self.collection.find_one(
            {
                "debtor_type": debtor_type,
                "debtor_id": debtor_id,
                "reference_type": reference_type,
                "reference_id": reference_id,
            },
            session=session,
        )
        if doc:
            return Debt(**doc)
        return None

    async def find_by_reference(
        self, reference_type: Optional[str], reference_id: ObjectId, debtor_type: Optional[str] = None, session=None
    ) -> Optional[Debt]:
        query = {"reference_id": reference_id}
        if reference_type:
            query["reference_type"] = reference_type
        if debtor_type:
            query["debtor_type"] = debtor_type
        doc = await self.collection.find_one(query, session=session)
        if doc:
            return Debt(**doc)
        return None

    async def find_open(self, debtor_type: str, debtor_id: Optional[ObjectId] = None, session=None) -> List[Debt]:
        """Open debts, oldest due date first."""
        query = {"debtor_type": debtor_type, "status": {"$in": OPEN_STATUSES}}
        if debtor_id is not None:
            query["debtor_id"] = debtor_id
        cursor = self.collection.find(query, session=session).sort("due_date", 1)
        docs = await cursor.to_list(None)
        return [Debt(**doc) for doc in docs]

    async def sum_open_remaining(self, debtor_type: str, debtor_id: ObjectId, session=None) -> float:
        pipeline = [
            {"$match": {"debtor_type": debtor_type, "debtor_id": debtor_id, "status": {"$in": OPEN_STATUSES}}},
            {"$group": {"_id": None, "total": {"$sum": "$remaining_amount"}}},
        ]
        cursor = self.collection.aggregate(pipeline, session=session)
        rows = await cursor.to_list(None)
        return rows[0]["total"] if rows else 0.0

    async def sum_collected(self, debtor_type: str) -> float:
        pipeline = [
            {"$match": {"debtor_type": debtor_type, "status": {"$ne": DebtStatus.WRITTEN_OFF.value}}},
            {
                "$group": {
                    "_id": None,
                    "original": {"$sum": "$original_amount"},
                    "remaining": {"$sum": "$remaining_amount"},
                }
            },
        ]
        rows = await self.collection.aggregate(pipeline).to_list(None)
        if not rows:
            return 0.0
        return rows[0]["original"] - rows[0]["remaining"]

    async def compare_and_set(self, debt_id: ObjectId, expected: dict, updates: dict, session=None) -> Optional[Debt]:
        """Apply updates only if the fields in expected still hold."""
        query = {"_id": debt_id}
        query.update(expected)
        updates = dict(updates, updated_at=utcnow())
        doc = await self.collection.find_one_and_update(
            query,
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc:
            return Debt(**doc)
        return None

    async def delete(self, debt_id: ObjectId, session=None) -> Optional[Debt]:
        """Remove and return the debt. None if another caller removed it first."""
        doc = await self.collection.find_one_and_delete({"_id": debt_id}, session=session)
        if doc:
            return Debt(**doc)
        return None

    async def mark_overdue(self, now: datetime) -> int:
        result = await self.collection.update_many(
            {"status": DebtStatus.ACTIVE.value, "due_date": {"$lt": now}},
            {"$set": {"status": DebtStatus.OVERDUE.value, "updated_at": now}},
        )
        return result.modified_count

    async def find_page(self, query: dict, page: int = 1, limit: int = 20) -> List[Debt]:
        skip = max(page - 1, 0) * limit
        cursor = self.collection.find(query).sort("due_date", 1).skip(skip).limit(limit)
        docs = await cursor.to_list(None)
        return [Debt(**doc) for doc in docs]

    async def count(self, query: dict) -> int:
        return await self.collection.count_documents(query)

    # Payment schedules

    async def insert_schedules(self, schedules: List[PaymentSchedule], session=None) -> List[PaymentSchedule]:
        if schedules:
            await self.schedules.insert_many([s.to_mongo() for s in schedules], session=session)
        return schedules

    async def delete_unpaid_schedules(self, debt_id: ObjectId, session=None) -> int:
        result = await self.schedules.delete_many(
            {"debt_id": debt_id, "status": {"$in": UNPAID_SCHEDULE_STATUSES}}, session=session
        )
        return result.deleted_count

    async def delete_schedules(self, debt_id: ObjectId, session=None) -> int:
        result = await self.schedules.delete_many({"debt_id": debt_id}, session=session)
        return result.deleted_count

    async def cancel_unpaid_schedules(self, debt_id: ObjectId, session=None) -> int:
        result = await self.schedules.update_many(
            {"debt_id": debt_id, "status": {"$in": UNPAID_SCHEDULE_STATUSES}},
            {"$set": {"status": ScheduleStatus.CANCELLED.value, "updated_at": utcnow()}},
            session=session,
        )
        return result.modified_count

    async def find_schedules(self, debt_id: ObjectId, session=None) -> List[PaymentSchedule]:
        cursor = self.schedules.find({"debt_id": debt_id}, session=session).sort("due_date", 1)
        docs = await cursor.to_list(None)
        return [PaymentSchedule(**doc) for doc in docs]

    async def find_unpaid_schedules(self, entity_type: str, entity_id: ObjectId, session=None) -> List[PaymentSchedule]:
        cursor = self.schedules.find(
            {"entity_type": entity_type, "entity_id": entity_id, "status": {"$in": UNPAID_SCHEDULE_STATUSES}},
            session=session,
        ).sort("due_date", 1)
        docs = await cursor.to_list(None)
        return [PaymentSchedule(**doc) for doc in docs]

    async def update_schedule(self, schedule_id: ObjectId, updates: dict, session=None) -> None:
        updates = dict(updates, updated_at=utcnow())
        await self.schedules.update_one({"_id": schedule_id}, {"$set": updates}, session=session)

    async def get_schedule(self, schedule_id: ObjectId, session=None) -> Optional[PaymentSchedule]:
        doc = await self.schedules.find_one({"_id": schedule_id}, session=session)
        if doc:
            return PaymentSchedule(**doc)
        return None
