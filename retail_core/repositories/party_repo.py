from datetime import datetime
from typing import Optional, Union

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from retail_core.models.debt import DebtorType
from retail_core.models.party import Customer, Supplier
from retail_core.utils.dates import utcnow

Party = Union[Customer, Supplier]


class PartyRepository:
    """Customers and suppliers. Only targeted increments, never read-modify-write."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.customers = db["customers"]
        self.suppliers = db["suppliers"]

    def _collection(self, debtor_type: str):
        return self.customers if debtor_type == DebtorType.CUSTOMER else self.suppliers

    @staticmethod
    def _model(debtor_type: str, doc: dict) -> Party:
        return Customer(**doc) if debtor_type == DebtorType.CUSTOMER else Supplier(**doc)

    async def insert(self, party: Party, session=None) -> Party:
        debtor_type = DebtorType.CUSTOMER if isinstance(party, Customer) else DebtorType.SUPPLIER
        await self._collection(debtor_type).insert_one(party.to_mongo(), session=session)
        return party

    async def get(self, debtor_type: str, party_id: ObjectId, session=None) -> Optional[Party]:
        doc = await self._collection(debtor_type).find_one({"_id": party_id}, session=session)
        if doc:
            return self._model(debtor_type, doc)
        return None

    async def _inc(self, debtor_type: str, query: dict, inc: dict, extra_set: Optional[dict] = None, session=None):
        updates = {"updated_at": utcnow()}
        if extra_set:
            updates.update(extra_set)
        doc = await self._collection(debtor_type).find_one_and_update(
            query,
            {"$inc": inc, "$set": updates},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc:
            return self._model(debtor_type, doc)
        return None

    async def inc_balance(self, debtor_type: str, party_id: ObjectId, delta: float, session=None) -> Optional[Party]:
        return await self._inc(debtor_type, {"_id": party_id}, {"balance": delta}, session=session)

    async def inc_credit(self, customer_id: ObjectId, delta: float, session=None) -> Optional[Customer]:
        return await self._inc(DebtorType.CUSTOMER, {"_id": customer_id}, {"credit_balance": delta}, session=session)

    async def take_credit(self, customer_id: ObjectId, amount: float, session=None) -> Optional[Customer]:
        """Conditional decrement of prepaid credit. None when the credit does not cover amount."""
        return await self._inc(
            DebtorType.CUSTOMER,
            {"_id": customer_id, "credit_balance": {"$gte": amount}},
            {"credit_balance": -amount},
            session=session,
        )

    async def record_purchase(
        self, debtor_type: str, party_id: ObjectId, amount: float, when: Optional[datetime] = None, session=None
    ) -> Optional[Party]:
        """Lifetime totals. Customers buy from us, suppliers supply us."""
        extra = None
        if when is not None:
            field = "last_purchase_date" if debtor_type == DebtorType.CUSTOMER else "last_supply_date"
            extra = {field: when}
        return await self._inc(debtor_type, {"_id": party_id}, {"total_purchases": amount}, extra, session=session)
