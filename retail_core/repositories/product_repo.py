from datetime import datetime
from typing import List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from retail_core.models.product import Product, StockMovement
from retail_core.utils.dates import utcnow


class ProductRepository:
    """Product stock state and the append-only movement journal."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["products"]
        self.movements = db["stock_movements"]

    async def insert(self, product: Product, session=None) -> Product:
        await self.collection.insert_one(product.to_mongo(), session=session)
        return product

    async def get(self, product_id: ObjectId, session=None) -> Optional[Product]:
        doc = await self.collection.find_one({"_id": product_id}, session=session)
        if doc:
            return Product(**doc)
        return None

    async def apply_deltas(
        self,
        product_id: ObjectId,
        warehouse_delta: float = 0.0,
        shop_delta: float = 0.0,
        guard: Optional[dict] = None,
        session=None,
    ) -> Optional[Product]:
        """
        Increment both locations and stock_qty in one update.

        guard is merged into the filter, e.g. {"shop_qty": {"$gte": 3}} turns
        the write into a conditional decrement. Returns None when it did not match.
        """
        query = {"_id": product_id}
        if guard:
            query.update(guard)

        doc = await self.collection.find_one_and_update(
            query,
            {
                "$inc": {
                    "warehouse_qty": warehouse_delta,
                    "shop_qty": shop_delta,
                    "stock_qty": warehouse_delta + shop_delta,
                },
                "$set": {"updated_at": utcnow()},
            },
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc:
            return Product(**doc)
        return None

    async def compare_and_set_cost(
        self,
        product: Product,
        warehouse_delta: float,
        new_buy_price: float,
        guard: Optional[dict] = None,
        session=None,
    ) -> Optional[Product]:
        """Move warehouse stock and replace cost only if qty and cost are still what we read."""
        query = {
            "_id": product.id,
            "stock_qty": product.stock_qty,
            "buy_price": product.buy_price,
        }
        if guard:
            query.update(guard)

        doc = await self.collection.find_one_and_update(
            query,
            {
                "$inc": {"warehouse_qty": warehouse_delta, "stock_qty": warehouse_delta},
                "$set": {"buy_price": new_buy_price, "updated_at": utcnow()},
            },
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc:
            return Product(**doc)
        return None

    async def overwrite_quantities(
        self, product_id: ObjectId, warehouse_qty: float, shop_qty: float, extra: Optional[dict] = None, session=None
    ) -> Optional[Product]:
        updates = {
            "warehouse_qty": warehouse_qty,
            "shop_qty": shop_qty,
            "stock_qty": warehouse_qty + shop_qty,
            "updated_at": utcnow(),
        }
        if extra:
            updates.update(extra)

        doc = await self.collection.find_one_and_update(
            {"_id": product_id},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc:
            return Product(**doc)
        return None

    async def insert_movement(self, movement: StockMovement, session=None) -> StockMovement:
        await self.movements.insert_one(movement.to_mongo(), session=session)
        return movement

    async def count_movements(self, product_id: ObjectId, session=None) -> int:
        return await self.movements.count_documents({"product_id": product_id}, session=session)

    async def find_movements(
        self,
        product_id: Optional[ObjectId] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        kind: Optional[str] = None,
        ref_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[StockMovement]:
        query = {}
        if product_id is not None:
            query["product_id"] = product_id
        if kind:
            query["type"] = kind
        if ref_id:
            query["ref_id"] = ref_id
        if start or end:
            query["date"] = {}
            if start:
                query["date"]["$gte"] = start
            if end:
                query["date"]["$lte"] = end

        cursor = self.movements.find(query).sort("date", -1).limit(limit)
        docs = await cursor.to_list(None)
        return [StockMovement(**doc) for doc in docs]
