from typing import List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from retail_core.models.invoice import DocumentPayment, Invoice, PurchaseOrder, SalesReturn
from retail_core.utils.dates import utcnow


class InvoiceRepository:
    """
    Invoices, purchase orders and sales returns.

    These documents are shared with the request layer; this repository only
    touches the payment, line-item and receipt fields the ledgers own.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.invoices = db["invoices"]
        self.purchase_orders = db["purchase_orders"]
        self.returns = db["sales_returns"]

    # Invoices

    async def insert_invoice(self, invoice: Invoice, session=None) -> Invoice:
        await self.invoices.insert_one(invoice.to_mongo(), session=session)
        return invoice

    async def get_invoice(self, invoice_id: ObjectId, session=None) -> Optional[Invoice]:
        doc = await self.invoices.find_one({"_id": invoice_id}, session=session)
        if doc:
            return Invoice(**doc)
        return None

    async def update_invoice(
        self, invoice_id: ObjectId, updates: dict, expected: Optional[dict] = None, push: Optional[dict] = None,
        pull: Optional[dict] = None, session=None,
    ) -> Optional[Invoice]:
        return await self._update(self.invoices, Invoice, invoice_id, updates, expected, push, pull, session)

    async def delete_invoice(self, invoice_id: ObjectId, session=None) -> bool:
        result = await self.invoices.delete_one({"_id": invoice_id}, session=session)
        return result.deleted_count > 0

    async def mark_reversal_step(self, invoice_id: ObjectId, step: str, session=None) -> None:
        await self.invoices.update_one(
            {"_id": invoice_id}, {"$addToSet": {"reversed_steps": step}}, session=session
        )

    # Purchase orders

    async def insert_purchase_order(self, po: PurchaseOrder, session=None) -> PurchaseOrder:
        await self.purchase_orders.insert_one(po.to_mongo(), session=session)
        return po

    async def get_purchase_order(self, po_id: ObjectId, session=None) -> Optional[PurchaseOrder]:
        doc = await self.purchase_orders.find_one({"_id": po_id}, session=session)
        if doc:
            return PurchaseOrder(**doc)
        return None

    async def update_purchase_order(
        self, po_id: ObjectId, updates: dict, expected: Optional[dict] = None, push: Optional[dict] = None,
        pull: Optional[dict] = None, session=None,
    ) -> Optional[PurchaseOrder]:
        return await self._update(self.purchase_orders, PurchaseOrder, po_id, updates, expected, push, pull, session)

    async def mark_purchase_reversal_step(self, po_id: ObjectId, step: str, session=None) -> None:
        await self.purchase_orders.update_one(
            {"_id": po_id}, {"$addToSet": {"reversed_steps": step}}, session=session
        )

    # Sales returns

    async def insert_return(self, sales_return: SalesReturn, session=None) -> SalesReturn:
        await self.returns.insert_one(sales_return.to_mongo(), session=session)
        return sales_return

    async def delete_return(self, return_id: ObjectId, session=None) -> bool:
        result = await self.returns.delete_one({"_id": return_id}, session=session)
        return result.deleted_count > 0

    async def find_returns(self, invoice_id: ObjectId) -> List[SalesReturn]:
        cursor = self.returns.find({"original_invoice_id": invoice_id}).sort("created_at", -1)
        docs = await cursor.to_list(None)
        return [SalesReturn(**doc) for doc in docs]

    @staticmethod
    def payment_doc(payment: DocumentPayment) -> dict:
        return payment.model_dump(by_alias=True)

    async def _update(self, collection, model, doc_id, updates, expected, push, pull, session):
        """
        $set updates, optionally guarded by expected field values.

        Returns None when the document is gone or the guard no longer holds.
        """
        query = {"_id": doc_id}
        if expected:
            query.update(expected)

        operations = {"$set": dict(updates, updated_at=utcnow())}
        if push:
            operations["$push"] = push
        if pull:
            operations["$pull"] = pull

        doc = await collection.find_one_and_update(
            query, operations, return_document=ReturnDocument.AFTER, session=session
        )
        if doc:
            return model(**doc)
        return None
