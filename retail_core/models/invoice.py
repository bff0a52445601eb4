from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from retail_core.models.base import MongoModel, PyObjectId
from retail_core.models.product import StockLocation
from retail_core.utils.dates import utcnow


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class PurchaseStatus(str, Enum):
    PENDING = "PENDING"
    RECEIVED = "RECEIVED"
    CANCELLED = "CANCELLED"


class RefundMethod(str, Enum):
    CASH = "cash"
    CUSTOMER_BALANCE = "customerBalance"


class DocumentPayment(BaseModel):
    id: PyObjectId = Field(default_factory=PyObjectId, alias="_id")
    amount: float
    method: str = "cash"
    note: str = ""
    date: datetime = Field(default_factory=utcnow)
    recorded_by: Optional[PyObjectId] = None
    # Treasury reference the cash was booked under, when not the document itself
    collection_reference: Optional[str] = None

    model_config = {"populate_by_name": True, "arbitrary_types_allowed": True}


class InvoiceItem(BaseModel):
    item_id: PyObjectId = Field(default_factory=PyObjectId)
    product_id: Optional[PyObjectId] = None  # service lines carry none
    product_name: str
    qty: float = Field(gt=0)
    unit_price: float = 0.0
    source: StockLocation = StockLocation.SHOP
    is_service: bool = False
    total: float = 0.0
    cost_price: Optional[float] = None
    profit: Optional[float] = None

    model_config = {"use_enum_values": True}


class Invoice(MongoModel):
    number: str
    date: datetime = Field(default_factory=utcnow)
    items: List[InvoiceItem] = []

    subtotal: float = 0.0
    tax: float = 0.0
    total: float = Field(ge=0)
    used_credit_balance: float = Field(default=0.0, ge=0)

    payment_type: str = "cash"  # cash | credit | partial | bank | wallet | check
    payment_status: PaymentStatus = PaymentStatus.PENDING
    paid_amount: float = Field(default=0.0, ge=0)
    due_date: Optional[datetime] = None
    payments: List[DocumentPayment] = []

    total_cost: float = 0.0
    profit: float = 0.0

    customer_id: Optional[PyObjectId] = None
    customer_name: Optional[str] = None

    created_by: Optional[PyObjectId] = None
    has_returns: bool = False
    notes: Optional[str] = None

    # Names of reversal steps already applied, so an interrupted reversal resumes
    reversed_steps: List[str] = []

    @property
    def remaining(self) -> float:
        return self.total - self.paid_amount


class PurchaseItem(BaseModel):
    product_id: PyObjectId
    product_name: str = ""
    qty: float = Field(gt=0)
    cost_price: float = Field(ge=0)


class PurchaseOrder(MongoModel):
    po_number: str
    supplier_id: Optional[PyObjectId] = None
    items: List[PurchaseItem] = []
    total_cost: float = Field(default=0.0, ge=0)

    status: PurchaseStatus = PurchaseStatus.PENDING
    expected_date: Optional[datetime] = None
    received_date: Optional[datetime] = None

    payment_type: str = "cash"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    paid_amount: float = 0.0
    payments: List[DocumentPayment] = []

    created_by: Optional[PyObjectId] = None
    notes: Optional[str] = None
    reversed_steps: List[str] = []


class ReturnItem(BaseModel):
    invoice_item_id: Optional[PyObjectId] = None
    product_id: Optional[PyObjectId] = None
    product_name: str = ""
    qty: float = Field(gt=0)
    unit_price: float = 0.0
    refund_amount: float = 0.0
    is_service: bool = False


class SalesReturn(MongoModel):
    return_number: str
    original_invoice_id: PyObjectId
    customer_id: Optional[PyObjectId] = None
    items: List[ReturnItem] = []
    total_refund: float = Field(ge=0)
    refund_method: RefundMethod
    customer_balance_added: float = 0.0
    treasury_deducted: float = 0.0
    created_by: Optional[PyObjectId] = None
