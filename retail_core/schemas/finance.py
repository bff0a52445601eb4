from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from retail_core.models.base import PyObjectId


class SettleDebtRequest(BaseModel):
    """Pay against an invoice, purchase order or standalone debt."""
    type: str  # receivable | payable
    id: PyObjectId
    amount: float
    method: str = "cash"
    note: str = ""


class ReturnLineRequest(BaseModel):
    invoice_item_id: Optional[PyObjectId] = None
    product_id: Optional[PyObjectId] = None
    qty: float = Field(gt=0)


class SaleReturnRequest(BaseModel):
    items: List[ReturnLineRequest]
    refund_method: str = "cash"  # cash | customerBalance
    total_refund: Optional[float] = None  # defaults to qty * unit price of the returned lines


class ManualEntryRequest(BaseModel):
    amount: float
    reason: str
    category: str = "other"
    method: str = "cash"
    date: Optional[datetime] = None


class DebtAdjustmentRequest(BaseModel):
    original_amount: Optional[float] = None
    remaining_amount: Optional[float] = None
    due_date: Optional[datetime] = None
    description: Optional[str] = None
