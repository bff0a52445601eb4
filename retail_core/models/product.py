"""
Product stock state and stock movements.

Invariants:
- warehouse_qty >= 0 and shop_qty >= 0 unless a system override wrote them
- stock_qty == warehouse_qty + shop_qty after every mutation
- movements are append-only; a mistake is undone by a compensating movement
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from retail_core.models.base import MongoModel, PyObjectId
from retail_core.utils.dates import utcnow


class StockLocation(str, Enum):
    SHOP = "shop"
    WAREHOUSE = "warehouse"


class MovementType(str, Enum):
    IN = "IN"
    OUT = "OUT"
    SALE = "SALE"
    ADJUST = "ADJUST"
    TRANSFER_TO_SHOP = "TRANSFER_TO_SHOP"
    TRANSFER_TO_WAREHOUSE = "TRANSFER_TO_WAREHOUSE"
    INITIAL_BALANCE = "INITIAL_BALANCE"


class Product(MongoModel):
    name: str
    code: Optional[str] = None

    buy_price: float = Field(default=0.0, ge=0)  # moving weighted-average cost
    retail_price: float = 0.0

    warehouse_qty: float = 0.0
    shop_qty: float = 0.0
    stock_qty: float = 0.0

    opening_warehouse_qty: float = 0.0
    opening_shop_qty: float = 0.0
    opening_buy_price: float = 0.0

    is_active: bool = True

    def qty_at(self, location: str) -> float:
        return self.warehouse_qty if location == StockLocation.WAREHOUSE else self.shop_qty


class StockSnapshot(BaseModel):
    warehouse_qty: float
    shop_qty: float


class StockMovement(MongoModel):
    product_id: PyObjectId
    type: MovementType
    qty: float  # always the absolute quantity
    warehouse_delta: float = 0.0
    shop_delta: float = 0.0
    note: str = ""
    ref_id: Optional[str] = None
    created_by: Optional[PyObjectId] = None
    date: datetime = Field(default_factory=utcnow)
    snapshot: StockSnapshot


class StockLine(BaseModel):
    """One line of a sale, purchase, return or reversal handed to the costing ledger."""
    product_id: Optional[PyObjectId] = None
    product_name: str = ""
    qty: float
    source: StockLocation = StockLocation.SHOP
    cost_price: Optional[float] = None
    is_service: bool = False

    model_config = {"use_enum_values": True}
