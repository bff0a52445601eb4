from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from retail_core.models.base import MongoModel, PyObjectId
from retail_core.utils.dates import utcnow


class LogEntry(MongoModel):
    user_id: Optional[PyObjectId] = None
    action: str
    entity: str
    entity_id: Optional[str] = None
    diff: Dict[str, Any] = {}
    note: str = ""
    date: datetime = Field(default_factory=utcnow)


class DailySalesEntry(BaseModel):
    """What one invoice added to the day, kept so reversal subtracts the same figures."""
    invoice_id: PyObjectId
    revenue: float = 0.0
    cost: float = 0.0
    profit: float = 0.0
    items_sold: float = 0.0
    cash_sales: float = 0.0
    credit_sales: float = 0.0


class DailySales(MongoModel):
    day: str
    total_revenue: float = 0.0
    total_cost: float = 0.0
    total_profit: float = 0.0
    invoice_count: int = 0
    items_sold: float = 0.0
    cash_sales: float = 0.0
    credit_sales: float = 0.0
    entries: List[DailySalesEntry] = []
