"""
Debt model - obligations of customers (receivables) and suppliers (payables).

Invariants:
- 0 <= remaining_amount <= original_amount
- status == settled iff remaining_amount == 0
- one debt per (debtor_type, debtor_id, reference_type, reference_id)
- the debtor's balance moves in lockstep with remaining_amount
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from retail_core.models.base import MongoModel, PyObjectId


class DebtorType(str, Enum):
    CUSTOMER = "Customer"
    SUPPLIER = "Supplier"


class DebtStatus(str, Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    SETTLED = "settled"
    WRITTEN_OFF = "written-off"


OPEN_STATUSES = [DebtStatus.ACTIVE.value, DebtStatus.OVERDUE.value]


class ReferenceType(str, Enum):
    INVOICE = "Invoice"
    PURCHASE_ORDER = "PurchaseOrder"
    MANUAL = "Manual"
    CUSTOMER = "Customer"
    SUPPLIER = "Supplier"


class ScheduleStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


UNPAID_SCHEDULE_STATUSES = [ScheduleStatus.PENDING.value, ScheduleStatus.OVERDUE.value]


class Debt(MongoModel):
    debtor_type: DebtorType
    debtor_id: PyObjectId

    original_amount: float = Field(ge=0)
    remaining_amount: float = Field(ge=0)

    status: DebtStatus = DebtStatus.ACTIVE
    due_date: datetime

    reference_type: ReferenceType
    reference_id: PyObjectId

    description: str = ""
    meta: Dict[str, Any] = {}
    created_by: Optional[PyObjectId] = None

    @property
    def collected_amount(self) -> float:
        return self.original_amount - self.remaining_amount

    @property
    def progress(self) -> float:
        if self.original_amount == 0:
            return 100.0
        return (self.collected_amount / self.original_amount) * 100

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


class PaymentSchedule(MongoModel):
    entity_type: DebtorType
    entity_id: PyObjectId
    debt_id: PyObjectId

    sequence: int = 1
    amount: float = Field(ge=0)
    paid_amount: float = 0.0
    due_date: datetime
    status: ScheduleStatus = ScheduleStatus.PENDING
    paid_at: Optional[datetime] = None

    notes: str = ""
    created_by: Optional[PyObjectId] = None

    @property
    def outstanding(self) -> float:
        return self.amount - self.paid_amount


class AgingTiers(BaseModel):
    current: float = 0.0
    tier1: float = 0.0  # 1-30 days
    tier2: float = 0.0  # 31-60 days
    tier3: float = 0.0  # 60+ days


class AgingReport(BaseModel):
    debtor_type: DebtorType
    total: float = 0.0
    overdue: float = 0.0
    collected: float = 0.0
    tiers: AgingTiers = Field(default_factory=AgingTiers)

    model_config = {"use_enum_values": True}


class DebtOverview(BaseModel):
    receivables: AgingReport
    payables: AgingReport
    total_net: float
    risk_score: str
