"""
Treasury transactions and the daily cashbox.

A transaction is immutable once written. Its effect on the cashbox is
recorded as a contribution (cashbox_contribution_id) so that undo can remove
exactly that effect instead of guessing by amount and description.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from retail_core.models.base import MongoModel, PyObjectId
from retail_core.utils.dates import utcnow


class TransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK = "bank"
    WALLET = "wallet"
    CHECK = "check"
    ADJUSTMENT = "adjustment"


class TreasuryReferenceType(str, Enum):
    INVOICE = "Invoice"
    PURCHASE_ORDER = "PurchaseOrder"
    MANUAL = "Manual"
    SALES_RETURN = "SalesReturn"
    DEBT = "Debt"
    UNIFIED_COLLECTION = "UnifiedCollection"


INCOME_FIELDS = {
    "cash": "sales_income",
    "bank": "bank_income",
    "wallet": "wallet_income",
    "check": "check_income",
    "adjustment": "adjustment_income",
}

EXPENSE_FIELDS = {
    "cash": "purchase_expenses",
    "bank": "bank_expenses",
    "wallet": "wallet_expenses",
    "check": "check_expenses",
    "adjustment": "adjustment_expenses",
}

# Payment types used on documents that are not treasury methods themselves
METHOD_ALIASES = {
    "bank_transfer": "bank",
    "cash_wallet": "wallet",
    "partial": "cash",
}


def normalize_method(method: Optional[str]) -> str:
    method = (method or "cash").strip().lower()
    method = METHOD_ALIASES.get(method, method)
    if method not in INCOME_FIELDS:
        raise ValueError(f"Unknown payment method: {method}")
    return method


def accumulator_field(tx_type: str, method: str) -> str:
    fields = INCOME_FIELDS if tx_type == TransactionType.INCOME else EXPENSE_FIELDS
    return fields[method]


class TreasuryTransaction(MongoModel):
    type: TransactionType
    amount: float = Field(ge=0)
    method: PaymentMethod = PaymentMethod.CASH
    description: str
    receipt_number: Optional[str] = None

    reference_type: TreasuryReferenceType = TreasuryReferenceType.MANUAL
    reference_id: Optional[PyObjectId] = None
    partner_id: Optional[PyObjectId] = None
    category: Optional[str] = None

    date: datetime = Field(default_factory=utcnow)
    created_by: Optional[PyObjectId] = None
    meta: Dict[str, Any] = {}

    # Backlink to the exact cashbox effect of this transaction
    cashbox_day: str
    cashbox_contribution_id: PyObjectId
    cashbox_field: Optional[str] = None  # None when the effect is a manual entry


class ManualEntry(BaseModel):
    id: PyObjectId = Field(alias="_id")
    amount: float = Field(ge=0)
    reason: str
    category: str = "other"
    created_by: Optional[PyObjectId] = None
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = {"populate_by_name": True, "arbitrary_types_allowed": True}


class CashboxDaily(MongoModel):
    day: str  # ISO date
    opening_balance: float = 0.0
    closing_balance: float = 0.0

    sales_income: float = 0.0
    bank_income: float = 0.0
    wallet_income: float = 0.0
    check_income: float = 0.0
    adjustment_income: float = 0.0

    purchase_expenses: float = 0.0
    bank_expenses: float = 0.0
    wallet_expenses: float = 0.0
    check_expenses: float = 0.0
    adjustment_expenses: float = 0.0

    manual_income: List[ManualEntry] = []
    manual_expenses: List[ManualEntry] = []
    applied_contributions: List[PyObjectId] = []

    total_income: float = 0.0
    total_expenses: float = 0.0
    net_change: float = 0.0
    difference: float = 0.0

    is_reconciled: bool = False
    reconciled_by: Optional[PyObjectId] = None
    reconciled_at: Optional[datetime] = None
    reconciliation_notes: Optional[str] = None

    def derived_totals(self) -> Dict[str, float]:
        """Totals recomputed from accumulators and manual entries on every save."""
        total_income = sum(getattr(self, f) for f in INCOME_FIELDS.values())
        total_income += sum(e.amount for e in self.manual_income)
        total_expenses = sum(getattr(self, f) for f in EXPENSE_FIELDS.values())
        total_expenses += sum(e.amount for e in self.manual_expenses)
        net_change = total_income - total_expenses
        expected = self.opening_balance + net_change
        closing = self.closing_balance if self.is_reconciled else expected
        return {
            "total_income": round(total_income, 2),
            "total_expenses": round(total_expenses, 2),
            "net_change": round(net_change, 2),
            "closing_balance": round(closing, 2),
            "difference": round(closing - expected, 2),
        }

    @property
    def expected_closing(self) -> float:
        return round(self.opening_balance + self.net_change, 2)
