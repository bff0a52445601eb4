from datetime import datetime
from typing import Optional

from retail_core.models.base import MongoModel


class Customer(MongoModel):
    name: str
    phone: Optional[str] = None
    price_type: str = "retail"

    balance: float = 0.0  # what the customer owes
    credit_balance: float = 0.0  # prepaid credit held for the customer
    total_purchases: float = 0.0
    last_purchase_date: Optional[datetime] = None


class Supplier(MongoModel):
    name: str
    phone: Optional[str] = None

    balance: float = 0.0  # what we owe the supplier
    total_purchases: float = 0.0
    last_supply_date: Optional[datetime] = None
