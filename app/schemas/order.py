from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class OrderNotification(BaseModel):
    order_number: str
    customer_name: str
    customer_phone: Optional[str] = None
    total: Decimal
    delivery_address: Optional[str] = None
    created_at: Optional[datetime] = None
