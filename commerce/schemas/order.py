"""
schemas/order.py
----------------
Pydantic models for order requests and responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class OrderItemCreate(BaseModel):
    product_id: str
    qty: int = Field(..., gt=0)


class OrderCreate(BaseModel):
    items: List[OrderItemCreate] = Field(..., min_length=1)


class OrderComplete(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=128)


class OrderItemRead(BaseModel):
    id: str
    product_id: str
    quantity: int
    price: Decimal

    model_config = {"from_attributes": True}


class OrderRead(BaseModel):
    id: str
    user_id: str
    status: str
    total: Decimal
    payment_id: Optional[str]
    transaction_id: Optional[str]
    items: List[OrderItemRead]
    created_at: datetime

    model_config = {"from_attributes": True}


class OrderAccepted(BaseModel):
    """Returned when a state change is handed to the job queue."""
    order_id: str
    status: str
    detail: str
