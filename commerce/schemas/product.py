"""
schemas/product.py
------------------
Pydantic models for catalogue requests and responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    stock: int = Field(default=0, ge=0)


class ProductUpdate(BaseModel):
    """Partial update: only fields that are set are applied."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    stock: Optional[int] = Field(default=None, ge=0)


class ProductRead(BaseModel):
    id: str
    name: str
    description: Optional[str]
    price: Decimal
    stock: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
