"""
models/__init__.py
------------------
Re-export all models so create_tables.py (and tests) can import Base and
discover all tables via a single import:

    from commerce.models import Base
"""

from commerce.db.base import Base
from commerce.models.order import Order, OrderItem, OrderStatus
from commerce.models.product import Product
from commerce.models.user import User, UserRole

__all__ = ["Base", "User", "UserRole", "Product", "Order", "OrderItem", "OrderStatus"]
