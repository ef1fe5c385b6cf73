"""
services/order_service.py
-------------------------
Order lifecycle against the routed tenant database.

    create_order        → PENDING, publishes an order-processing job
    (worker)            → WAITING_FOR_PAYMENT
    payment_received    → PAID, decrements stock
    request_completion  → publishes an order-completed job
    (worker)            → COMPLETE

Customers only ever see and change their own orders.
"""

from decimal import Decimal
from typing import List, Sequence

from sqlalchemy.orm import selectinload

from commerce.core.exceptions import (
    BrokerUnavailable,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from commerce.core.logging import get_logger
from commerce.db.errors import translate_missing_tenant
from commerce.db.scoped import TenantDatabase
from commerce.models.order import Order, OrderItem, OrderStatus
from commerce.queue.broker import JobQueue, Topic
from commerce.schemas.order import OrderItemCreate

logger = get_logger(__name__)

_WITH_ITEMS = (selectinload(Order.items),)


class OrderService:

    @staticmethod
    async def create_order(
        db: TenantDatabase,
        queue: JobQueue,
        user_id: str,
        items: Sequence[OrderItemCreate],
    ) -> Order:
        """
        Create a PENDING order after checking every product exists and has
        enough stock, commit it, then hand it to the order-processing worker.
        If the job cannot be published the order is deleted again and
        BrokerUnavailable propagates.
        """
        async with translate_missing_tenant(db.tenant_code):
            order = Order(user_id=user_id, status=OrderStatus.PENDING.value, total=Decimal("0"))
            total = Decimal("0")
            for item in items:
                product = await db.products.get(item.product_id)
                if product is None:
                    raise NotFoundError(f"Product with ID {item.product_id} not found")
                if product.stock < item.qty:
                    raise ValidationError(
                        f"Insufficient stock for product {product.name}: "
                        f"{product.stock} available, {item.qty} requested"
                    )
                order.items.append(
                    OrderItem(product_id=product.id, quantity=item.qty, price=product.price)
                )
                total += product.price * item.qty
            order.total = total
            await db.orders.add(order)
            # Commit first, so the worker always finds the order
            await db.commit()

        try:
            await queue.publish(
                Topic.ORDER_PROCESSING,
                {"order_id": order.id, "user_id": user_id, "tenant_code": db.tenant_code},
            )
        except BrokerUnavailable:
            logger.error(
                "Order-processing job not published, order withdrawn",
                order_id=order.id,
                tenant_code=db.tenant_code,
            )
            await db.orders.delete(order)
            await db.commit()
            raise
        logger.info(
            "Order created",
            order_id=order.id,
            tenant_code=db.tenant_code,
            items=len(items),
        )
        return order

    @staticmethod
    async def list_orders(db: TenantDatabase, user_id: str) -> List[Order]:
        async with translate_missing_tenant(db.tenant_code):
            return await db.orders.list(
                Order.user_id == user_id,
                order_by=[Order.created_at.desc(), Order.id],
                options=_WITH_ITEMS,
            )

    @staticmethod
    async def get_order(db: TenantDatabase, order_id: str, user_id: str) -> Order:
        async with translate_missing_tenant(db.tenant_code):
            order = await db.orders.first(
                Order.id == order_id, Order.user_id == user_id, options=_WITH_ITEMS
            )
        if order is None:
            raise NotFoundError(f"Order with ID {order_id} not found")
        return order

    @staticmethod
    async def _owned_order(db: TenantDatabase, order_id: str, user_id: str) -> Order:
        async with translate_missing_tenant(db.tenant_code):
            order = await db.orders.get(order_id, options=_WITH_ITEMS)
        if order is None:
            raise NotFoundError(f"Order with ID {order_id} not found")
        if order.user_id != user_id:
            raise PermissionDeniedError("You do not have permission to update this order")
        return order

    @staticmethod
    async def payment_received(db: TenantDatabase, order_id: str, user_id: str) -> Order:
        order = await OrderService._owned_order(db, order_id, user_id)
        if order.status != OrderStatus.WAITING_FOR_PAYMENT.value:
            raise ValidationError("Order is not waiting for payment")

        async with translate_missing_tenant(db.tenant_code):
            for item in order.items:
                product = await db.products.get(item.product_id)
                if product is None:
                    raise NotFoundError(f"Product with ID {item.product_id} not found")
                product.stock -= item.quantity
            order.status = OrderStatus.PAID.value
            await db.session.flush()

        logger.info("Order paid", order_id=order.id, tenant_code=db.tenant_code)
        return order

    @staticmethod
    async def request_completion(
        db: TenantDatabase,
        queue: JobQueue,
        order_id: str,
        user_id: str,
        transaction_id: str,
    ) -> Order:
        order = await OrderService._owned_order(db, order_id, user_id)
        if order.status != OrderStatus.PAID.value:
            raise ValidationError("Order must be paid before it can be completed")

        await queue.publish(
            Topic.ORDER_COMPLETED,
            {
                "order_id": order.id,
                "user_id": user_id,
                "tenant_code": db.tenant_code,
                "transaction_id": transaction_id,
            },
        )
        logger.info("Order completion queued", order_id=order.id, tenant_code=db.tenant_code)
        return order
