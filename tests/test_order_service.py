"""Unit tests for order creation and its processing job."""

from decimal import Decimal

import pytest

from commerce.core.exceptions import BrokerUnavailable
from commerce.db.scoped import TenantDatabase
from commerce.models.product import Product
from commerce.queue.broker import Topic
from commerce.schemas.order import OrderItemCreate
from commerce.services.order_service import OrderService
from commerce.tenancy.context import tenant_scope


class OrderQueue:
    """Publisher that checks the order is readable from a fresh session."""

    def __init__(self, registry, fail: bool = False) -> None:
        self.registry = registry
        self.fail = fail
        self.published = []
        self.order_visible = []

    async def publish(self, topic, payload, attempts=0):
        if self.fail:
            raise BrokerUnavailable("broker down")
        with tenant_scope(payload["tenant_code"]):
            db = TenantDatabase(self.registry)
            try:
                self.order_visible.append(await db.orders.get(payload["order_id"]) is not None)
            finally:
                await db.close()
        self.published.append((topic, payload))
        return "1-0"


async def seed_product(registry, tenant_code) -> Product:
    with tenant_scope(tenant_code):
        db = TenantDatabase(registry)
        try:
            product = await db.products.add(Product(name="Widget", price=Decimal("2.50"), stock=5))
            await db.commit()
            return product
        finally:
            await db.close()


async def count_orders(registry, tenant_code) -> int:
    with tenant_scope(tenant_code):
        db = TenantDatabase(registry)
        try:
            return await db.orders.count()
        finally:
            await db.close()


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_order_is_committed_before_the_job_is_published(self, registry, worker):
        await worker.provision("acme")
        product = await seed_product(registry, "acme")
        queue = OrderQueue(registry)

        with tenant_scope("acme"):
            db = TenantDatabase(registry)
            try:
                order = await OrderService.create_order(
                    db, queue, "u1", [OrderItemCreate(product_id=product.id, qty=2)]
                )
            finally:
                await db.close()

        assert order.total == Decimal("5.00")
        assert queue.published == [
            (
                Topic.ORDER_PROCESSING,
                {"order_id": order.id, "user_id": "u1", "tenant_code": "acme"},
            )
        ]
        assert queue.order_visible == [True]

    @pytest.mark.asyncio
    async def test_broker_outage_withdraws_the_order(self, registry, worker):
        await worker.provision("acme")
        product = await seed_product(registry, "acme")

        with tenant_scope("acme"):
            db = TenantDatabase(registry)
            try:
                with pytest.raises(BrokerUnavailable):
                    await OrderService.create_order(
                        db,
                        OrderQueue(registry, fail=True),
                        "u1",
                        [OrderItemCreate(product_id=product.id, qty=1)],
                    )
            finally:
                await db.close()

        assert await count_orders(registry, "acme") == 0
