"""
queue/handlers.py
-----------------
Job handlers for the three topics. Each handler receives the decoded JSON
payload; raising makes the queue redeliver the job, so every handler is
idempotent.

database-creation   provision the tenant database, then flag the owning
                    admin as ready
order-processing    PENDING → WAITING_FOR_PAYMENT (assigns a payment id)
order-completed     PAID → COMPLETE (records the transaction id)

Order jobs run inside tenant_scope(), so the same TenantDatabase used by
the HTTP layer routes them to the order's tenant database.
"""

import uuid
from typing import Dict, Optional

from pydantic import BaseModel
from sqlalchemy import update

from commerce.cache.pipeline import CachePipeline
from commerce.core.logging import bind_log_context, get_logger
from commerce.db.registry import ConnectionRegistry
from commerce.db.scoped import TenantDatabase
from commerce.db.session import make_session_factory
from commerce.models.order import Order, OrderStatus
from commerce.models.user import User
from commerce.provisioning.worker import ProvisioningWorker
from commerce.queue.broker import Handler, Topic
from commerce.tenancy.context import tenant_scope

logger = get_logger(__name__)


# ── Payloads ──────────────────────────────────────────────────────────────────

class ProvisioningJob(BaseModel):
    user_id: str
    tenant_code: str


class OrderJob(BaseModel):
    order_id: str
    user_id: str
    tenant_code: Optional[str] = None
    transaction_id: Optional[str] = None


# ── Handlers ──────────────────────────────────────────────────────────────────

class JobHandlers:

    def __init__(
        self,
        registry: ConnectionRegistry,
        worker: ProvisioningWorker,
        cache: Optional[CachePipeline] = None,
    ) -> None:
        self._registry = registry
        self._worker = worker
        self._cache = cache

    def routes(self) -> Dict[Topic, Handler]:
        return {
            Topic.DATABASE_CREATION: self.handle_database_creation,
            Topic.ORDER_PROCESSING: self.handle_order_processing,
            Topic.ORDER_COMPLETED: self.handle_order_completed,
        }

    async def handle_database_creation(self, payload: dict) -> None:
        job = ProvisioningJob.model_validate(payload)
        bind_log_context(tenant_code=job.tenant_code)
        await self._worker.provision(job.tenant_code)

        factory = make_session_factory(self._registry.get_client(None))
        async with factory() as session:
            result = await session.execute(
                update(User)
                .where(User.id == job.user_id)
                .values(is_database_created=True)
            )
            await session.commit()

        if result.rowcount == 0:
            # Published before the registration committed; retry later
            raise LookupError(f"User {job.user_id} not found for tenant {job.tenant_code}")
        logger.info("Tenant database ready", user_id=job.user_id, tenant_code=job.tenant_code)

    async def handle_order_processing(self, payload: dict) -> None:
        job = OrderJob.model_validate(payload)
        bind_log_context(tenant_code=job.tenant_code, order_id=job.order_id)

        with tenant_scope(job.tenant_code):
            db = TenantDatabase(self._registry)
            try:
                order = await db.orders.get(job.order_id)
                if order is None:
                    raise LookupError(f"Order {job.order_id} not found")
                if order.status != OrderStatus.PENDING.value:
                    logger.info("Order already processed; skipping", status=order.status)
                    return

                order.status = OrderStatus.WAITING_FOR_PAYMENT.value
                order.payment_id = str(uuid.uuid4())
                await db.commit()
            finally:
                await db.close()

            await self._create_payment_link(order)
            await self._send_order_pending_email(order)
            await self._invalidate(job, "process_order")

    async def handle_order_completed(self, payload: dict) -> None:
        job = OrderJob.model_validate(payload)
        bind_log_context(tenant_code=job.tenant_code, order_id=job.order_id)

        with tenant_scope(job.tenant_code):
            db = TenantDatabase(self._registry)
            try:
                order = await db.orders.get(job.order_id)
                if order is None:
                    raise LookupError(f"Order {job.order_id} not found")
                if order.status == OrderStatus.COMPLETE.value:
                    logger.info("Order already complete; skipping")
                    return
                if order.status != OrderStatus.PAID.value:
                    logger.warning(
                        "Order is not paid; completion ignored", status=order.status
                    )
                    return

                order.status = OrderStatus.COMPLETE.value
                order.transaction_id = job.transaction_id
                await db.commit()
            finally:
                await db.close()

            await self._send_order_completed_email(order)
            await self._invalidate(job, "complete_order")

    # ── Side effects ──────────────────────────────────────────────────────────

    async def _invalidate(self, job: OrderJob, operation: str) -> None:
        if self._cache is not None:
            await self._cache.invalidate(
                "orders",
                operation,
                args={"tenant_code": job.tenant_code},
                principal_id=job.user_id,
            )

    # TODO: replace with the payment provider's checkout-session API
    async def _create_payment_link(self, order: Order) -> None:
        logger.info("Payment link created (stub)", payment_id=order.payment_id)

    async def _send_order_pending_email(self, order: Order) -> None:
        logger.info("Order pending email sent (stub)", user_id=order.user_id)

    async def _send_order_completed_email(self, order: Order) -> None:
        logger.info("Order completed email sent (stub)", user_id=order.user_id)
