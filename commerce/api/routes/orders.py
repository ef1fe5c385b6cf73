"""
api/routes/orders.py
--------------------
Order endpoints. Every order lives in a tenant database; customers pick the
tenant (store) they are ordering from with the path parameter.

POST /orders/{tenant_code}/create                      — Place an order
GET  /orders                                           — List my orders (cached)
GET  /orders/{tenant_code}/{order_id}                  — Get one of my orders
POST /orders/{tenant_code}/{order_id}/payment-received — Mark an order paid
POST /orders/{tenant_code}/{order_id}/complete         — Queue order completion
"""

from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, status

from commerce.api.errors import BUSINESS_ERRORS, to_http_exception
from commerce.cache.pipeline import CachePipeline, get_cache_pipeline
from commerce.core.rate_limit import RateLimit
from commerce.db.scoped import TenantDatabase, get_tenant_db
from commerce.dependencies import get_current_user
from commerce.models.user import User
from commerce.queue.broker import JobQueue, get_job_queue
from commerce.schemas.order import OrderAccepted, OrderComplete, OrderCreate, OrderRead
from commerce.services.order_service import OrderService
from commerce.tenancy.router import bind_tenant

router = APIRouter(prefix="/orders", tags=["Orders"])

SCOPE = "orders"


@router.post(
    "/{tenant_code}/create",
    response_model=OrderRead,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order in a tenant's store",
    dependencies=[Depends(RateLimit("orders.create_order"))],
)
async def create_order(
    body: OrderCreate,
    current_user: Annotated[User, Depends(get_current_user)],
    tenant: Annotated[Optional[str], Depends(bind_tenant)],
    db: Annotated[TenantDatabase, Depends(get_tenant_db)],
    queue: Annotated[JobQueue, Depends(get_job_queue)],
    cache: Annotated[CachePipeline, Depends(get_cache_pipeline)],
) -> OrderRead:
    try:
        order = await OrderService.create_order(db, queue, current_user.id, body.items)
    except BUSINESS_ERRORS as exc:
        raise to_http_exception(exc)
    await cache.invalidate(
        SCOPE, "create_order", args={"tenant_code": tenant}, principal_id=current_user.id
    )
    return OrderRead.model_validate(order)


@router.get(
    "",
    response_model=List[OrderRead],
    summary="List my orders",
    dependencies=[Depends(RateLimit("orders.list_orders"))],
)
async def list_orders(
    current_user: Annotated[User, Depends(get_current_user)],
    tenant: Annotated[Optional[str], Depends(bind_tenant)],
    db: Annotated[TenantDatabase, Depends(get_tenant_db)],
    cache: Annotated[CachePipeline, Depends(get_cache_pipeline)],
) -> List[OrderRead]:
    """
    Orders in the resolved tenant (?tenant_code=, or the admin's own).
    Cached per user and tenant.
    """

    async def compute() -> List[OrderRead]:
        orders = await OrderService.list_orders(db, current_user.id)
        return [OrderRead.model_validate(o) for o in orders]

    return await cache.run(
        SCOPE,
        "list_orders",
        compute,
        args={"tenant_code": tenant},
        principal_id=current_user.id,
    )


@router.get(
    "/{tenant_code}/{order_id}",
    response_model=OrderRead,
    summary="Get one of my orders",
    dependencies=[Depends(RateLimit("orders.get_order"))],
)
async def get_order(
    order_id: str,
    current_user: Annotated[User, Depends(get_current_user)],
    tenant: Annotated[Optional[str], Depends(bind_tenant)],
    db: Annotated[TenantDatabase, Depends(get_tenant_db)],
) -> OrderRead:
    try:
        order = await OrderService.get_order(db, order_id, current_user.id)
    except BUSINESS_ERRORS as exc:
        raise to_http_exception(exc)
    return OrderRead.model_validate(order)


@router.post(
    "/{tenant_code}/{order_id}/payment-received",
    response_model=OrderRead,
    summary="Mark an order as paid",
    dependencies=[Depends(RateLimit("orders.payment_received"))],
)
async def payment_received(
    order_id: str,
    current_user: Annotated[User, Depends(get_current_user)],
    tenant: Annotated[Optional[str], Depends(bind_tenant)],
    db: Annotated[TenantDatabase, Depends(get_tenant_db)],
    cache: Annotated[CachePipeline, Depends(get_cache_pipeline)],
) -> OrderRead:
    try:
        order = await OrderService.payment_received(db, order_id, current_user.id)
        await db.commit()
    except BUSINESS_ERRORS as exc:
        raise to_http_exception(exc)
    await cache.invalidate(
        SCOPE, "payment_received", args={"tenant_code": tenant}, principal_id=current_user.id
    )
    return OrderRead.model_validate(order)


@router.post(
    "/{tenant_code}/{order_id}/complete",
    response_model=OrderAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue completion of a paid order",
    dependencies=[Depends(RateLimit("orders.complete_order"))],
)
async def complete_order(
    order_id: str,
    body: OrderComplete,
    current_user: Annotated[User, Depends(get_current_user)],
    tenant: Annotated[Optional[str], Depends(bind_tenant)],
    db: Annotated[TenantDatabase, Depends(get_tenant_db)],
    queue: Annotated[JobQueue, Depends(get_job_queue)],
) -> OrderAccepted:
    try:
        order = await OrderService.request_completion(
            db, queue, order_id, current_user.id, body.transaction_id
        )
    except BUSINESS_ERRORS as exc:
        raise to_http_exception(exc)
    return OrderAccepted(
        order_id=order.id,
        status=order.status,
        detail="Order completion has been queued",
    )
