"""
api/routes/products.py
----------------------
Catalogue endpoints. The router is mounted twice:

    /products/...                 tenant from ?tenant_code= or the admin's claim
    /{tenant_code}/products/...   tenant from the path

GET    /               — List products (cached)
GET    /{product_id}   — Get one product (cached per product)
POST   /               — Admin: create a product
PATCH  /{product_id}   — Admin: update a product
DELETE /{product_id}   — Admin: delete a product

Writes are only allowed against the admin's own tenant.
"""

from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from commerce.api.errors import BUSINESS_ERRORS, to_http_exception
from commerce.cache.pipeline import CachePipeline, get_cache_pipeline
from commerce.core.rate_limit import RateLimit
from commerce.db.scoped import TenantDatabase, get_tenant_db
from commerce.dependencies import get_current_admin
from commerce.models.user import User
from commerce.schemas.product import ProductCreate, ProductRead, ProductUpdate
from commerce.services.product_service import ProductService
from commerce.tenancy.router import bind_tenant

router = APIRouter(tags=["Products"])

SCOPE = "products"


async def get_tenant_owner(
    admin: Annotated[User, Depends(get_current_admin)],
    tenant: Annotated[Optional[str], Depends(bind_tenant)],
) -> User:
    """Admin whose own tenant is the one this request is routed to."""
    if tenant is None or tenant != admin.tenant_code:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admins can only modify their own tenant's catalogue",
        )
    return admin


@router.get(
    "",
    response_model=List[ProductRead],
    summary="List products",
    dependencies=[Depends(RateLimit("products.list_products"))],
)
async def list_products(
    tenant: Annotated[Optional[str], Depends(bind_tenant)],
    db: Annotated[TenantDatabase, Depends(get_tenant_db)],
    cache: Annotated[CachePipeline, Depends(get_cache_pipeline)],
) -> List[ProductRead]:
    async def compute() -> List[ProductRead]:
        products = await ProductService.list_products(db)
        return [ProductRead.model_validate(p) for p in products]

    return await cache.run(SCOPE, "list_products", compute)


@router.get(
    "/{product_id}",
    response_model=ProductRead,
    summary="Get a product",
    dependencies=[Depends(RateLimit("products.get_product"))],
)
async def get_product(
    product_id: str,
    tenant: Annotated[Optional[str], Depends(bind_tenant)],
    db: Annotated[TenantDatabase, Depends(get_tenant_db)],
    cache: Annotated[CachePipeline, Depends(get_cache_pipeline)],
) -> ProductRead:
    async def compute() -> ProductRead:
        return ProductRead.model_validate(await ProductService.get_product(db, product_id))

    try:
        return await cache.run(SCOPE, "get_product", compute, args={"id": product_id})
    except BUSINESS_ERRORS as exc:
        raise to_http_exception(exc)


@router.post(
    "",
    response_model=ProductRead,
    status_code=status.HTTP_201_CREATED,
    summary="Admin: create a product",
    dependencies=[Depends(RateLimit("products.create_product"))],
)
async def create_product(
    body: ProductCreate,
    admin: Annotated[User, Depends(get_tenant_owner)],
    db: Annotated[TenantDatabase, Depends(get_tenant_db)],
    cache: Annotated[CachePipeline, Depends(get_cache_pipeline)],
) -> ProductRead:
    try:
        product = await ProductService.create_product(db, body)
        await db.commit()
    except BUSINESS_ERRORS as exc:
        raise to_http_exception(exc)
    await cache.invalidate(SCOPE, "create_product")
    return ProductRead.model_validate(product)


@router.patch(
    "/{product_id}",
    response_model=ProductRead,
    summary="Admin: update a product",
    dependencies=[Depends(RateLimit("products.update_product"))],
)
async def update_product(
    product_id: str,
    body: ProductUpdate,
    admin: Annotated[User, Depends(get_tenant_owner)],
    db: Annotated[TenantDatabase, Depends(get_tenant_db)],
    cache: Annotated[CachePipeline, Depends(get_cache_pipeline)],
) -> ProductRead:
    try:
        product = await ProductService.update_product(db, product_id, body)
        await db.commit()
    except BUSINESS_ERRORS as exc:
        raise to_http_exception(exc)
    await cache.invalidate(SCOPE, "update_product", args={"id": product_id})
    return ProductRead.model_validate(product)


@router.delete(
    "/{product_id}",
    response_model=ProductRead,
    summary="Admin: delete a product",
    dependencies=[Depends(RateLimit("products.delete_product"))],
)
async def delete_product(
    product_id: str,
    admin: Annotated[User, Depends(get_tenant_owner)],
    db: Annotated[TenantDatabase, Depends(get_tenant_db)],
    cache: Annotated[CachePipeline, Depends(get_cache_pipeline)],
) -> ProductRead:
    try:
        product = await ProductService.delete_product(db, product_id)
        await db.commit()
    except BUSINESS_ERRORS as exc:
        raise to_http_exception(exc)
    await cache.invalidate(SCOPE, "delete_product", args={"id": product_id})
    return ProductRead.model_validate(product)
