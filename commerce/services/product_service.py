"""
services/product_service.py
---------------------------
Catalogue operations against the routed tenant database.

Every call runs inside translate_missing_tenant(), so a tenant whose
database does not exist yet surfaces as TenantNotProvisioned rather than
a raw driver error.
"""

from typing import List

from commerce.core.exceptions import NotFoundError
from commerce.core.logging import get_logger
from commerce.db.errors import translate_missing_tenant
from commerce.db.scoped import TenantDatabase
from commerce.models.product import Product
from commerce.schemas.product import ProductCreate, ProductUpdate

logger = get_logger(__name__)


class ProductService:

    @staticmethod
    async def list_products(db: TenantDatabase) -> List[Product]:
        async with translate_missing_tenant(db.tenant_code):
            return await db.products.list(order_by=[Product.created_at.desc(), Product.id])

    @staticmethod
    async def get_product(db: TenantDatabase, product_id: str) -> Product:
        async with translate_missing_tenant(db.tenant_code):
            product = await db.products.get(product_id)
        if product is None:
            raise NotFoundError(f"Product with ID {product_id} not found")
        return product

    @staticmethod
    async def create_product(db: TenantDatabase, data: ProductCreate) -> Product:
        async with translate_missing_tenant(db.tenant_code):
            product = await db.products.add(Product(**data.model_dump()))
        logger.info("Product created", product_id=product.id, tenant_code=db.tenant_code)
        return product

    @staticmethod
    async def update_product(
        db: TenantDatabase, product_id: str, data: ProductUpdate
    ) -> Product:
        product = await ProductService.get_product(db, product_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(product, field, value)
        async with translate_missing_tenant(db.tenant_code):
            await db.session.flush()
        logger.info("Product updated", product_id=product.id, tenant_code=db.tenant_code)
        return product

    @staticmethod
    async def delete_product(db: TenantDatabase, product_id: str) -> Product:
        product = await ProductService.get_product(db, product_id)
        async with translate_missing_tenant(db.tenant_code):
            await db.products.delete(product)
        logger.info("Product deleted", product_id=product_id, tenant_code=db.tenant_code)
        return product
