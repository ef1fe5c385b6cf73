"""
create_tables.py
----------------
One-shot script to create the default database's tables: users, plus the
catalogue and order tables used by customers who are not routed to a tenant.
Tenant databases are never touched here: their schema comes from the SQL
migrations in migrations/tenant, applied by the provisioning worker.

Usage:
    python create_tables.py
"""

import asyncio

from commerce.core.config import settings
from commerce.core.logging import configure_logging, get_logger
from commerce.db.registry import ConnectionRegistry
from commerce.models import Base  # Imports all models so metadata is populated

logger = get_logger(__name__)


async def create_all_tables() -> None:
    configure_logging()
    registry = ConnectionRegistry.from_settings(settings)
    engine = registry.get_client(None)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await registry.disconnect_all()
    logger.info("Default database tables created", tables=sorted(Base.metadata.tables))


if __name__ == "__main__":
    asyncio.run(create_all_tables())
