"""
db/session.py
-------------
Process-wide connection registry and the default-database session
dependency.

Design decisions:
  - One ConnectionRegistry per process, built lazily from settings. Every
    engine (default and per-tenant) comes from it, so shutdown can dispose
    them all with a single disconnect_all().
  - expire_on_commit=False: avoids lazy-load errors after commit in async
    context (attributes are already loaded, no implicit SELECT needed).
  - get_db always targets the default database (users, auth). Tenant data
    goes through commerce.db.scoped.TenantDatabase instead.
"""

from typing import AsyncIterator, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from commerce.core.config import settings
from commerce.db.registry import ConnectionRegistry

_registry: Optional[ConnectionRegistry] = None


def get_registry() -> ConnectionRegistry:
    """
    Return the process-wide ConnectionRegistry.
    Also a FastAPI dependency; tests override it via dependency_overrides.
    """
    global _registry
    if _registry is None:
        _registry = ConnectionRegistry.from_settings(settings)
    return _registry


def inject_registry_for_test(registry: Optional[ConnectionRegistry]) -> None:
    """Replace the process-wide registry (for testing only)."""
    global _registry
    _registry = registry


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def get_db(
    registry: ConnectionRegistry = Depends(get_registry),
) -> AsyncIterator[AsyncSession]:
    """
    FastAPI dependency that yields a default-database session.
    Committed when the request finishes, rolled back on exceptions.

    Usage:
        @router.get("/example")
        async def handler(db: AsyncSession = Depends(get_db)):
            ...
    """
    factory = make_session_factory(registry.get_client(None))
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
