"""
db/scoped.py
------------
Request-scoped data access routed to the active tenant's database.

TenantDatabase does not touch the registry when it is constructed. The
session (and so the engine) is resolved the first time an accessor is
used, by reading the tenant context at that moment. FastAPI builds
dependencies before the tenant router has necessarily run, so resolving
eagerly would capture an unset tenant and silently route to the default
database.

    db = TenantDatabase(registry)      # nothing resolved yet
    set_tenant("acme")                 # tenant router runs
    await db.products.list()           # → tenant_acme

Errors raised by the driver are not translated here; services wrap their
calls in translate_missing_tenant() where a missing database means
"tenant not provisioned yet".
"""

from typing import Any, AsyncIterator, Generic, List, Mapping, Optional, Sequence, Type, TypeVar, Union

from fastapi import Depends
from sqlalchemy import func, select, text
from sqlalchemy.engine import Result
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.expression import Executable

from commerce.core.exceptions import TenantNotProvisioned
from commerce.core.logging import get_logger
from commerce.db.base import Base
from commerce.db.registry import ConnectionRegistry
from commerce.db.session import get_registry
from commerce.models.order import Order, OrderItem
from commerce.models.product import Product
from commerce.models.user import User
from commerce.tenancy.context import get_tenant

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


class ModelRepository(Generic[ModelT]):
    """Collection-style accessor for one model, bound to a TenantDatabase."""

    def __init__(self, db: "TenantDatabase", model: Type[ModelT]) -> None:
        self._db = db
        self.model = model

    async def get(self, ident: Any, options: Sequence[Any] = ()) -> Optional[ModelT]:
        return await self._db.session.get(self.model, ident, options=list(options))

    async def list(
        self,
        *criteria: Any,
        order_by: Sequence[Any] = (),
        options: Sequence[Any] = (),
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[ModelT]:
        stmt = select(self.model).where(*criteria)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if options:
            stmt = stmt.options(*options)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._db.session.execute(stmt)
        return list(result.scalars().all())

    async def first(self, *criteria: Any, options: Sequence[Any] = ()) -> Optional[ModelT]:
        rows = await self.list(*criteria, options=options, limit=1)
        return rows[0] if rows else None

    async def count(self, *criteria: Any) -> int:
        stmt = select(func.count()).select_from(self.model).where(*criteria)
        result = await self._db.session.execute(stmt)
        return int(result.scalar_one())

    async def add(self, instance: ModelT) -> ModelT:
        """Stage instance, flush it (so constraints fire now) and return it."""
        session = self._db.session
        session.add(instance)
        await session.flush()
        return instance

    async def delete(self, instance: ModelT) -> None:
        session = self._db.session
        await session.delete(instance)
        await session.flush()


class TenantDatabase:
    """
    Lazily-resolved session against ConnectionRegistry.get_client(get_tenant()).

    One instance per request (or per queue job). The resolved tenant is
    memoised together with the session: later changes to the context do
    not re-route an already-open session.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry
        self._session: Optional[AsyncSession] = None
        self._tenant_code: Optional[str] = None

    # ── Resolution ────────────────────────────────────────────────────────────

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            tenant_code = get_tenant()
            engine = self._registry.get_client(tenant_code)
            self._session = AsyncSession(
                bind=engine, expire_on_commit=False, autoflush=False
            )
            self._tenant_code = tenant_code
            logger.debug("Tenant session opened", tenant_code=tenant_code or "default")
        return self._session

    @property
    def is_resolved(self) -> bool:
        return self._session is not None

    @property
    def tenant_code(self) -> Optional[str]:
        """Tenant the session is bound to; the current context if unresolved."""
        return self._tenant_code if self.is_resolved else get_tenant()

    # ── Accessors ─────────────────────────────────────────────────────────────

    @property
    def users(self) -> ModelRepository[User]:
        return ModelRepository(self, User)

    @property
    def products(self) -> ModelRepository[Product]:
        return ModelRepository(self, Product)

    @property
    def orders(self) -> ModelRepository[Order]:
        return ModelRepository(self, Order)

    @property
    def order_items(self) -> ModelRepository[OrderItem]:
        return ModelRepository(self, OrderItem)

    async def execute(
        self,
        statement: Union[str, Executable],
        params: Optional[Mapping[str, Any]] = None,
    ) -> Result:
        """Run a raw SQL string (bound parameters via params) or a Core statement."""
        if isinstance(statement, str):
            statement = text(statement)
        return await self.session.execute(statement, params)

    # ── Transaction control ───────────────────────────────────────────────────

    async def commit(self) -> None:
        if self._session is not None:
            await self._session.commit()

    async def rollback(self) -> None:
        if self._session is not None:
            await self._session.rollback()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


async def get_tenant_db(
    registry: ConnectionRegistry = Depends(get_registry),
) -> AsyncIterator[TenantDatabase]:
    """
    FastAPI dependency yielding a TenantDatabase for the request.
    Committed when the request finishes, rolled back on exceptions.

    An engine whose tenant turned out to have no database is dropped from
    the registry, so requests for arbitrary tenant codes do not leave
    pools open for the life of the process.
    """
    db = TenantDatabase(registry)
    try:
        yield db
        await db.commit()
    except TenantNotProvisioned as exc:
        await db.rollback()
        await db.close()
        await registry.disconnect(exc.tenant_code)
        raise
    except Exception:
        await db.rollback()
        raise
    finally:
        await db.close()
