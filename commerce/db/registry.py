"""
db/registry.py
--------------
Connection registry: one AsyncEngine (with its own pool) per tenant database.

Engines are created lazily on first use and cached for the life of the
process. Creation is single-flight per tenant: the first caller for a
never-seen tenant takes that tenant's lock, builds the engine and publishes
it; concurrent callers for the same tenant block on the lock and then find
the published engine. Steady-state lookups read the dict without locking.

Pool sizing for server databases follows the default-engine settings:
  - pool_size / max_overflow from settings (per tenant engine).
  - pool_pre_ping=True to survive DB restarts / idle timeouts.
  - driver-level statement timeout so a stuck statement cannot block a
    request or a queue handler forever.
"""

import threading
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from commerce.core.config import Settings
from commerce.core.logging import get_logger
from commerce.db.urls import derive_database_url, is_sqlite_url, tenant_database_name
from commerce.tenancy.context import normalize_tenant_code

logger = get_logger(__name__)

EngineFactory = Callable[[str], AsyncEngine]


def engine_options(url: str, settings: Settings) -> Dict[str, Any]:
    """Engine keyword arguments appropriate for the URL's backend."""
    if is_sqlite_url(url):
        return {"echo": settings.DEBUG}

    options: Dict[str, Any] = {
        "echo": settings.DEBUG,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }
    if "+asyncpg" in url.split("://", 1)[0]:
        options["connect_args"] = {
            "command_timeout": settings.DB_STATEMENT_TIMEOUT,
            "timeout": settings.DB_STATEMENT_TIMEOUT,
        }
    return options


def make_engine_factory(settings: Settings) -> EngineFactory:
    def factory(url: str) -> AsyncEngine:
        return create_async_engine(url, **engine_options(url, settings))

    return factory


class ConnectionRegistry:
    """
    Maps tenant code → AsyncEngine.  The default database uses the key None.
    """

    def __init__(
        self,
        base_url: str,
        database_prefix: str,
        engine_factory: EngineFactory,
    ) -> None:
        self._base_url = base_url
        self._prefix = database_prefix
        self._engine_factory = engine_factory
        self._engines: Dict[Optional[str], AsyncEngine] = {}
        self._locks: Dict[Optional[str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConnectionRegistry":
        return cls(
            base_url=settings.DATABASE_URL,
            database_prefix=settings.DATABASE_PREFIX,
            engine_factory=make_engine_factory(settings),
        )

    # ── Naming ────────────────────────────────────────────────────────────────

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def database_prefix(self) -> str:
        return self._prefix

    @property
    def engine_factory(self) -> EngineFactory:
        return self._engine_factory

    def database_name(self, tenant_code: str) -> str:
        return tenant_database_name(tenant_code, self._prefix)

    def url_for(self, tenant_code: Optional[str]) -> str:
        key = normalize_tenant_code(tenant_code)
        if key is None:
            return self._base_url
        return derive_database_url(self._base_url, self.database_name(key))

    # ── Lookup / creation ─────────────────────────────────────────────────────

    def get_client(self, tenant_code: Optional[str] = None) -> AsyncEngine:
        """
        Return the engine for tenant_code, creating it on first use.
        tenant_code=None (or blank) returns the default-database engine.
        """
        key = normalize_tenant_code(tenant_code)
        engine = self._engines.get(key)
        if engine is not None:
            return engine

        with self._lock_for(key):
            engine = self._engines.get(key)
            if engine is None:
                engine = self._engine_factory(self.url_for(key))
                self._engines[key] = engine
                logger.info(
                    "Database engine created",
                    tenant_code=key or "default",
                    connections=len(self._engines),
                )
        return engine

    def is_connected(self, tenant_code: Optional[str]) -> bool:
        return normalize_tenant_code(tenant_code) in self._engines

    def _lock_for(self, key: Optional[str]) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    # ── Teardown ──────────────────────────────────────────────────────────────

    async def disconnect(self, tenant_code: Optional[str]) -> None:
        """Dispose and forget the engine for one tenant (no-op if unknown)."""
        key = normalize_tenant_code(tenant_code)
        with self._lock_for(key):
            engine = self._engines.pop(key, None)
        if engine is not None:
            await engine.dispose()
            logger.info("Database engine disposed", tenant_code=key or "default")

    async def disconnect_all(self) -> None:
        """
        Dispose every cached engine. Called on shutdown.

        Each engine is removed under its tenant's lock, and the registry is
        re-read until empty, so an engine published by a concurrent
        get_client() is disposed too.
        """
        disposed = 0
        while True:
            with self._locks_guard:
                keys = list(self._engines)
            if not keys:
                break
            for key in keys:
                with self._lock_for(key):
                    engine = self._engines.pop(key, None)
                if engine is None:
                    continue
                disposed += 1
                try:
                    await engine.dispose()
                except Exception as exc:
                    logger.error(
                        "Error disposing database engine",
                        tenant_code=key or "default",
                        error=str(exc),
                    )
        logger.info("All database engines disposed", count=disposed)
