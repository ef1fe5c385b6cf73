"""
provisioning/admin.py
---------------------
CREATE DATABASE / DROP DATABASE for tenant provisioning.

PostgreSQL cannot create or drop a database inside a transaction, so the
statements run on an AUTOCOMMIT connection to the maintenance database
(MAINTENANCE_DATABASE, normally "postgres"). If that database is not
reachable, the default database connection is used instead.

SQLite has no CREATE DATABASE: a tenant database is a file beside the
default database file (see commerce.db.urls.derive_database_url).
"""

import os
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine
from sqlalchemy.pool import NullPool

from commerce.core.exceptions import DatabaseAlreadyExists
from commerce.core.logging import get_logger
from commerce.db.registry import ConnectionRegistry
from commerce.db.urls import derive_database_url, is_sqlite_url, quote_identifier

logger = get_logger(__name__)

# duplicate_database
_ALREADY_EXISTS_SQLSTATE = "42P04"


def is_already_exists_error(exc: BaseException) -> bool:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code == _ALREADY_EXISTS_SQLSTATE:
            return True
    return "already exists" in str(exc).lower()


class DatabaseAdmin(ABC):
    """Creates and drops physical tenant databases."""

    @abstractmethod
    async def create_database(self, database_name: str) -> None:
        """Create database_name. Raises DatabaseAlreadyExists if it exists."""

    @abstractmethod
    async def drop_database(self, database_name: str) -> None:
        """Drop database_name if it exists."""


class PostgresDatabaseAdmin(DatabaseAdmin):

    def __init__(self, registry: ConnectionRegistry, maintenance_database: str) -> None:
        self._registry = registry
        self._maintenance_url = derive_database_url(registry.base_url, maintenance_database)

    @asynccontextmanager
    async def _admin_connection(self) -> AsyncIterator[AsyncConnection]:
        engine = create_async_engine(
            self._maintenance_url, poolclass=NullPool, isolation_level="AUTOCOMMIT"
        )
        try:
            try:
                conn = await engine.connect()
            except Exception as exc:
                logger.warning(
                    "Maintenance database unreachable; using default connection",
                    error=str(exc),
                )
                conn = None

            if conn is None:
                async with self._registry.get_client(None).connect() as fallback:
                    await fallback.execution_options(isolation_level="AUTOCOMMIT")
                    yield fallback
            else:
                try:
                    yield conn
                finally:
                    await conn.close()
        finally:
            await engine.dispose()

    async def create_database(self, database_name: str) -> None:
        async with self._admin_connection() as conn:
            try:
                await conn.exec_driver_sql(f"CREATE DATABASE {quote_identifier(database_name)}")
            except DBAPIError as exc:
                if is_already_exists_error(exc):
                    raise DatabaseAlreadyExists(database_name) from exc
                raise
        logger.info("Tenant database created", database=database_name)

    async def drop_database(self, database_name: str) -> None:
        async with self._admin_connection() as conn:
            await conn.exec_driver_sql(
                f"DROP DATABASE IF EXISTS {quote_identifier(database_name)}"
            )
        logger.info("Tenant database dropped", database=database_name)


class SqliteDatabaseAdmin(DatabaseAdmin):

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    def _path(self, database_name: str) -> str:
        url = make_url(derive_database_url(self._registry.base_url, database_name))
        return url.database or ""

    async def create_database(self, database_name: str) -> None:
        path = self._path(database_name)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        try:
            # "x" fails atomically if another worker created it first
            with open(path, "x"):
                pass
        except FileExistsError as exc:
            # SQLite creates an empty file when a request connects to a tenant
            # before it is provisioned; that file holds no schema yet.
            if os.path.getsize(path) > 0:
                raise DatabaseAlreadyExists(database_name) from exc
            logger.info("Claiming empty tenant database file", database=database_name)
        logger.info("Tenant database created", database=database_name, path=path)

    async def drop_database(self, database_name: str) -> None:
        path = self._path(database_name)
        for candidate in (path, f"{path}-journal", f"{path}-wal", f"{path}-shm"):
            if os.path.exists(candidate):
                os.remove(candidate)
        logger.info("Tenant database dropped", database=database_name, path=path)


def build_database_admin(
    registry: ConnectionRegistry,
    maintenance_database: Optional[str] = None,
) -> DatabaseAdmin:
    if is_sqlite_url(registry.base_url):
        return SqliteDatabaseAdmin(registry)
    return PostgresDatabaseAdmin(registry, maintenance_database or "postgres")
