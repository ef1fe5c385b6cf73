"""
db/errors.py
------------
Classification of driver errors that mean "this tenant has no database
(or no schema) yet".

Used at the service boundary, never in the connection registry: the
registry hands out connections and lets errors propagate
untouched; services decide what a missing database means to the caller.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.exc import DBAPIError, OperationalError, ProgrammingError

from commerce.core.exceptions import TenantNotProvisioned

# invalid_catalog_name, undefined_table, invalid_schema_name
_MISSING_SQLSTATES = {"3D000", "42P01", "3F000"}

# SQLite reports no SQLSTATE
_MISSING_MESSAGES = (
    "no such table",
    "unable to open database file",
)


def _sqlstate(exc: BaseException) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return code
    return None


def is_missing_database_error(exc: BaseException) -> bool:
    if not isinstance(exc, (DBAPIError, OperationalError, ProgrammingError)):
        return False
    sqlstate = _sqlstate(exc)
    if sqlstate is not None:
        return sqlstate in _MISSING_SQLSTATES
    message = str(exc).lower()
    return any(fragment in message for fragment in _MISSING_MESSAGES)


@asynccontextmanager
async def translate_missing_tenant(tenant_code: Optional[str]) -> AsyncIterator[None]:
    """
    Re-raise "database/table does not exist" errors as TenantNotProvisioned.

    Only applies when a tenant is active: a missing table in the default
    database is a deployment fault, not a client-correctable error.
    """
    try:
        yield
    except DBAPIError as exc:
        if tenant_code is not None and is_missing_database_error(exc):
            raise TenantNotProvisioned(tenant_code) from exc
        raise
