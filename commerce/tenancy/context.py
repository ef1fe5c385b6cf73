"""
tenancy/context.py
------------------
Request-local tenant context.

The active tenant code lives in a ContextVar, so every asyncio task (and
every thread spawned through run_in_threadpool, which copies the context)
sees only the value set for its own request. Nothing here is process-global
mutable state: two concurrent requests for different tenants can never
observe each other's tenant.

Tenant codes are case-normalised (stripped, lower-cased) on the way in, so
"ACME" in a path segment and "acme" in a JWT claim route to the same
database and the same cache namespace.
"""

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator, Optional

_tenant_code: ContextVar[Optional[str]] = ContextVar("tenant_code", default=None)


def normalize_tenant_code(tenant_code: Optional[str]) -> Optional[str]:
    if tenant_code is None:
        return None
    normalized = tenant_code.strip().lower()
    return normalized or None


def get_tenant() -> Optional[str]:
    """Return the tenant for the current request, or None (default database)."""
    return _tenant_code.get()


def set_tenant(tenant_code: Optional[str]) -> Token:
    """Set the tenant for the current context. Returns a token for reset_tenant()."""
    return _tenant_code.set(normalize_tenant_code(tenant_code))


def reset_tenant(token: Token) -> None:
    _tenant_code.reset(token)


def has_tenant() -> bool:
    return _tenant_code.get() is not None


@contextmanager
def tenant_scope(tenant_code: Optional[str]) -> Iterator[Optional[str]]:
    """
    Run a block with the given tenant active, restoring the previous value.

    Used by queue handlers, which run outside any HTTP request:

        with tenant_scope(job.tenant_code):
            db = TenantDatabase(registry)
            ...
    """
    token = set_tenant(tenant_code)
    try:
        yield get_tenant()
    finally:
        reset_tenant(token)
