"""
tenancy/router.py
-----------------
Decides which tenant a request belongs to and writes it into the tenant
context before the route handler runs.

Resolution order (first match wins, later tiers are not consulted):
  1. {tenant_code} path parameter     e.g. /acme/products
  2. ?tenant_code= query parameter    kept for older integration clients
  3. tenant_code claim of the principal, only when the principal is an admin

If nothing matches, the context stays unset and the request is served from
the default database (the normal case for customers).
"""

from typing import Annotated, Any, Mapping, Optional

from fastapi import Depends, Request

from commerce.core.logging import bind_log_context
from commerce.dependencies import get_current_user
from commerce.models.user import User
from commerce.tenancy.context import get_tenant, normalize_tenant_code, set_tenant

TENANT_PARAM = "tenant_code"


def resolve_tenant_code(
    path_params: Mapping[str, Any],
    query_params: Mapping[str, Any],
    principal: Optional[User] = None,
) -> Optional[str]:
    for source in (path_params, query_params):
        code = normalize_tenant_code(source.get(TENANT_PARAM))
        if code is not None:
            return code

    if principal is not None and principal.is_admin:
        return normalize_tenant_code(principal.tenant_code)
    return None


def apply_tenant(tenant_code: Optional[str]) -> Optional[str]:
    """Write tenant_code into the context. No-op when it is None."""
    if tenant_code is not None:
        set_tenant(tenant_code)
        bind_log_context(tenant_code=tenant_code)
    return get_tenant()


async def bind_tenant(
    request: Request,
    current_user: Annotated[User, Depends(get_current_user)],
) -> Optional[str]:
    """
    Authenticated-route dependency: resolve and apply the tenant.

    Must stay `async def`: sync dependencies run in a worker thread with a
    copied context, so a tenant set there would never reach the handler.
    """
    return apply_tenant(
        resolve_tenant_code(request.path_params, request.query_params, current_user)
    )


async def bind_public_tenant(request: Request) -> Optional[str]:
    """Same as bind_tenant for routes that do not require authentication."""
    return apply_tenant(resolve_tenant_code(request.path_params, request.query_params))
