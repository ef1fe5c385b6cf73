"""
cache/policy.py
---------------
Which operations are cached, and which cached operations each write
invalidates. Plain data, read by CachePipeline.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from commerce.cache.service import DEFAULT_NAMESPACE, canonical_args

WILDCARD = "*"


def fingerprint(
    include_args: bool,
    include_user_id: bool,
    args: Optional[Mapping[str, Any]],
    principal_id: Optional[str],
) -> Optional[str]:
    parts = []
    if include_user_id and principal_id:
        parts.append(str(principal_id))
    if include_args and args:
        parts.append(canonical_args(args))
    return ":".join(parts) if parts else None


@dataclass(frozen=True)
class CacheOptions:
    ttl: int = 300
    include_args: bool = False
    include_user_id: bool = False
    default_tenant: bool = False

    @property
    def tenant_override(self) -> Optional[str]:
        return DEFAULT_NAMESPACE if self.default_tenant else None


@dataclass(frozen=True)
class InvalidateTarget:
    """
    operation: the cached operation to drop, or "*" for the whole scope.
    default_tenant: target the default namespace instead of the active tenant.
    """

    operation: str
    include_args: bool = False
    include_user_id: bool = False
    default_tenant: bool = False

    @property
    def tenant_override(self) -> Optional[str]:
        return DEFAULT_NAMESPACE if self.default_tenant else None


OperationKey = Tuple[str, str]  # (scope, operation)

CACHE_POLICIES: Dict[OperationKey, CacheOptions] = {
    ("products", "list_products"): CacheOptions(ttl=300),
    ("products", "get_product"): CacheOptions(ttl=300, include_args=True),
    # One list per caller, stored under "default" whatever tenant served it;
    # the routed tenant is part of the args so lists never mix.
    ("orders", "list_orders"): CacheOptions(
        ttl=300, include_args=True, include_user_id=True, default_tenant=True
    ),
}

_USER_ORDERS = InvalidateTarget(
    "list_orders", include_args=True, include_user_id=True, default_tenant=True
)

INVALIDATION_POLICIES: Dict[OperationKey, Tuple[InvalidateTarget, ...]] = {
    ("products", "create_product"): (InvalidateTarget("list_products"),),
    ("products", "update_product"): (
        InvalidateTarget("list_products"),
        InvalidateTarget("get_product", include_args=True),
    ),
    ("products", "delete_product"): (
        InvalidateTarget("list_products"),
        InvalidateTarget("get_product", include_args=True),
    ),
    ("orders", "create_order"): (_USER_ORDERS,),
    ("orders", "process_order"): (_USER_ORDERS,),
    ("orders", "payment_received"): (_USER_ORDERS,),
    ("orders", "complete_order"): (_USER_ORDERS,),
}
