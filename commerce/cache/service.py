"""
cache/service.py
----------------
Tenant-aware response cache on Redis.

Key layout:

    <tenant | "default">:<scope>:<operation>[:<fingerprint>]

    acme:products:list_products
    acme:products:get_product:{"id":"3f2c..."}
    default:orders:list_orders:7b1e...:{"tenant_code":null}

The tenant segment comes from the tenant context unless the caller forces
a namespace with tenant_override. Structured arguments are serialised
canonically (sorted keys, compact separators), so the same arguments
always produce the same key whatever their insertion order.

The cache is advisory: every Redis or serialisation error is logged and
treated as a miss / no-op. Nothing here raises into business code.
"""

import json
from typing import Any, List, Mapping, Optional, Union

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from commerce.core.config import settings
from commerce.core.exceptions import CacheUnavailable
from commerce.core.logging import get_logger
from commerce.tenancy.context import get_tenant

logger = get_logger(__name__)

DEFAULT_NAMESPACE = "default"

Args = Union[str, Mapping[str, Any], None]

_CACHE_ERRORS = (RedisError, OSError, TypeError, ValueError)
_GLOB_SPECIAL = set("*?[]\\")
_DELETE_CHUNK = 500


def canonical_args(args: Args) -> Optional[str]:
    if args is None:
        return None
    if isinstance(args, str):
        return args
    return json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)


def build_cache_key(
    tenant: Optional[str],
    scope: str,
    operation: str,
    args: Args = None,
) -> str:
    key = f"{tenant or DEFAULT_NAMESPACE}:{scope}:{operation}"
    fingerprint = canonical_args(args)
    if fingerprint is not None:
        key = f"{key}:{fingerprint}"
    return key


def escape_glob(value: str) -> str:
    return "".join(f"\\{ch}" if ch in _GLOB_SPECIAL else ch for ch in value)


class CacheService:

    def __init__(self, redis: aioredis.Redis, default_ttl: Optional[int] = None) -> None:
        self._redis = redis
        self.default_ttl = default_ttl or settings.CACHE_DEFAULT_TTL

    @staticmethod
    def namespace(tenant_override: Optional[str] = None) -> str:
        return tenant_override or get_tenant() or DEFAULT_NAMESPACE

    def key(
        self,
        scope: str,
        operation: str,
        args: Args = None,
        tenant_override: Optional[str] = None,
    ) -> str:
        return build_cache_key(self.namespace(tenant_override), scope, operation, args)

    # ── Entries ───────────────────────────────────────────────────────────────

    async def get(
        self,
        scope: str,
        operation: str,
        args: Args = None,
        tenant_override: Optional[str] = None,
    ) -> Optional[Any]:
        key = self.key(scope, operation, args, tenant_override)
        try:
            raw = await self._redis.get(key)
            if raw is None:
                logger.debug("Cache miss", key=key)
                return None
            logger.debug("Cache hit", key=key)
            return json.loads(raw)
        except _CACHE_ERRORS as exc:
            logger.warning("Cache read failed", key=key, error=str(exc))
            return None

    async def set(
        self,
        scope: str,
        operation: str,
        value: Any,
        ttl: Optional[int] = None,
        args: Args = None,
        tenant_override: Optional[str] = None,
    ) -> None:
        key = self.key(scope, operation, args, tenant_override)
        try:
            await self._redis.set(key, json.dumps(value, default=str), ex=ttl or self.default_ttl)
        except _CACHE_ERRORS as exc:
            logger.warning("Cache write failed", key=key, error=str(exc))

    async def delete(
        self,
        scope: str,
        operation: str,
        args: Args = None,
        tenant_override: Optional[str] = None,
    ) -> None:
        key = self.key(scope, operation, args, tenant_override)
        try:
            await self._redis.delete(key)
            logger.debug("Cache entry invalidated", key=key)
        except _CACHE_ERRORS as exc:
            logger.warning("Cache delete failed", key=key, error=str(exc))

    async def delete_pattern(self, scope: str, tenant_override: Optional[str] = None) -> int:
        """Remove every entry of scope within the resolved tenant namespace."""
        prefix = f"{self.namespace(tenant_override)}:{scope}:"
        return await self._delete_matching(escape_glob(prefix) + "*")

    async def clear_tenant(self, tenant_code: Optional[str] = None) -> int:
        """Remove every entry of a tenant (or of the current namespace)."""
        prefix = f"{self.namespace(tenant_code)}:"
        return await self._delete_matching(escape_glob(prefix) + "*")

    async def _delete_matching(self, pattern: str) -> int:
        deleted = 0
        try:
            batch: List[str] = []
            async for key in self._redis.scan_iter(match=pattern, count=_DELETE_CHUNK):
                batch.append(key)
                if len(batch) >= _DELETE_CHUNK:
                    deleted += await self._redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._redis.delete(*batch)
            logger.debug("Cache entries invalidated", pattern=pattern, count=deleted)
        except _CACHE_ERRORS as exc:
            logger.warning("Cache pattern delete failed", pattern=pattern, error=str(exc))
        return deleted

    # ── Health ────────────────────────────────────────────────────────────────

    async def is_healthy(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except _CACHE_ERRORS as exc:
            logger.warning("Cache health check failed", error=str(exc))
            return False

    async def ensure_available(self) -> None:
        if not await self.is_healthy():
            raise CacheUnavailable("Cache store is unreachable")
