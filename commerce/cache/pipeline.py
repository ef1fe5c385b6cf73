"""
cache/pipeline.py
-----------------
Wraps an operation with read-through caching and write invalidation,
driven by the tables in cache/policy.py.

    result = await pipeline.run(
        "products", "get_product",
        lambda: ProductService.get_product(db, product_id),
        args={"id": product_id},
    )

Cached operations return JSON-compatible data (the output of
jsonable_encoder), whether the result came from the cache or not, so the
caller sees the same shape on a hit and on a miss.
"""

from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from fastapi import Depends
from fastapi.encoders import jsonable_encoder

from commerce.cache.policy import (
    CACHE_POLICIES,
    INVALIDATION_POLICIES,
    WILDCARD,
    CacheOptions,
    InvalidateTarget,
    OperationKey,
    fingerprint,
)
from commerce.cache.service import CacheService
from commerce.core.logging import get_logger
from commerce.core.redis import get_redis

logger = get_logger(__name__)


class CachePipeline:

    def __init__(
        self,
        cache: CacheService,
        policies: Optional[Dict[OperationKey, CacheOptions]] = None,
        invalidations: Optional[Dict[OperationKey, Tuple[InvalidateTarget, ...]]] = None,
    ) -> None:
        self.cache = cache
        self._policies = CACHE_POLICIES if policies is None else policies
        self._invalidations = INVALIDATION_POLICIES if invalidations is None else invalidations

    async def run(
        self,
        scope: str,
        operation: str,
        compute: Callable[[], Awaitable[Any]],
        args: Optional[Mapping[str, Any]] = None,
        principal_id: Optional[str] = None,
    ) -> Any:
        options = self._policies.get((scope, operation))
        if options is None:
            result = await compute()
            await self.invalidate(scope, operation, args, principal_id)
            return result

        key_args = fingerprint(options.include_args, options.include_user_id, args, principal_id)
        cached = await self.cache.get(scope, operation, key_args, options.tenant_override)
        if cached is not None:
            return cached

        result = jsonable_encoder(await compute())
        if result is not None:
            await self.cache.set(
                scope, operation, result, options.ttl, key_args, options.tenant_override
            )
        return result

    async def invalidate(
        self,
        scope: str,
        operation: str,
        args: Optional[Mapping[str, Any]] = None,
        principal_id: Optional[str] = None,
    ) -> None:
        """Drop every cached entry the write (scope, operation) makes stale."""
        for target in self._invalidations.get((scope, operation), ()):
            if target.operation == WILDCARD:
                await self.cache.delete_pattern(scope, target.tenant_override)
                continue
            key_args = fingerprint(
                target.include_args, target.include_user_id, args, principal_id
            )
            await self.cache.delete(scope, target.operation, key_args, target.tenant_override)


def get_cache_service() -> CacheService:
    return CacheService(get_redis())


def get_cache_pipeline(
    cache: CacheService = Depends(get_cache_service),
) -> CachePipeline:
    return CachePipeline(cache)
