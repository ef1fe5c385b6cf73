"""Unit tests for the tenant-aware cache service."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from commerce.cache.service import CacheService, build_cache_key, canonical_args
from commerce.core.exceptions import CacheUnavailable
from commerce.tenancy.context import tenant_scope


class TestKeys:
    def test_layout(self):
        assert build_cache_key("acme", "products", "list_products") == "acme:products:list_products"
        assert build_cache_key(None, "products", "list_products") == "default:products:list_products"

    def test_args_are_canonical(self):
        first = canonical_args({"b": 2, "a": 1})
        second = canonical_args({"a": 1, "b": 2})
        assert first == second == '{"a":1,"b":2}'

    def test_string_args_are_used_verbatim(self):
        assert build_cache_key("t", "s", "op", "u1") == "t:s:op:u1"

    def test_namespace_follows_tenant_context(self, mock_redis):
        cache = CacheService(mock_redis)
        with tenant_scope("acme"):
            assert cache.key("products", "list_products") == "acme:products:list_products"
            assert cache.key("orders", "list_orders", tenant_override="default").startswith(
                "default:"
            )
        assert cache.key("products", "list_products").startswith("default:")


class TestEntries:
    @pytest.mark.asyncio
    async def test_set_get_delete(self, mock_redis):
        cache = CacheService(mock_redis)
        with tenant_scope("acme"):
            await cache.set("products", "get_product", {"id": "p1"}, ttl=60, args={"id": "p1"})
            assert await cache.get("products", "get_product", {"id": "p1"}) == {"id": "p1"}
            assert await mock_redis.ttl('acme:products:get_product:{"id":"p1"}') <= 60

            await cache.delete("products", "get_product", {"id": "p1"})
            assert await cache.get("products", "get_product", {"id": "p1"}) is None

    @pytest.mark.asyncio
    async def test_tenants_do_not_share_entries(self, mock_redis):
        cache = CacheService(mock_redis)
        with tenant_scope("acme"):
            await cache.set("products", "list_products", ["acme item"])
        with tenant_scope("globex"):
            assert await cache.get("products", "list_products") is None

    @pytest.mark.asyncio
    async def test_delete_pattern_is_scoped_to_tenant_and_scope(self, mock_redis):
        cache = CacheService(mock_redis)
        with tenant_scope("acme"):
            await cache.set("products", "list_products", [1])
            await cache.set("products", "get_product", {"id": 1}, args={"id": 1})
            await cache.set("orders", "list_orders", [2])
        with tenant_scope("globex"):
            await cache.set("products", "list_products", [3])

        with tenant_scope("acme"):
            assert await cache.delete_pattern("products") == 2
            assert await cache.get("orders", "list_orders") == [2]
        with tenant_scope("globex"):
            assert await cache.get("products", "list_products") == [3]

    @pytest.mark.asyncio
    async def test_pattern_metacharacters_in_tenant_are_literal(self, mock_redis):
        cache = CacheService(mock_redis)
        await cache.set("products", "list_products", [1], tenant_override="acme")
        assert await cache.clear_tenant("a*") == 0
        assert await cache.get("products", "list_products", tenant_override="acme") == [1]

    @pytest.mark.asyncio
    async def test_clear_tenant(self, mock_redis):
        cache = CacheService(mock_redis)
        await cache.set("products", "list_products", [1], tenant_override="acme")
        await cache.set("orders", "list_orders", [2], tenant_override="acme")
        assert await cache.clear_tenant("acme") == 2


class TestFailures:
    @pytest.mark.asyncio
    async def test_redis_errors_are_swallowed(self, mock_redis, monkeypatch):
        async def down(*args, **kwargs):
            raise RedisConnectionError("down")

        for name in ("get", "set", "delete", "ping"):
            monkeypatch.setattr(mock_redis, name, down)
        cache = CacheService(mock_redis)

        assert await cache.get("products", "list_products") is None
        await cache.set("products", "list_products", [1])
        await cache.delete("products", "list_products")
        assert await cache.is_healthy() is False
        with pytest.raises(CacheUnavailable):
            await cache.ensure_available()

    @pytest.mark.asyncio
    async def test_unserialisable_value_is_skipped(self, mock_redis):
        cache = CacheService(mock_redis)
        circular = []
        circular.append(circular)
        await cache.set("products", "list_products", circular)
        assert await cache.get("products", "list_products") is None

    @pytest.mark.asyncio
    async def test_healthy(self, mock_redis):
        assert await CacheService(mock_redis).is_healthy()
