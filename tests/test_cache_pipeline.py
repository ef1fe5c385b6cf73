"""Unit tests for policy-driven read-through caching and invalidation."""

from decimal import Decimal

import pytest

from commerce.cache.pipeline import CachePipeline
from commerce.cache.policy import CacheOptions, InvalidateTarget, fingerprint
from commerce.cache.service import CacheService
from commerce.schemas.product import ProductRead
from commerce.tenancy.context import tenant_scope


class Counter:
    def __init__(self, value):
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.value


def test_fingerprint_combines_user_and_args():
    assert fingerprint(True, True, {"b": 1, "a": 2}, "u1") == 'u1:{"a":2,"b":1}'
    assert fingerprint(False, True, {"a": 1}, "u1") == "u1"
    assert fingerprint(True, False, None, "u1") is None
    assert fingerprint(False, False, {"a": 1}, "u1") is None


@pytest.fixture
def pipeline(mock_redis) -> CachePipeline:
    return CachePipeline(CacheService(mock_redis))


class TestReadThrough:
    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, pipeline):
        compute = Counter([{"name": "Widget"}])
        with tenant_scope("acme"):
            first = await pipeline.run("products", "list_products", compute)
            second = await pipeline.run("products", "list_products", compute)

        assert first == second == [{"name": "Widget"}]
        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_models_are_stored_as_json(self, pipeline, mock_redis):
        product = ProductRead(
            id="p1",
            name="Widget",
            description=None,
            price=Decimal("9.99"),
            stock=3,
            created_at="2024-01-01T00:00:00Z",
            updated_at="2024-01-01T00:00:00Z",
        )
        with tenant_scope("acme"):
            result = await pipeline.run(
                "products", "get_product", Counter(product), args={"id": "p1"}
            )
        assert result["name"] == "Widget"
        assert await mock_redis.exists('acme:products:get_product:{"id":"p1"}')

    @pytest.mark.asyncio
    async def test_tenants_are_cached_separately(self, pipeline):
        with tenant_scope("acme"):
            await pipeline.run("products", "list_products", Counter(["acme"]))
        with tenant_scope("globex"):
            result = await pipeline.run("products", "list_products", Counter(["globex"]))
        assert result == ["globex"]

    @pytest.mark.asyncio
    async def test_user_orders_live_in_default_namespace(self, pipeline, mock_redis):
        with tenant_scope("acme"):
            await pipeline.run(
                "orders",
                "list_orders",
                Counter([]),
                args={"tenant_code": "acme"},
                principal_id="u1",
            )
        assert await mock_redis.exists(
            'default:orders:list_orders:u1:{"tenant_code":"acme"}'
        )

    @pytest.mark.asyncio
    async def test_uncached_operation_always_computes(self, pipeline):
        compute = Counter("done")
        await pipeline.run("products", "reindex", compute)
        await pipeline.run("products", "reindex", compute)
        assert compute.calls == 2


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_create_product_drops_the_list(self, pipeline):
        with tenant_scope("acme"):
            await pipeline.run("products", "list_products", Counter(["old"]))
            await pipeline.invalidate("products", "create_product")
            result = await pipeline.run("products", "list_products", Counter(["new"]))
        assert result == ["new"]

    @pytest.mark.asyncio
    async def test_update_drops_list_and_that_product_only(self, pipeline):
        with tenant_scope("acme"):
            await pipeline.run("products", "list_products", Counter(["list"]))
            await pipeline.run("products", "get_product", Counter({"id": "p1"}), args={"id": "p1"})
            await pipeline.run("products", "get_product", Counter({"id": "p2"}), args={"id": "p2"})

            await pipeline.invalidate("products", "update_product", args={"id": "p1"})

            p1 = Counter({"id": "p1", "v": 2})
            p2 = Counter({"id": "p2", "v": 2})
            await pipeline.run("products", "get_product", p1, args={"id": "p1"})
            await pipeline.run("products", "get_product", p2, args={"id": "p2"})
        assert p1.calls == 1
        assert p2.calls == 0

    @pytest.mark.asyncio
    async def test_invalidation_does_not_cross_tenants(self, pipeline):
        with tenant_scope("globex"):
            await pipeline.run("products", "list_products", Counter(["globex"]))
        with tenant_scope("acme"):
            await pipeline.invalidate("products", "create_product")
        with tenant_scope("globex"):
            compute = Counter(["fresh"])
            assert await pipeline.run("products", "list_products", compute) == ["globex"]
        assert compute.calls == 0

    @pytest.mark.asyncio
    async def test_order_write_drops_callers_list(self, pipeline):
        args = {"tenant_code": "acme"}
        with tenant_scope("acme"):
            await pipeline.run("orders", "list_orders", Counter([]), args=args, principal_id="u1")
            await pipeline.run("orders", "list_orders", Counter([]), args=args, principal_id="u2")
            await pipeline.invalidate("orders", "create_order", args=args, principal_id="u1")

            u1 = Counter(["order"])
            u2 = Counter(["order"])
            await pipeline.run("orders", "list_orders", u1, args=args, principal_id="u1")
            await pipeline.run("orders", "list_orders", u2, args=args, principal_id="u2")
        assert u1.calls == 1
        assert u2.calls == 0

    @pytest.mark.asyncio
    async def test_wildcard_target_clears_scope(self, mock_redis):
        pipeline = CachePipeline(
            CacheService(mock_redis),
            policies={("products", "list_products"): CacheOptions()},
            invalidations={("products", "import"): (InvalidateTarget("*"),)},
        )
        with tenant_scope("acme"):
            await pipeline.run("products", "list_products", Counter([1]))
            await pipeline.run("products", "import", Counter(None))
            compute = Counter([2])
            assert await pipeline.run("products", "list_products", compute) == [2]
