"""End-to-end tests through the HTTP API, with queue jobs driven by hand."""

import asyncio

import pytest
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from commerce.core.rate_limit import RateLimit, SlidingWindowRateLimiter, get_rate_limiter
from commerce.dependencies import get_current_user
from commerce.models.user import User, UserRole
from commerce.queue.broker import Topic

PASSWORD = "correct-horse-battery"


async def register(client, email, username, role="customer", tenant_code=None):
    body = {"email": email, "username": username, "password": PASSWORD, "role": role}
    if tenant_code is not None:
        body["tenant_code"] = tenant_code
    return await client.post("/register", json=body)


async def login(client, email) -> dict:
    resp = await client.post("/login", data={"username": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


async def drain(job_queue, handlers, topic) -> int:
    """Run queued jobs for topic until the stream is empty."""
    handled = 0
    while await job_queue.process_batch(topic, handlers.routes()[topic]):
        handled += 1
    return handled


@pytest.fixture
def setup_tenant(client, job_queue, handlers):
    async def _setup(code="ACME", email="owner@acme.example.com", username="acme_owner"):
        resp = await register(client, email, username, role="admin", tenant_code=code)
        assert resp.status_code == 201, resp.text
        await drain(job_queue, handlers, Topic.DATABASE_CREATION)
        return await login(client, email)

    return _setup


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["cache"] == "ok"


class TestRegistration:
    @pytest.mark.asyncio
    async def test_admin_registration_provisions_tenant(self, client, job_queue, handlers, registry):
        resp = await register(client, "owner@acme.example.com", "acme_owner", "admin", "ACME")
        assert resp.status_code == 201
        body = resp.json()
        assert body["tenant_code"] == "acme"
        assert body["is_database_created"] is False
        assert await job_queue.length(Topic.DATABASE_CREATION) == 1

        headers = await login(client, "owner@acme.example.com")
        not_ready = await client.get("/acme/products", headers=headers)
        assert not_ready.status_code == 409

        assert await drain(job_queue, handlers, Topic.DATABASE_CREATION) == 1

        me = await client.get("/me", headers=headers)
        assert me.json()["is_database_created"] is True
        assert registry.url_for("acme").endswith("/tenant_acme.db")

        products = await client.get("/acme/products", headers=headers)
        assert products.status_code == 200
        assert products.json() == []

    @pytest.mark.asyncio
    async def test_role_and_tenant_rules(self, client):
        admin_without_tenant = await register(client, "a@x.example.com", "admin_a", "admin")
        customer_with_tenant = await register(client, "c@x.example.com", "cust_c", "customer", "shop")
        assert admin_without_tenant.status_code == 400
        assert customer_with_tenant.status_code == 400

    @pytest.mark.asyncio
    async def test_duplicate_email(self, client):
        assert (await register(client, "dup@x.example.com", "first")).status_code == 201
        assert (await register(client, "dup@x.example.com", "second")).status_code == 409

    @pytest.mark.asyncio
    async def test_tenant_code_taken(self, client):
        assert (await register(client, "a@x.example.com", "owner_a", "admin", "shop")).status_code == 201
        resp = await register(client, "b@x.example.com", "owner_b", "admin", "SHOP")
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_concurrent_claims_of_one_tenant(self, client):
        results = await asyncio.gather(
            register(client, "a@x.example.com", "owner_a", "admin", "shop"),
            register(client, "b@x.example.com", "owner_b", "admin", "shop"),
        )
        assert sorted(r.status_code for r in results) == [201, 409]

    @pytest.mark.asyncio
    async def test_bad_credentials(self, client):
        await register(client, "user@x.example.com", "user_x")
        resp = await client.post("/login", data={"username": "user@x.example.com", "password": "wrong-pass"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_me_requires_token(self, client):
        assert (await client.get("/me")).status_code == 401


class TestCatalogue:
    @pytest.mark.asyncio
    async def test_admin_manages_own_catalogue(self, client, setup_tenant):
        headers = await setup_tenant()

        created = await client.post(
            "/acme/products",
            json={"name": "Widget", "price": "9.99", "stock": 5},
            headers=headers,
        )
        assert created.status_code == 201
        product_id = created.json()["id"]

        # Admin's claim routes /products to their own tenant
        listed = await client.get("/products", headers=headers)
        assert [p["name"] for p in listed.json()] == ["Widget"]

        updated = await client.patch(
            f"/acme/products/{product_id}", json={"stock": 7}, headers=headers
        )
        assert updated.json()["stock"] == 7
        fetched = await client.get(f"/acme/products/{product_id}", headers=headers)
        assert fetched.json()["stock"] == 7

        deleted = await client.delete(f"/acme/products/{product_id}", headers=headers)
        assert deleted.status_code == 200
        missing = await client.get(f"/acme/products/{product_id}", headers=headers)
        assert missing.status_code == 404
        assert (await client.get("/acme/products", headers=headers)).json() == []

    @pytest.mark.asyncio
    async def test_writes_are_admin_only_and_own_tenant_only(self, client, setup_tenant):
        acme = await setup_tenant()
        await setup_tenant("globex", "owner@globex.example.com", "globex_owner")
        await register(client, "buyer@x.example.com", "buyer")
        buyer = await login(client, "buyer@x.example.com")
        product = {"name": "Widget", "price": "1.00", "stock": 1}

        assert (await client.post("/acme/products", json=product, headers=buyer)).status_code == 403
        assert (await client.post("/globex/products", json=product, headers=acme)).status_code == 403

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, client, setup_tenant):
        acme = await setup_tenant()
        globex = await setup_tenant("globex", "owner@globex.example.com", "globex_owner")

        await client.post(
            "/acme/products", json={"name": "Anvil", "price": "50.00"}, headers=acme
        )
        await client.post(
            "/globex/products", json={"name": "Gadget", "price": "3.00"}, headers=globex
        )

        acme_names = [p["name"] for p in (await client.get("/products", headers=acme)).json()]
        globex_names = [
            p["name"] for p in (await client.get("/globex/products", headers=acme)).json()
        ]
        assert acme_names == ["Anvil"]
        assert globex_names == ["Gadget"]

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, client, default_db):
        await register(client, "buyer@x.example.com", "buyer")
        buyer = await login(client, "buyer@x.example.com")
        assert (await client.get("/nowhere/products", headers=buyer)).status_code == 409
        # No engine is kept for a tenant without a database
        assert not default_db.is_connected("nowhere")


class TestOrderLifecycle:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, client, setup_tenant, job_queue, handlers):
        admin = await setup_tenant()
        product = (
            await client.post(
                "/acme/products",
                json={"name": "Widget", "price": "2.50", "stock": 10},
                headers=admin,
            )
        ).json()
        await register(client, "buyer@x.example.com", "buyer")
        buyer = await login(client, "buyer@x.example.com")

        created = await client.post(
            "/orders/acme/create",
            json={"items": [{"product_id": product["id"], "qty": 3}]},
            headers=buyer,
        )
        assert created.status_code == 201, created.text
        order = created.json()
        assert order["status"] == "PENDING"
        assert order["total"] == "7.50"

        await drain(job_queue, handlers, Topic.ORDER_PROCESSING)
        listed = await client.get("/orders", params={"tenant_code": "acme"}, headers=buyer)
        assert [o["status"] for o in listed.json()] == ["WAITING_FOR_PAYMENT"]

        paid = await client.post(f"/orders/acme/{order['id']}/payment-received", headers=buyer)
        assert paid.json()["status"] == "PAID"
        stock = (await client.get(f"/acme/products/{product['id']}", headers=buyer)).json()
        assert stock["stock"] == 7

        accepted = await client.post(
            f"/orders/acme/{order['id']}/complete",
            json={"transaction_id": "tx-123"},
            headers=buyer,
        )
        assert accepted.status_code == 202
        await drain(job_queue, handlers, Topic.ORDER_COMPLETED)

        final = await client.get(f"/orders/acme/{order['id']}", headers=buyer)
        assert final.json()["status"] == "COMPLETE"
        assert final.json()["transaction_id"] == "tx-123"
        listed = await client.get("/orders", params={"tenant_code": "acme"}, headers=buyer)
        assert [o["status"] for o in listed.json()] == ["COMPLETE"]

    @pytest.mark.asyncio
    async def test_insufficient_stock(self, client, setup_tenant):
        admin = await setup_tenant()
        product = (
            await client.post(
                "/acme/products", json={"name": "Rare", "price": "1.00", "stock": 1}, headers=admin
            )
        ).json()
        await register(client, "buyer@x.example.com", "buyer")
        buyer = await login(client, "buyer@x.example.com")

        resp = await client.post(
            "/orders/acme/create",
            json={"items": [{"product_id": product["id"], "qty": 2}]},
            headers=buyer,
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_orders_are_private(self, client, setup_tenant):
        admin = await setup_tenant()
        product = (
            await client.post(
                "/acme/products", json={"name": "W", "price": "1.00", "stock": 5}, headers=admin
            )
        ).json()
        await register(client, "a@x.example.com", "buyer_a")
        await register(client, "b@x.example.com", "buyer_b")
        buyer_a = await login(client, "a@x.example.com")
        buyer_b = await login(client, "b@x.example.com")

        order = (
            await client.post(
                "/orders/acme/create",
                json={"items": [{"product_id": product["id"], "qty": 1}]},
                headers=buyer_a,
            )
        ).json()

        assert (await client.get(f"/orders/acme/{order['id']}", headers=buyer_b)).status_code == 404
        paid = await client.post(f"/orders/acme/{order['id']}/payment-received", headers=buyer_b)
        assert paid.status_code == 403

    @pytest.mark.asyncio
    async def test_completion_requires_payment(self, client, setup_tenant):
        admin = await setup_tenant()
        product = (
            await client.post(
                "/acme/products", json={"name": "W", "price": "1.00", "stock": 5}, headers=admin
            )
        ).json()
        await register(client, "buyer@x.example.com", "buyer")
        buyer = await login(client, "buyer@x.example.com")
        order = (
            await client.post(
                "/orders/acme/create",
                json={"items": [{"product_id": product["id"], "qty": 1}]},
                headers=buyer,
            )
        ).json()

        resp = await client.post(
            f"/orders/acme/{order['id']}/complete",
            json={"transaction_id": "tx"},
            headers=buyer,
        )
        assert resp.status_code == 400


class TestAdminMigrations:
    @pytest.mark.asyncio
    async def test_migrate_all_tenants(self, client, setup_tenant):
        headers = await setup_tenant()

        resp = await client.post("/admin/tenants/migrate", headers=headers)

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert {r["tenant_code"] for r in body["results"]} == {"acme"}
        assert {r["status"] for r in body["results"]} == {"already_applied"}

    @pytest.mark.asyncio
    async def test_customers_cannot_migrate(self, client):
        await register(client, "buyer@x.example.com", "buyer")
        buyer = await login(client, "buyer@x.example.com")
        assert (await client.post("/admin/tenants/migrate", headers=buyer)).status_code == 403


class TestRateLimitDependency:
    @pytest.mark.asyncio
    async def test_limit_and_headers(self):
        app = FastAPI()
        limiter = SlidingWindowRateLimiter()
        user = User(
            id="u1",
            email="u1@x.example.com",
            username="u1",
            hashed_password="x",
            role=UserRole.customer.value,
        )
        app.dependency_overrides[get_current_user] = lambda: user
        app.dependency_overrides[get_rate_limiter] = lambda: limiter

        @app.get(
            "/{tenant_code}/ping",
            dependencies=[Depends(RateLimit("ping", max_requests=2, window_seconds=60))],
        )
        async def ping():
            return {"ok": True}

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as c:
            first = await c.get("/acme/ping")
            second = await c.get("/acme/ping")
            third = await c.get("/acme/ping")
            other_tenant = await c.get("/globex/ping")

        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.status_code == 200
        assert third.status_code == 429
        assert third.headers["X-RateLimit-Remaining"] == "0"
        assert other_tenant.status_code == 200
