"""
HTTP tests: tenant resolution, rate limiting and the subscription, webhook,
tenant and admin routes
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt

from cellar.config import settings
from cellar.database import get_db
from cellar.services.connection_router import TenantConnectionRouter
from cellar.services.rate_limiter import RateLimiter
from cellar.services.subscription_service import EVENT_ACTIVATED, EVENT_CANCELLED
from cellar.services.webhook_security import create_signature
from cellar.tiers import PLAN_PRO_MONTHLY
from conftest import FakeStoreBackend, OfflineCache, TestSessionLocal, make_tenant, test_engine
from main import create_app


async def override_get_db():
    async with TestSessionLocal() as session:
        yield session


@pytest.fixture
def limiter() -> RateLimiter:
    now = datetime(2026, 5, 4, 10, 15, 30, tzinfo=timezone.utc)
    return RateLimiter(cache=None, clock=lambda: now, ip_requests_per_minute=1000)


@pytest.fixture
def store_backend() -> FakeStoreBackend:
    return FakeStoreBackend()


@pytest.fixture
def app(setup_test_database, billing, limiter, store_backend, monkeypatch):
    monkeypatch.setattr(settings, "paypal_webhook_id", None)
    monkeypatch.setattr(settings, "webhook_signing_secret", None)
    monkeypatch.setattr(settings, "admin_api_key", None)

    application = create_app(
        session_factory=TestSessionLocal,
        store_router=TenantConnectionRouter(test_engine),
        billing_client=billing,
        cache=OfflineCache(),
        rate_limiter=limiter,
        store_backend=store_backend,
    )
    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def tenant_headers(tenant) -> dict:
    return {"X-Tenant-ID": tenant.uuid}


class TestMonitoring:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["stores"] == {"shared": "ok"}

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "cellar_" in response.text


class TestTenantResolution:
    @pytest.mark.asyncio
    async def test_no_tenant(self, client):
        response = await client.get("/api/v1/tenant")

        assert response.status_code == 404
        assert response.json()["error"]["error_code"] == "TENANT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unknown_tenant_header(self, client):
        response = await client.get("/api/v1/tenant", headers={"X-Tenant-ID": "no-such-tenant"})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_header(self, client, free_tenant):
        response = await client.get("/api/v1/tenant", headers=tenant_headers(free_tenant))

        assert response.status_code == 200
        data = response.json()
        assert data["subdomain"] == "acme"
        assert data["tier"] == "free"
        assert data["limits"]["max_items"] == 25
        assert data["usage"]["item_count"] == 0

    @pytest.mark.asyncio
    async def test_subdomain(self, app, free_tenant, monkeypatch):
        monkeypatch.setattr(settings, "app_domain", "cellar.app")

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://acme.cellar.app") as ac:
            response = await ac.get("/api/v1/tenant")

        assert response.status_code == 200
        assert response.json()["id"] == free_tenant.uuid

    @pytest.mark.asyncio
    async def test_bearer_token_claim(self, client, free_tenant):
        token = jwt.encode(
            {"tenant_id": free_tenant.id, "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            settings.secret_key,
            algorithm=settings.jwt_algorithm,
        )

        response = await client.get("/api/v1/tenant", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json()["id"] == free_tenant.uuid

    @pytest.mark.asyncio
    async def test_suspended_tenant(self, client, db):
        tenant = await make_tenant(db, "frozen", status="suspended")

        response = await client.get("/api/v1/tenant", headers=tenant_headers(tenant))

        assert response.status_code == 403
        assert response.json()["error"]["error_code"] == "TENANT_INACTIVE"

    @pytest.mark.asyncio
    async def test_plans_need_no_tenant(self, client):
        response = await client.get("/api/v1/subscriptions/plans")

        assert response.status_code == 200
        assert len(response.json()) == 6


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_headers_on_success(self, client, free_tenant):
        response = await client.get("/api/v1/tenant", headers=tenant_headers(free_tenant))

        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.headers["X-RateLimit-Remaining"] == "99"
        assert "X-RateLimit-Reset" in response.headers

    @pytest.mark.asyncio
    async def test_tenant_over_hourly_limit(self, client, limiter, free_tenant):
        for _ in range(100):
            await limiter.check_tenant(free_tenant.id, "free")

        response = await client.get("/api/v1/tenant", headers=tenant_headers(free_tenant))

        assert response.status_code == 429
        assert 0 < int(response.headers["Retry-After"]) <= 3600
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_ip_limit(self, client, limiter, free_tenant):
        limiter.ip_requests_per_minute = 2

        statuses = [
            (await client.get("/api/v1/tenant", headers=tenant_headers(free_tenant))).status_code for _ in range(3)
        ]

        assert statuses == [200, 200, 429]

    @pytest.mark.asyncio
    async def test_health_is_not_throttled(self, client, limiter):
        limiter.ip_requests_per_minute = 1

        statuses = [(await client.get("/health")).status_code for _ in range(3)]

        assert statuses == [200, 200, 200]


class TestSubscriptionRoutes:
    @pytest.mark.asyncio
    async def test_upgrade_activate_cancel(self, client, billing, free_tenant):
        headers = tenant_headers(free_tenant)

        response = await client.post(
            "/api/v1/subscriptions/upgrade",
            json={"plan_id": PLAN_PRO_MONTHLY, "billing_cycle": "monthly"},
            headers=headers,
        )
        assert response.status_code == 200
        upgrade = response.json()
        assert upgrade["approval_url"].startswith("https://paypal.test/approve")
        assert upgrade["subscription"]["status"] == "pending"
        external_id = upgrade["subscription"]["external_subscription_id"]

        billing.approve(external_id)
        response = await client.post(
            "/api/v1/subscriptions/activate", json={"subscription_id": external_id}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "active"

        response = await client.get("/api/v1/subscriptions/current", headers=headers)
        assert response.json()["tier"] == "pro"
        assert response.json()["subscription"]["plan_id"] == PLAN_PRO_MONTHLY

        response = await client.post("/api/v1/subscriptions/cancel", json={"reason": "Moving on"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["tier"] == "free"
        assert response.json()["subscription"]["cancel_reason"] == "Moving on"

        response = await client.get("/api/v1/subscriptions/current", headers=headers)
        assert response.json() == {"tier": "free", "subscription": None}

    @pytest.mark.asyncio
    async def test_invalid_plan(self, client, free_tenant):
        response = await client.post(
            "/api/v1/subscriptions/upgrade", json={"plan_id": "PLAN_GOLD"}, headers=tenant_headers(free_tenant)
        )

        assert response.status_code == 400
        assert response.json()["error"]["error_code"] == "VALIDATION_FAILED"

    @pytest.mark.asyncio
    async def test_invalid_billing_cycle_is_rejected_by_schema(self, client, free_tenant):
        response = await client.post(
            "/api/v1/subscriptions/upgrade",
            json={"plan_id": PLAN_PRO_MONTHLY, "billing_cycle": "weekly"},
            headers=tenant_headers(free_tenant),
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_cannot_activate_another_tenants_subscription(self, client, db, billing, free_tenant):
        other = await make_tenant(db, "other")
        response = await client.post(
            "/api/v1/subscriptions/upgrade", json={"plan_id": PLAN_PRO_MONTHLY}, headers=tenant_headers(other)
        )
        external_id = response.json()["subscription"]["external_subscription_id"]
        billing.approve(external_id)

        response = await client.post(
            "/api/v1/subscriptions/activate",
            json={"subscription_id": external_id},
            headers=tenant_headers(free_tenant),
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, client, free_tenant):
        response = await client.post("/api/v1/subscriptions/cancel", headers=tenant_headers(free_tenant))

        assert response.status_code == 200
        assert response.json() == {"tier": "free", "subscription": None}


class TestWebhookRoute:
    async def _pending_subscription(self, client, billing, tenant) -> str:
        response = await client.post(
            "/api/v1/subscriptions/upgrade", json={"plan_id": PLAN_PRO_MONTHLY}, headers=tenant_headers(tenant)
        )
        external_id = response.json()["subscription"]["external_subscription_id"]
        billing.approve(external_id)
        return external_id

    @pytest.mark.asyncio
    async def test_activation_webhook(self, client, billing, free_tenant):
        external_id = await self._pending_subscription(client, billing, free_tenant)
        payload = {"id": "WH-1", "event_type": EVENT_ACTIVATED, "resource": {"id": external_id}}

        response = await client.post("/webhooks/paypal", json=payload)
        assert response.status_code == 200
        assert response.json() == {"status": "applied", "event_id": "WH-1"}

        response = await client.post("/webhooks/paypal", json=payload)
        assert response.json()["status"] == "duplicate"

        response = await client.get("/api/v1/subscriptions/current", headers=tenant_headers(free_tenant))
        assert response.json()["tier"] == "pro"

    @pytest.mark.asyncio
    async def test_hmac_signature(self, client, billing, free_tenant, monkeypatch):
        external_id = await self._pending_subscription(client, billing, free_tenant)
        monkeypatch.setattr(settings, "webhook_signing_secret", "whsec")
        body = ('{"id": "WH-2", "event_type": "%s", "resource": {"id": "%s"}}' % (EVENT_ACTIVATED, external_id)).encode()

        response = await client.post("/webhooks/paypal", content=body, headers={"X-Webhook-Signature": "bad"})
        assert response.status_code == 401

        response = await client.post(
            "/webhooks/paypal",
            content=body,
            headers={"X-Webhook-Signature": create_signature("whsec", body), "Content-Type": "application/json"},
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_malformed_body(self, client):
        response = await client.post("/webhooks/paypal", content=b"{not json")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_event_type(self, client):
        response = await client.post("/webhooks/paypal", json={"id": "WH-1", "resource": {"id": "I-1"}})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_provider(self, client):
        response = await client.post("/webhooks/stripe", json={"event_type": "x", "resource": {}})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_subscription_asks_for_redelivery(self, client):
        payload = {"id": "WH-1", "event_type": EVENT_CANCELLED, "resource": {"id": "I-UNKNOWN"}}

        response = await client.post("/webhooks/paypal", json=payload)

        assert response.status_code == 404
        assert response.json()["error"]["error_code"] == "SUBSCRIPTION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_acknowledged(self, client):
        payload = {"id": "WH-5", "event_type": "CUSTOMER.DISPUTE.CREATED", "resource": {"id": "PP-D-1"}}

        response = await client.post("/webhooks/paypal", json=payload)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"


class TestAdminRoutes:
    @pytest.mark.asyncio
    async def test_disabled_without_key(self, client, enterprise_tenant):
        response = await client.post(f"/api/v1/admin/tenants/{enterprise_tenant.id}/provision")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_key(self, client, enterprise_tenant, monkeypatch):
        monkeypatch.setattr(settings, "admin_api_key", "admin-key")

        response = await client.post(
            f"/api/v1/admin/tenants/{enterprise_tenant.id}/provision", headers={"X-Admin-Key": "guess"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_provision_and_decommission(self, client, store_backend, enterprise_tenant, monkeypatch):
        monkeypatch.setattr(settings, "admin_api_key", "admin-key")
        headers = {"X-Admin-Key": "admin-key"}

        response = await client.post(f"/api/v1/admin/tenants/{enterprise_tenant.id}/provision", headers=headers)
        assert response.status_code == 201
        assert response.json() == {"tenant_id": enterprise_tenant.id, "tier": "enterprise", "provisioned": True}

        response = await client.post(f"/api/v1/admin/tenants/{enterprise_tenant.id}/provision", headers=headers)
        assert response.status_code == 409

        response = await client.post(f"/api/v1/admin/tenants/{enterprise_tenant.id}/decommission", headers=headers)
        assert response.status_code == 200
        assert response.json()["provisioned"] is False
        assert store_backend.stores == set()

    @pytest.mark.asyncio
    async def test_provision_standard_tier(self, client, free_tenant, monkeypatch):
        monkeypatch.setattr(settings, "admin_api_key", "admin-key")

        response = await client.post(
            f"/api/v1/admin/tenants/{free_tenant.id}/provision", headers={"X-Admin-Key": "admin-key"}
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_store_health(self, client, enterprise_tenant, monkeypatch):
        monkeypatch.setattr(settings, "admin_api_key", "admin-key")

        response = await client.get(
            f"/api/v1/admin/tenants/{enterprise_tenant.id}/store-health", headers={"X-Admin-Key": "admin-key"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "not_provisioned"
