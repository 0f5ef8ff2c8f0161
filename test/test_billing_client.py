"""
Tests for the PayPal billing client against a mocked transport
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from cellar.exceptions import ProviderError, ProviderTimeoutError
from cellar.services.billing_client import (
    LIVE_BASE_URL,
    SANDBOX_BASE_URL,
    PayPalClient,
    ProviderSubscription,
    parse_provider_time,
)

SUBSCRIPTION_RESPONSE = {
    "id": "I-BW452GLLEP1G",
    "status": "APPROVAL_PENDING",
    "plan_id": "P-PRO-MONTHLY",
    "start_time": "2026-01-15T10:00:00Z",
    "links": [
        {"href": "https://www.sandbox.paypal.com/webapps/billing/subscriptions?ba_token=BA-1", "rel": "approve"},
        {"href": "https://api-m.sandbox.paypal.com/v1/billing/subscriptions/I-BW452GLLEP1G", "rel": "self"},
    ],
}


class PayPalStub:
    """Records requests and answers like the PayPal REST API."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], tuple[int, dict | None]] = {
            ("POST", "/v1/oauth2/token"): (200, {"access_token": "A21AA", "expires_in": 32400}),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND", "message": "Not found"})
        status_code, body = route
        if body is None:
            return httpx.Response(status_code)
        return httpx.Response(status_code, json=body)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


@pytest.fixture
def stub() -> PayPalStub:
    return PayPalStub()


@pytest.fixture
async def client(stub):
    paypal = PayPalClient(client_id="id", client_secret="secret", mode="sandbox", transport=httpx.MockTransport(stub))
    yield paypal
    await paypal.aclose()


class TestParsing:
    def test_parse_provider_time(self):
        assert parse_provider_time("2026-01-15T10:00:00Z") == datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)
        assert parse_provider_time(None) is None
        assert parse_provider_time("yesterday") is None

    def test_from_response(self):
        data = {
            **SUBSCRIPTION_RESPONSE,
            "status": "ACTIVE",
            "billing_info": {
                "next_billing_time": "2026-02-15T10:00:00Z",
                "last_payment": {"amount": {"currency_code": "EUR", "value": "5.99"}},
            },
        }

        subscription = ProviderSubscription.from_response(data)

        assert subscription.status == "ACTIVE"
        assert subscription.approval_url.startswith("https://www.sandbox.paypal.com/")
        assert subscription.next_billing_time == datetime(2026, 2, 15, 10, 0, tzinfo=timezone.utc)
        assert subscription.amount == Decimal("5.99")
        assert subscription.currency == "EUR"
        assert not subscription.in_trial

    def test_trial_tenure(self):
        in_trial = {
            **SUBSCRIPTION_RESPONSE,
            "status": "ACTIVE",
            "billing_info": {
                "cycle_executions": [
                    {"tenure_type": "TRIAL", "sequence": 1, "cycles_completed": 1, "total_cycles": 1},
                    {"tenure_type": "REGULAR", "sequence": 2, "cycles_completed": 0, "total_cycles": 0},
                ],
            },
        }
        billed = {
            **in_trial,
            "billing_info": {
                "cycle_executions": [
                    {"tenure_type": "TRIAL", "sequence": 1, "cycles_completed": 1, "total_cycles": 1},
                    {"tenure_type": "REGULAR", "sequence": 2, "cycles_completed": 1, "total_cycles": 0},
                ],
            },
        }

        assert ProviderSubscription.from_response(in_trial).in_trial
        assert not ProviderSubscription.from_response(billed).in_trial

    def test_base_url_follows_mode(self):
        assert PayPalClient(client_id="id", client_secret="s", mode="live").base_url == LIVE_BASE_URL
        assert PayPalClient(client_id="id", client_secret="s", mode="sandbox").base_url == SANDBOX_BASE_URL


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_create_subscription(self, client, stub):
        stub.routes[("POST", "/v1/billing/subscriptions")] = (201, SUBSCRIPTION_RESPONSE)

        subscription = await client.create_subscription(
            "P-PRO-MONTHLY", "https://app/success", "https://app/cancel", custom_id="tenant-uuid"
        )

        assert subscription.id == "I-BW452GLLEP1G"
        assert subscription.status == "APPROVAL_PENDING"
        assert "ba_token=BA-1" in subscription.approval_url

        request = stub.requests[-1]
        assert request.headers["Authorization"] == "Bearer A21AA"
        body = json.loads(request.content)
        assert body["plan_id"] == "P-PRO-MONTHLY"
        assert body["custom_id"] == "tenant-uuid"
        assert body["application_context"]["return_url"] == "https://app/success"

    @pytest.mark.asyncio
    async def test_token_is_cached(self, client, stub):
        stub.routes[("GET", "/v1/billing/subscriptions/I-1")] = (200, {"id": "I-1", "status": "ACTIVE"})

        await client.get_subscription("I-1")
        await client.get_subscription("I-1")

        assert stub.paths().count("/v1/oauth2/token") == 1

    @pytest.mark.asyncio
    async def test_cancel_subscription(self, client, stub):
        stub.routes[("POST", "/v1/billing/subscriptions/I-1/cancel")] = (204, None)

        assert await client.cancel_subscription("I-1", "Too expensive") is None
        assert json.loads(stub.requests[-1].content) == {"reason": "Too expensive"}


class TestErrors:
    @pytest.mark.asyncio
    async def test_provider_error_carries_debug_id(self, client, stub):
        stub.routes[("POST", "/v1/billing/subscriptions/I-1/cancel")] = (
            422,
            {"name": "UNPROCESSABLE_ENTITY", "message": "Subscription status is invalid", "debug_id": "f3a1"},
        )

        with pytest.raises(ProviderError) as exc_info:
            await client.cancel_subscription("I-1", "reason")

        error = exc_info.value
        assert error.status_code == 502
        assert error.provider_status == 422
        assert error.details["debug_id"] == "f3a1"
        assert error.retryable
        assert "UNPROCESSABLE_ENTITY" in error.message

    @pytest.mark.asyncio
    async def test_auth_failure(self, client, stub):
        stub.routes[("POST", "/v1/oauth2/token")] = (
            401,
            {"error": "invalid_client", "error_description": "Client Authentication failed"},
        )

        with pytest.raises(ProviderError) as exc_info:
            await client.get_subscription("I-1")

        assert exc_info.value.operation == "oauth_token"

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        paypal = PayPalClient(client_id="id", client_secret="s", transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderTimeoutError) as exc_info:
            await paypal.get_subscription("I-1")

        assert exc_info.value.status_code == 504
        await paypal.aclose()

    @pytest.mark.asyncio
    async def test_connection_error(self, stub):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/oauth2/token":
                return stub(request)
            raise httpx.ConnectError("connection refused", request=request)

        paypal = PayPalClient(client_id="id", client_secret="s", transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderError) as exc_info:
            await paypal.get_subscription("I-1")

        assert not isinstance(exc_info.value, ProviderTimeoutError)
        assert exc_info.value.operation == "get_subscription"
        await paypal.aclose()


class TestWebhookVerification:
    @pytest.mark.asyncio
    async def test_verify_webhook_signature(self, client, stub):
        stub.routes[("POST", "/v1/notifications/verify-webhook-signature")] = (
            200,
            {"verification_status": "SUCCESS"},
        )
        headers = {"paypal-transmission-id": "t-1", "paypal-auth-algo": "SHA256withRSA"}

        assert await client.verify_webhook_signature("WH-1", headers, {"id": "WH-EVT-1"}) is True

        body = json.loads(stub.requests[-1].content)
        assert body["webhook_id"] == "WH-1"
        assert body["transmission_id"] == "t-1"
        assert body["webhook_event"] == {"id": "WH-EVT-1"}

    @pytest.mark.asyncio
    async def test_failed_verification(self, client, stub):
        stub.routes[("POST", "/v1/notifications/verify-webhook-signature")] = (
            200,
            {"verification_status": "FAILURE"},
        )

        assert await client.verify_webhook_signature("WH-1", {}, {}) is False
