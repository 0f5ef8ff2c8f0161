"""
Billing Client

Async client for the PayPal subscriptions API. Every call is bounded by
BILLING_TIMEOUT_SECONDS; timeouts raise ProviderTimeoutError and non-2xx
responses raise ProviderError carrying PayPal's debug id. The client never
retries on its own.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx

from cellar.config import settings
from cellar.exceptions import ProviderError, ProviderTimeoutError
from cellar.utils.metrics import record_billing_request

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
LIVE_BASE_URL = "https://api-m.paypal.com"

# Refresh the OAuth token this many seconds before PayPal expires it
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def parse_provider_time(value: str | None) -> datetime | None:
    """Parse PayPal's RFC 3339 timestamps ("2024-01-01T10:00:00Z")."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable provider timestamp: %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class ProviderSubscription:
    """The fields of a provider subscription the core acts on."""

    id: str
    status: str
    plan_id: str | None = None
    start_time: datetime | None = None
    next_billing_time: datetime | None = None
    approval_url: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    in_trial: bool = False

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "ProviderSubscription":
        billing_info = data.get("billing_info") or {}
        last_payment = (billing_info.get("last_payment") or {}).get("amount") or {}

        approval_url = None
        for link in data.get("links") or []:
            if link.get("rel") == "approve":
                approval_url = link.get("href")
                break

        # Trial tenure is over once a regular cycle has been billed
        executions = billing_info.get("cycle_executions") or []
        has_trial = any(cycle.get("tenure_type") == "TRIAL" for cycle in executions)
        regular_started = any(
            cycle.get("tenure_type") == "REGULAR" and (cycle.get("cycles_completed") or 0) > 0 for cycle in executions
        )

        amount = None
        if last_payment.get("value"):
            try:
                amount = Decimal(last_payment["value"])
            except InvalidOperation:
                amount = None

        return cls(
            id=data["id"],
            status=data.get("status", ""),
            plan_id=data.get("plan_id"),
            start_time=parse_provider_time(data.get("start_time")),
            next_billing_time=parse_provider_time(billing_info.get("next_billing_time")),
            approval_url=approval_url,
            amount=amount,
            currency=last_payment.get("currency_code"),
            in_trial=has_trial and not regular_started,
        )


class BillingClient(Protocol):
    async def create_subscription(
        self, provider_plan_id: str, return_url: str, cancel_url: str, custom_id: str | None = None
    ) -> ProviderSubscription: ...

    async def get_subscription(self, subscription_id: str) -> ProviderSubscription: ...

    async def cancel_subscription(self, subscription_id: str, reason: str) -> None: ...


class PayPalClient:
    """PayPal REST client with a cached OAuth2 client-credentials token."""

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        mode: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client_id = client_id if client_id is not None else settings.paypal_client_id
        self.client_secret = client_secret if client_secret is not None else settings.paypal_client_secret
        self.mode = mode or settings.paypal_mode
        self.base_url = LIVE_BASE_URL if self.mode == "live" else SANDBOX_BASE_URL
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.billing_timeout_seconds,
            transport=transport,
        )
        self._access_token: str | None = None
        self._token_expires_at: float = 0

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_access_token(self) -> str:
        if self._access_token and time.time() < self._token_expires_at:
            return self._access_token

        try:
            response = await self._client.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            record_billing_request("oauth_token", "timeout")
            raise ProviderTimeoutError(operation="oauth_token") from e
        except httpx.RequestError as e:
            record_billing_request("oauth_token", "error")
            raise ProviderError(f"Billing provider unreachable: {e}", operation="oauth_token") from e

        if response.status_code != 200:
            record_billing_request("oauth_token", "error")
            raise self._error_from_response("oauth_token", response)

        payload = response.json()
        self._access_token = payload["access_token"]
        self._token_expires_at = time.time() + int(payload.get("expires_in", 0)) - TOKEN_EXPIRY_MARGIN_SECONDS
        logger.debug("Obtained PayPal access token (mode=%s)", self.mode)
        return self._access_token

    @staticmethod
    def _error_from_response(operation: str, response: httpx.Response) -> ProviderError:
        name, message, debug_id = None, response.text, None
        try:
            body = response.json()
            name = body.get("name") or body.get("error")
            message = body.get("message") or body.get("error_description") or message
            debug_id = body.get("debug_id")
        except ValueError:
            pass

        text = f"{name}: {message}" if name else f"HTTP {response.status_code}: {message}"
        logger.error(
            "Billing provider error: operation=%s status=%d debug_id=%s message=%s",
            operation,
            response.status_code,
            debug_id,
            text,
        )
        return ProviderError(
            f"Billing provider error: {text}",
            operation=operation,
            provider_status=response.status_code,
            debug_id=debug_id,
        )

    async def _request(
        self, operation: str, method: str, path: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        token = await self._get_access_token()
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
        except httpx.TimeoutException as e:
            record_billing_request(operation, "timeout")
            logger.error("Billing provider timeout: operation=%s path=%s", operation, path)
            raise ProviderTimeoutError(operation=operation) from e
        except httpx.RequestError as e:
            record_billing_request(operation, "error")
            logger.error("Billing provider unreachable: operation=%s error=%s", operation, e)
            raise ProviderError(f"Billing provider unreachable: {e}", operation=operation) from e

        if response.status_code >= 300:
            record_billing_request(operation, "error")
            raise self._error_from_response(operation, response)

        record_billing_request(operation, "success")
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def create_subscription(
        self,
        provider_plan_id: str,
        return_url: str,
        cancel_url: str,
        custom_id: str | None = None,
    ) -> ProviderSubscription:
        body: dict[str, Any] = {
            "plan_id": provider_plan_id,
            "application_context": {
                "brand_name": settings.app_name,
                "return_url": return_url,
                "cancel_url": cancel_url,
                "user_action": "SUBSCRIBE_NOW",
                "payment_method": {
                    "payer_selected": "PAYPAL",
                    "payee_preferred": "IMMEDIATE_PAYMENT_REQUIRED",
                },
            },
        }
        if custom_id:
            body["custom_id"] = custom_id

        data = await self._request("create_subscription", "POST", "/v1/billing/subscriptions", json=body)
        subscription = ProviderSubscription.from_response(data or {})
        logger.info("Provider subscription created: id=%s plan=%s", subscription.id, provider_plan_id)
        return subscription

    async def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        data = await self._request("get_subscription", "GET", f"/v1/billing/subscriptions/{subscription_id}")
        return ProviderSubscription.from_response(data or {})

    async def cancel_subscription(self, subscription_id: str, reason: str) -> None:
        await self._request(
            "cancel_subscription",
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/cancel",
            json={"reason": reason},
        )
        logger.info("Provider subscription cancelled: id=%s", subscription_id)

    async def verify_webhook_signature(self, webhook_id: str, headers: dict[str, str], event: dict[str, Any]) -> bool:
        """Ask PayPal whether a webhook delivery carries a valid signature."""
        body = {
            "auth_algo": headers.get("paypal-auth-algo"),
            "cert_url": headers.get("paypal-cert-url"),
            "transmission_id": headers.get("paypal-transmission-id"),
            "transmission_sig": headers.get("paypal-transmission-sig"),
            "transmission_time": headers.get("paypal-transmission-time"),
            "webhook_id": webhook_id,
            "webhook_event": event,
        }
        data = await self._request(
            "verify_webhook_signature", "POST", "/v1/notifications/verify-webhook-signature", json=body
        )
        return (data or {}).get("verification_status") == "SUCCESS"
