"""
Webhook Security

Authenticates inbound billing webhooks before they are acted on:

1. PAYPAL_WEBHOOK_ID set: PayPal's verify-webhook-signature API checks the
   transmission headers.
2. WEBHOOK_SIGNING_SECRET set: HMAC-SHA256 hex digest of the raw body in
   the X-Webhook-Signature header.
3. Neither set: accepted outside production only, with a warning.
"""

import hashlib
import hmac
import logging
from typing import Any

from cellar.config import settings
from cellar.exceptions import ProviderError, WebhookSignatureError
from cellar.services.billing_client import PayPalClient

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"


def create_signature(secret: str, payload: bytes) -> str:
    """HMAC-SHA256 signature for a payload."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: bytes, signature: str) -> bool:
    """Verify a webhook signature in constant time."""
    expected = create_signature(secret, payload)
    if signature.startswith("sha256="):
        signature = signature[len("sha256=") :]
    return hmac.compare_digest(expected, signature)


async def verify_webhook(
    provider: str,
    headers: dict[str, str],
    body: bytes,
    event: dict[str, Any],
    billing_client: PayPalClient | None = None,
) -> None:
    """
    Raise WebhookSignatureError unless the delivery is authentic.

    ``headers`` must have lower-cased names.
    """
    if settings.paypal_webhook_id and billing_client is not None:
        try:
            verified = await billing_client.verify_webhook_signature(settings.paypal_webhook_id, headers, event)
        except ProviderError as e:
            # Provider outage: reject so PayPal redelivers later
            logger.error("Webhook verification call failed: %s", e.message)
            raise
        if not verified:
            logger.warning("Webhook rejected: provider signature verification failed (event id=%s)", event.get("id"))
            raise WebhookSignatureError(provider=provider)
        return

    if settings.webhook_signing_secret:
        signature = headers.get(SIGNATURE_HEADER)
        if not signature or not verify_signature(settings.webhook_signing_secret, body, signature):
            logger.warning("Webhook rejected: invalid HMAC signature (event id=%s)", event.get("id"))
            raise WebhookSignatureError(provider=provider)
        return

    if settings.is_production:
        logger.error("Webhook rejected: no verification configured in production")
        raise WebhookSignatureError("Webhook verification is not configured", provider=provider)

    logger.warning("Webhook accepted without signature verification (no webhook id or signing secret configured)")
