"""
Tests for webhook authentication and event deduplication
"""

import json
from unittest.mock import AsyncMock

import pytest

from cellar.config import settings
from cellar.exceptions import ProviderError, WebhookSignatureError
from cellar.services.webhook_dedupe import WebhookDeduplicator
from cellar.services.webhook_security import create_signature, verify_signature, verify_webhook
from conftest import FakeBillingClient, OfflineCache

BODY = json.dumps({"id": "WH-1", "event_type": "BILLING.SUBSCRIPTION.ACTIVATED", "resource": {"id": "I-1"}}).encode()
EVENT = json.loads(BODY)


@pytest.fixture
def unverified(monkeypatch):
    monkeypatch.setattr(settings, "paypal_webhook_id", None)
    monkeypatch.setattr(settings, "webhook_signing_secret", None)
    monkeypatch.setattr(settings, "environment", "testing")


class TestSignatures:
    def test_round_trip(self):
        signature = create_signature("secret", BODY)

        assert verify_signature("secret", BODY, signature)
        assert verify_signature("secret", BODY, f"sha256={signature}")

    def test_tampered_body(self):
        signature = create_signature("secret", BODY)

        assert not verify_signature("secret", BODY + b" ", signature)
        assert not verify_signature("other", BODY, signature)


class TestVerifyWebhook:
    @pytest.mark.asyncio
    async def test_hmac_accepted(self, unverified, monkeypatch):
        monkeypatch.setattr(settings, "webhook_signing_secret", "whsec")
        headers = {"x-webhook-signature": create_signature("whsec", BODY)}

        await verify_webhook("paypal", headers, BODY, EVENT)

    @pytest.mark.asyncio
    async def test_hmac_rejected(self, unverified, monkeypatch):
        monkeypatch.setattr(settings, "webhook_signing_secret", "whsec")

        with pytest.raises(WebhookSignatureError) as exc_info:
            await verify_webhook("paypal", {"x-webhook-signature": "bad"}, BODY, EVENT)
        assert exc_info.value.status_code == 401

        with pytest.raises(WebhookSignatureError):
            await verify_webhook("paypal", {}, BODY, EVENT)

    @pytest.mark.asyncio
    async def test_provider_verification(self, unverified, monkeypatch):
        monkeypatch.setattr(settings, "paypal_webhook_id", "WH-ID")
        billing = FakeBillingClient()

        await verify_webhook("paypal", {}, BODY, EVENT, billing_client=billing)

        billing.webhook_verified = False
        with pytest.raises(WebhookSignatureError):
            await verify_webhook("paypal", {}, BODY, EVENT, billing_client=billing)

    @pytest.mark.asyncio
    async def test_provider_outage_propagates(self, unverified, monkeypatch):
        monkeypatch.setattr(settings, "paypal_webhook_id", "WH-ID")
        billing = FakeBillingClient()
        billing.verify_webhook_signature = AsyncMock(side_effect=ProviderError("down", operation="verify"))

        with pytest.raises(ProviderError):
            await verify_webhook("paypal", {}, BODY, EVENT, billing_client=billing)

    @pytest.mark.asyncio
    async def test_unconfigured_outside_production(self, unverified):
        await verify_webhook("paypal", {}, BODY, EVENT)

    @pytest.mark.asyncio
    async def test_unconfigured_in_production(self, unverified, monkeypatch):
        monkeypatch.setattr(settings, "environment", "production")

        with pytest.raises(WebhookSignatureError):
            await verify_webhook("paypal", {}, BODY, EVENT)


class TestDeduplicator:
    @pytest.mark.asyncio
    async def test_mark_then_seen(self):
        dedupe = WebhookDeduplicator(cache=None)

        assert not await dedupe.seen("WH-1")
        await dedupe.mark("WH-1")
        assert await dedupe.seen("WH-1")

    @pytest.mark.asyncio
    async def test_events_without_id_are_never_seen(self):
        dedupe = WebhookDeduplicator(cache=None)

        await dedupe.mark(None)
        assert not await dedupe.seen(None)
        assert len(dedupe) == 0

    @pytest.mark.asyncio
    async def test_lru_is_bounded(self):
        dedupe = WebhookDeduplicator(cache=None, max_entries=2)

        for event_id in ("WH-1", "WH-2", "WH-3"):
            await dedupe.mark(event_id)

        assert len(dedupe) == 2
        assert not await dedupe.seen("WH-1")
        assert await dedupe.seen("WH-3")

    @pytest.mark.asyncio
    async def test_shared_redis_marker(self):
        cache = OfflineCache()
        cache.exists = AsyncMock(return_value=True)
        cache.set_nx = AsyncMock(return_value=True)
        dedupe = WebhookDeduplicator(cache=cache, ttl_seconds=60)

        # Marked by another worker
        assert await dedupe.seen("WH-7")
        cache.exists.assert_awaited_once_with("webhook:seen:WH-7")

        await dedupe.mark("WH-8")
        cache.set_nx.assert_awaited_once_with("webhook:seen:WH-8", "1", 60)

    @pytest.mark.asyncio
    async def test_redis_down_falls_back_to_process_memory(self):
        dedupe = WebhookDeduplicator(cache=OfflineCache())

        await dedupe.mark("WH-1")

        assert await dedupe.seen("WH-1")
