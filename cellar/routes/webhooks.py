"""
Billing Webhook Routes

POST /webhooks/{provider}

Returns 200 for applied, duplicate and ignored events so the provider
stops retrying. Errors (400 malformed, 401 bad signature, 404 unknown
subscription, 5xx provider/internal) make the provider redeliver.
"""

import json
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from cellar.dependencies import get_subscription_service
from cellar.exceptions import NotFoundError, ValidationError
from cellar.services.subscription_service import SubscriptionService, WebhookEvent
from cellar.services.webhook_security import verify_webhook

router = APIRouter(tags=["Webhooks"])
logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = frozenset({"paypal"})


class WebhookAck(BaseModel):
    status: str
    event_id: str | None = None


@router.post("/{provider}", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    service: SubscriptionService = Depends(get_subscription_service),
) -> WebhookAck:
    if provider not in SUPPORTED_PROVIDERS:
        raise NotFoundError("Webhook provider", provider)

    body = await request.body()
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Webhook body is not valid JSON")

    event = WebhookEvent.parse(payload)
    headers = {name.lower(): value for name, value in request.headers.items()}
    await verify_webhook(provider, headers, body, payload, billing_client=request.app.state.billing_client)

    logger.info("Webhook received: provider=%s id=%s type=%s", provider, event.id, event.event_type)
    outcome = await service.handle_webhook(event)
    return WebhookAck(status=outcome.value, event_id=event.id)
