"""
Subscription Routes

GET    /api/v1/subscriptions/current   → current subscription (null ⇒ free tier)
GET    /api/v1/subscriptions/plans     → purchasable plans (no tenant needed)
POST   /api/v1/subscriptions/upgrade   → start an upgrade, returns the approval URL
POST   /api/v1/subscriptions/activate  → activate after the provider redirect
POST   /api/v1/subscriptions/cancel    → cancel and downgrade to free
"""

import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from cellar.dependencies import get_current_tenant, get_subscription_service
from cellar.exceptions import SubscriptionNotFoundError
from cellar.models.subscription import BillingCycle, Subscription
from cellar.models.tenant import Tenant
from cellar.services.subscription_service import DEFAULT_CANCEL_REASON, SubscriptionService

router = APIRouter(tags=["Subscriptions"])
logger = logging.getLogger(__name__)


# ── Pydantic schemas ───────────────────────────────────────────────────────────


class SubscriptionResponse(BaseModel):
    id: str
    plan_id: str
    status: str
    billing_cycle: str
    external_subscription_id: str | None
    amount: Decimal
    currency: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    next_billing_date: datetime | None
    trial_ends_at: datetime | None
    cancelled_at: datetime | None
    cancel_reason: str | None

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.uuid,
            plan_id=subscription.plan_id,
            status=subscription.status,
            billing_cycle=subscription.billing_cycle,
            external_subscription_id=subscription.external_subscription_id,
            amount=subscription.amount,
            currency=subscription.currency,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            next_billing_date=subscription.next_billing_date,
            trial_ends_at=subscription.trial_ends_at,
            cancelled_at=subscription.cancelled_at,
            cancel_reason=subscription.cancel_reason,
        )


class CurrentSubscriptionResponse(BaseModel):
    tier: str
    subscription: SubscriptionResponse | None


class UpgradeRequest(BaseModel):
    plan_id: str
    billing_cycle: BillingCycle = BillingCycle.monthly


class UpgradeResponse(BaseModel):
    subscription: SubscriptionResponse
    approval_url: str
    plan_id: str
    tier: str
    amount: Decimal
    currency: str


class ActivateRequest(BaseModel):
    subscription_id: str = Field(description="Provider subscription id returned to the success URL")


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class CancelResponse(BaseModel):
    tier: str
    subscription: SubscriptionResponse | None


# ── Routes ─────────────────────────────────────────────────────────────────────


@router.get("/current", response_model=CurrentSubscriptionResponse)
async def get_current_subscription(
    tenant: Tenant = Depends(get_current_tenant),
    service: SubscriptionService = Depends(get_subscription_service),
) -> CurrentSubscriptionResponse:
    subscription = await service.get_current_subscription(tenant.id)
    return CurrentSubscriptionResponse(
        tier=tenant.tier,
        subscription=SubscriptionResponse.from_subscription(subscription) if subscription else None,
    )


@router.get("/plans")
async def list_plans(service: SubscriptionService = Depends(get_subscription_service)) -> list[dict]:
    return [plan.to_dict() for plan in service.list_plans()]


@router.post("/upgrade", response_model=UpgradeResponse)
async def initiate_upgrade(
    payload: UpgradeRequest,
    tenant: Tenant = Depends(get_current_tenant),
    service: SubscriptionService = Depends(get_subscription_service),
) -> UpgradeResponse:
    """Create a pending subscription; the client redirects to approval_url."""
    result = await service.initiate_upgrade(tenant.id, payload.plan_id, payload.billing_cycle.value)
    return UpgradeResponse(
        subscription=SubscriptionResponse.from_subscription(result.subscription),
        approval_url=result.approval_url,
        plan_id=result.plan.id,
        tier=result.plan.tier.value,
        amount=result.amount,
        currency=result.currency,
    )


@router.post("/activate", response_model=SubscriptionResponse)
async def activate_subscription(
    payload: ActivateRequest,
    tenant: Tenant = Depends(get_current_tenant),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = await service.get_by_external_id(payload.subscription_id)
    if subscription is None or subscription.tenant_id != tenant.id:
        raise SubscriptionNotFoundError(payload.subscription_id)
    subscription = await service.activate(payload.subscription_id)
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    payload: CancelRequest | None = None,
    tenant: Tenant = Depends(get_current_tenant),
    service: SubscriptionService = Depends(get_subscription_service),
) -> CancelResponse:
    reason = payload.reason if payload and payload.reason else DEFAULT_CANCEL_REASON
    subscription = await service.cancel(tenant.id, reason)
    return CancelResponse(
        tier=tenant.tier,
        subscription=SubscriptionResponse.from_subscription(subscription) if subscription else None,
    )
