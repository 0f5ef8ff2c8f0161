"""
Subscription Service

Subscription Lifecycle Manager: owns the subscription state machine, talks
to the billing provider to create and cancel subscriptions and applies
provider webhooks. Activation is the only place a tenant's tier is
promoted; cancellation and expiry downgrade it to free immediately.

State machine (terminal: cancelled, expired):

    pending   -> active | trialing | cancelled
    trialing  -> active | suspended | cancelled | expired
    active    -> active (renewal) | past_due | suspended | cancelled | expired
    past_due  -> active | suspended | cancelled | expired
    suspended -> active | cancelled | expired

Every webhook handler is idempotent: it first compares the subscription's
current state with the event's target state and reports ``duplicate``
instead of applying it twice.

A plan with a provider-side trial activates into ``trialing``; the tier is
granted for the trial and the subscription becomes ``active`` once the
provider bills the first regular cycle.
"""

import calendar
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.config import settings
from cellar.exceptions import (
    CellarError,
    ConflictError,
    InvalidStatusTransitionError,
    ProviderError,
    SubscriptionNotFoundError,
    ValidationError,
)
from cellar.models.subscription import (
    NON_TERMINAL_STATUSES,
    BillingCycle,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
from cellar.models.tenant import TOP_TIER, Tenant, TenantTier
from cellar.services import tenant_service
from cellar.services.billing_client import BillingClient
from cellar.services.webhook_dedupe import WebhookDeduplicator
from cellar.tiers import PLANS, Plan, list_plans, tier_for_plan
from cellar.utils.metrics import record_subscription_transition, record_webhook_event

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    S.pending.value: frozenset({S.active.value, S.trialing.value, S.cancelled.value}),
    S.trialing.value: frozenset({S.active.value, S.suspended.value, S.cancelled.value, S.expired.value}),
    S.active.value: frozenset({S.active.value, S.past_due.value, S.suspended.value, S.cancelled.value, S.expired.value}),
    S.past_due.value: frozenset({S.active.value, S.suspended.value, S.cancelled.value, S.expired.value}),
    S.suspended.value: frozenset({S.active.value, S.cancelled.value, S.expired.value}),
    S.cancelled.value: frozenset(),
    S.expired.value: frozenset(),
}

# Provider-side statuses that can never be activated locally
PROVIDER_INACTIVE_STATUSES = frozenset({"APPROVAL_PENDING", "CANCELLED", "EXPIRED"})

DEFAULT_CANCEL_REASON = "User requested cancellation"

EVENT_ACTIVATED = "BILLING.SUBSCRIPTION.ACTIVATED"
EVENT_UPDATED = "BILLING.SUBSCRIPTION.UPDATED"
EVENT_CANCELLED = "BILLING.SUBSCRIPTION.CANCELLED"
EVENT_SUSPENDED = "BILLING.SUBSCRIPTION.SUSPENDED"
EVENT_EXPIRED = "BILLING.SUBSCRIPTION.EXPIRED"
EVENT_PAYMENT_FAILED = "BILLING.SUBSCRIPTION.PAYMENT.FAILED"
EVENT_PAYMENT_COMPLETED = "PAYMENT.SALE.COMPLETED"

SOURCE_API = "api"
SOURCE_WEBHOOK = "webhook"


class WebhookOutcome(str, enum.Enum):
    applied = "applied"
    duplicate = "duplicate"  # already applied; acknowledged without changes
    ignored = "ignored"  # unknown event type or not applicable to the current state


@dataclass
class WebhookEvent:
    """A provider webhook delivery, parsed just enough to dispatch it."""

    event_type: str
    resource: dict[str, Any]
    id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def resource_id(self) -> str | None:
        return self.resource.get("id")

    @classmethod
    def parse(cls, payload: Any) -> "WebhookEvent":
        if not isinstance(payload, dict):
            raise ValidationError("Webhook payload must be a JSON object")
        event_type = payload.get("event_type")
        if not isinstance(event_type, str) or not event_type:
            raise ValidationError("Webhook payload has no event_type", field="event_type")
        resource = payload.get("resource")
        if not isinstance(resource, dict):
            raise ValidationError("Webhook payload has no resource", field="resource")
        event_id = payload.get("id")
        return cls(
            event_type=event_type,
            resource=resource,
            id=str(event_id) if event_id else None,
            raw=payload,
        )


@dataclass
class UpgradeResult:
    subscription: Subscription
    approval_url: str
    plan: Plan
    amount: Decimal
    currency: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    """Stores without timezone support hand back naive UTC datetimes."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def add_billing_cycle(start: datetime, billing_cycle: str) -> datetime:
    """
    Advance ``start`` by one billing cycle.

    Days past the end of the target month clamp to its last day
    (Jan 31 + 1 month = Feb 28/29).
    """
    months = 12 if billing_cycle == BillingCycle.yearly.value else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class SubscriptionService:
    def __init__(
        self,
        db: AsyncSession,
        billing_client: BillingClient,
        deduplicator: WebhookDeduplicator | None = None,
        provisioning=None,
    ):
        self.db = db
        self.billing = billing_client
        self.deduplicator = deduplicator or WebhookDeduplicator()
        self.provisioning = provisioning

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_current_subscription(self, tenant_id: int) -> Subscription | None:
        """Latest non-terminal subscription of a tenant; None means free tier."""
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id, Subscription.status.in_(NON_TERMINAL_STATUSES))
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        )
        return result.scalars().first()

    async def get_by_external_id(self, external_subscription_id: str) -> Subscription | None:
        result = await self.db.execute(
            select(Subscription).where(Subscription.external_subscription_id == external_subscription_id)
        )
        return result.scalars().first()

    async def list_events(self, subscription_id: int) -> list[SubscriptionEvent]:
        """Audit trail of a subscription, oldest first."""
        result = await self.db.execute(
            select(SubscriptionEvent)
            .where(SubscriptionEvent.subscription_id == subscription_id)
            .order_by(SubscriptionEvent.id)
        )
        return list(result.scalars().all())

    def list_plans(self) -> list[Plan]:
        return list_plans()

    # =========================================================================
    # State machine
    # =========================================================================

    def _transition(
        self,
        subscription: Subscription,
        target: SubscriptionStatus,
        source: str,
        event_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        """Move a subscription to ``target`` and append the audit row (caller commits)."""
        current = subscription.status
        if target.value not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidStatusTransitionError(current, target.value)

        subscription.status = target.value
        self.db.add(
            SubscriptionEvent(
                subscription_id=subscription.id,
                tenant_id=subscription.tenant_id,
                from_status=current,
                to_status=target.value,
                source=source,
                external_event_id=event_id,
                detail=detail,
            )
        )
        record_subscription_transition(target.value)
        logger.info(
            "Subscription transition: id=%d tenant_id=%d %s -> %s (source=%s)",
            subscription.id,
            subscription.tenant_id,
            current,
            target.value,
            source,
        )

    async def _downgrade_to_free(self, tenant: Tenant) -> None:
        previous_tier = tenant.tier
        tenant_service.set_tier(tenant, TenantTier.free)
        if previous_tier == TOP_TIER.value:
            await self._detach_store(tenant)

    async def _detach_store(self, tenant: Tenant) -> None:
        """
        Stop routing a tenant that left the top tier to its dedicated store.

        The physical database is kept; only the handle and descriptor go.
        """
        if not tenant.store_descriptor:
            return
        if self.provisioning is not None:
            await self.provisioning.router.release(tenant.id)
        tenant.store_descriptor = None
        logger.info("Dedicated store detached: tenant_id=%d", tenant.id)

    async def _cancel_superseded_remotely(self, subscription: Subscription) -> None:
        """Best-effort provider cancellation of the records ``subscription`` replaced."""
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.superseded_by_id == subscription.id,
                Subscription.external_subscription_id.is_not(None),
            )
        )
        for predecessor in result.scalars().all():
            try:
                await self.billing.cancel_subscription(
                    predecessor.external_subscription_id, "Replaced by a new subscription"
                )
            except ProviderError as e:
                logger.error(
                    "Failed to cancel superseded subscription at provider: id=%d external_id=%s error=%s",
                    predecessor.id,
                    predecessor.external_subscription_id,
                    e.message,
                )

    # =========================================================================
    # User-initiated operations
    # =========================================================================

    async def initiate_upgrade(
        self,
        tenant_id: int,
        plan_id: str,
        billing_cycle: str = BillingCycle.monthly.value,
    ) -> UpgradeResult:
        """
        Start a paid subscription and return the provider approval URL.

        The provider call happens before any local write, so a provider
        failure leaves the database untouched. The new pending record and
        the superseding of the previous record are committed together.

        Raises:
            ValidationError: unknown, free or unpurchasable plan, bad cycle
            TenantNotFoundError: unknown tenant
            ConflictError: tenant already has this plan active
            ProviderError: the provider call failed
        """
        plan = PLANS.get(plan_id)
        if plan is None:
            raise ValidationError(f"Invalid plan: {plan_id}", field="plan_id")
        if plan.is_free:
            raise ValidationError("The free plan does not need a subscription; cancel instead", field="plan_id")

        try:
            cycle = BillingCycle(billing_cycle).value
        except ValueError:
            raise ValidationError(f"Invalid billing cycle: {billing_cycle}", field="billing_cycle")
        if plan.billing_cycle and plan.billing_cycle != cycle:
            raise ValidationError(
                f"Plan {plan_id} is billed {plan.billing_cycle}, not {cycle}",
                field="billing_cycle",
            )

        provider_plan_id = plan.resolved_provider_plan_id()
        if not provider_plan_id:
            raise ValidationError(f"Plan {plan_id} is not available for purchase", field="plan_id")

        tenant = await tenant_service.require_tenant(tenant_id, self.db)
        current = await self.get_current_subscription(tenant_id)
        if (
            current is not None
            and current.status == S.active.value
            and current.plan_id == plan_id
            and current.billing_cycle == cycle
        ):
            raise ConflictError(
                f"Tenant already has an active {plan.name} subscription",
                details={"subscription_id": current.uuid, "plan_id": plan_id},
            )

        remote = await self.billing.create_subscription(
            provider_plan_id=provider_plan_id,
            return_url=f"{settings.app_base_url}/subscription/success",
            cancel_url=f"{settings.app_base_url}/subscription/cancel",
            custom_id=tenant.uuid,
        )
        if not remote.approval_url:
            raise ProviderError("Billing provider returned no approval URL", operation="create_subscription")

        amount = plan.price_for(cycle)
        subscription = Subscription(
            tenant_id=tenant_id,
            plan_id=plan_id,
            status=S.pending.value,
            billing_cycle=cycle,
            external_subscription_id=remote.id,
            provider_plan_id=provider_plan_id,
            amount=amount,
            currency=plan.currency,
        )

        try:
            self.db.add(subscription)
            await self.db.flush()

            result = await self.db.execute(
                select(Subscription).where(
                    Subscription.tenant_id == tenant_id,
                    Subscription.status.in_(NON_TERMINAL_STATUSES),
                    Subscription.id != subscription.id,
                )
            )
            now = _now()
            for previous in result.scalars().all():
                self._transition(
                    previous,
                    S.cancelled,
                    SOURCE_API,
                    detail=f"Superseded by subscription {subscription.uuid}",
                )
                previous.cancelled_at = now
                previous.cancel_reason = "Superseded by a new subscription"
                previous.superseded_by_id = subscription.id

            self.db.add(
                SubscriptionEvent(
                    subscription_id=subscription.id,
                    tenant_id=tenant_id,
                    from_status=None,
                    to_status=S.pending.value,
                    source=SOURCE_API,
                    detail=f"Upgrade initiated to {plan_id} ({cycle})",
                )
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error(
                "Failed to record pending subscription for tenant_id=%d; provider subscription %s is orphaned",
                tenant_id,
                remote.id,
            )
            raise

        await self.db.refresh(subscription)
        logger.info(
            "Upgrade initiated: tenant_id=%d plan=%s cycle=%s external_id=%s",
            tenant_id,
            plan_id,
            cycle,
            remote.id,
        )
        return UpgradeResult(
            subscription=subscription,
            approval_url=remote.approval_url,
            plan=plan,
            amount=amount,
            currency=plan.currency,
        )

    async def activate(
        self,
        external_subscription_id: str,
        source: str = SOURCE_API,
        event_id: str | None = None,
    ) -> Subscription:
        """
        Activate a subscription after the provider approved it and promote
        the tenant to the plan's tier.

        Activating an already active subscription whose tier is in place is
        a no-op. While the provider still reports a trial the subscription
        goes to ``trialing`` instead, with the tier granted and
        ``trial_ends_at`` set to the first regular billing time. Provider
        failures leave local state unchanged.

        Raises:
            SubscriptionNotFoundError: no local record for the external id
            InvalidStatusTransitionError: the subscription is terminal
            ConflictError: the provider does not consider it active
            ProviderError: the provider call failed
        """
        subscription = await self.get_by_external_id(external_subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(external_subscription_id)

        tenant = await tenant_service.require_tenant(subscription.tenant_id, self.db)
        plan_tier = tier_for_plan(subscription.plan_id)

        if subscription.status == S.active.value and tenant.tier == plan_tier.value:
            logger.info("Subscription already active: id=%d tenant_id=%d", subscription.id, tenant.id)
            return subscription
        if subscription.is_terminal:
            raise InvalidStatusTransitionError(subscription.status, S.active.value)

        remote = await self.billing.get_subscription(external_subscription_id)
        if remote.status.upper() in PROVIDER_INACTIVE_STATUSES:
            raise ConflictError(
                f"Billing provider reports subscription as {remote.status}",
                details={"external_subscription_id": external_subscription_id, "provider_status": remote.status},
            )

        if remote.in_trial and subscription.status == S.trialing.value:
            logger.info("Subscription still in trial: id=%d tenant_id=%d", subscription.id, tenant.id)
            return subscription

        previous_status = subscription.status
        trial = remote.in_trial and previous_status == S.pending.value
        target = S.trialing if trial else S.active
        if previous_status == S.trialing.value:
            # The paid period starts where the trial ended
            start = _as_utc(subscription.trial_ends_at) or remote.start_time or _now()
        else:
            start = remote.start_time or _now()
        period_end = add_billing_cycle(start, subscription.billing_cycle)

        self._transition(subscription, target, source, event_id=event_id, detail=f"Provider status {remote.status}")
        if trial:
            subscription.trial_ends_at = remote.next_billing_time or period_end
            subscription.current_period_start = start
            subscription.current_period_end = subscription.trial_ends_at
            subscription.next_billing_date = subscription.trial_ends_at
        else:
            subscription.current_period_start = start
            subscription.current_period_end = period_end
            subscription.next_billing_date = remote.next_billing_time or period_end
        if remote.amount is not None:
            subscription.amount = remote.amount

        previous_tier = tenant.tier
        tenant_service.set_tier(tenant, plan_tier)
        if previous_tier == TOP_TIER.value and plan_tier != TOP_TIER:
            await self._detach_store(tenant)

        await self.db.commit()
        await self.db.refresh(subscription)
        logger.info(
            "Subscription activated: id=%d tenant_id=%d tier=%s status=%s period_end=%s",
            subscription.id,
            tenant.id,
            plan_tier.value,
            subscription.status,
            _as_utc(subscription.current_period_end).isoformat(),
        )

        if previous_status == S.pending.value:
            await self._cancel_superseded_remotely(subscription)

        if plan_tier == TOP_TIER and not tenant.store_descriptor and self.provisioning is not None:
            try:
                await self.provisioning.provision(tenant.id)
            except CellarError as e:
                # Activation stands; the store can be provisioned from the admin API
                logger.error("Automatic provisioning failed for tenant_id=%d: %s", tenant.id, e.message)

        return subscription

    async def cancel(
        self,
        tenant_id: int,
        reason: str | None = None,
        source: str = SOURCE_API,
    ) -> Subscription | None:
        """
        Cancel the tenant's current subscription and downgrade it to free
        immediately (no grace period until the end of the paid period).

        The provider cancel is best effort: a ProviderError is logged and the
        local cancellation still happens. Without a current subscription this
        is a no-op returning None.
        """
        reason = reason or DEFAULT_CANCEL_REASON
        subscription = await self.get_current_subscription(tenant_id)
        if subscription is None:
            logger.info("Cancel requested but tenant_id=%d has no active subscription", tenant_id)
            return None

        tenant = await tenant_service.require_tenant(tenant_id, self.db)

        if subscription.external_subscription_id:
            try:
                await self.billing.cancel_subscription(subscription.external_subscription_id, reason)
            except ProviderError as e:
                logger.error(
                    "Remote cancel failed, cancelling locally anyway: subscription_id=%d external_id=%s error=%s",
                    subscription.id,
                    subscription.external_subscription_id,
                    e.message,
                )
        if subscription.status == S.pending.value:
            # Predecessors of a never-activated upgrade are still billed remotely
            await self._cancel_superseded_remotely(subscription)

        self._transition(subscription, S.cancelled, source, detail=reason)
        subscription.cancelled_at = _now()
        subscription.cancel_reason = reason
        await self._downgrade_to_free(tenant)

        await self.db.commit()
        await self.db.refresh(subscription)
        logger.info("Subscription cancelled: id=%d tenant_id=%d reason=%s", subscription.id, tenant_id, reason)
        return subscription

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def handle_webhook(self, event: WebhookEvent | dict[str, Any]) -> WebhookOutcome:
        """
        Apply a provider webhook.

        Event ids already applied short-circuit to ``duplicate``. Ids are
        remembered only after the handler succeeded, so a failed delivery is
        processed again when the provider retries.

        Raises:
            ValidationError: malformed payload
            SubscriptionNotFoundError: no local record for the resource
            ProviderError: provider lookup failed (the provider will redeliver)
        """
        if not isinstance(event, WebhookEvent):
            event = WebhookEvent.parse(event)

        if await self.deduplicator.seen(event.id):
            logger.info("Duplicate webhook event skipped: id=%s type=%s", event.id, event.event_type)
            record_webhook_event(event.event_type, WebhookOutcome.duplicate.value)
            return WebhookOutcome.duplicate

        handler = self._webhook_handlers().get(event.event_type)
        if handler is None:
            logger.info("Unhandled webhook event type: %s (id=%s)", event.event_type, event.id)
            outcome = WebhookOutcome.ignored
        else:
            try:
                outcome = await handler(event)
            except Exception:
                record_webhook_event(event.event_type, "failed")
                raise

        await self.deduplicator.mark(event.id)
        record_webhook_event(event.event_type, outcome.value)
        return outcome

    def _webhook_handlers(self):
        return {
            EVENT_ACTIVATED: self._on_activated,
            EVENT_UPDATED: self._on_updated,
            EVENT_CANCELLED: self._on_cancelled,
            EVENT_SUSPENDED: self._on_suspended,
            EVENT_EXPIRED: self._on_expired,
            EVENT_PAYMENT_FAILED: self._on_payment_failed,
            EVENT_PAYMENT_COMPLETED: self._on_payment_completed,
        }

    async def _subscription_for(self, event: WebhookEvent) -> Subscription:
        if not event.resource_id:
            raise ValidationError("Webhook resource has no id", field="resource.id")
        subscription = await self.get_by_external_id(event.resource_id)
        if subscription is None:
            raise SubscriptionNotFoundError(event.resource_id)
        return subscription

    def _ignore(self, event: WebhookEvent, subscription: Subscription) -> WebhookOutcome:
        logger.info(
            "Webhook %s not applicable to subscription id=%d in status %s",
            event.event_type,
            subscription.id,
            subscription.status,
        )
        return WebhookOutcome.ignored

    async def _on_activated(self, event: WebhookEvent) -> WebhookOutcome:
        subscription = await self._subscription_for(event)
        if subscription.is_terminal:
            return self._ignore(event, subscription)

        tenant = await tenant_service.require_tenant(subscription.tenant_id, self.db)
        if subscription.status == S.active.value and tenant.tier == tier_for_plan(subscription.plan_id).value:
            return WebhookOutcome.duplicate

        before = (subscription.status, tenant.tier)
        await self.activate(subscription.external_subscription_id, source=SOURCE_WEBHOOK, event_id=event.id)
        if (subscription.status, tenant.tier) == before:
            return WebhookOutcome.duplicate
        return WebhookOutcome.applied

    async def _on_updated(self, event: WebhookEvent) -> WebhookOutcome:
        """Refresh billing dates; an advanced period counts as a renewal. Ends trials."""
        subscription = await self._subscription_for(event)
        if subscription.status == S.trialing.value:
            await self.activate(subscription.external_subscription_id, source=SOURCE_WEBHOOK, event_id=event.id)
            if subscription.status == S.trialing.value:
                return WebhookOutcome.duplicate
            return WebhookOutcome.applied
        if subscription.status != S.active.value:
            return self._ignore(event, subscription)

        remote = await self.billing.get_subscription(subscription.external_subscription_id)
        next_billing = remote.next_billing_time
        if next_billing is None or _as_utc(subscription.next_billing_date) == next_billing:
            return WebhookOutcome.duplicate

        period_end = _as_utc(subscription.current_period_end)
        if period_end is not None and next_billing > period_end:
            self._transition(subscription, S.active, SOURCE_WEBHOOK, event_id=event.id, detail="Renewal")
            subscription.current_period_start = period_end
            subscription.current_period_end = next_billing
        subscription.next_billing_date = next_billing

        await self.db.commit()
        logger.info(
            "Subscription billing dates refreshed: id=%d next_billing=%s",
            subscription.id,
            next_billing.isoformat(),
        )
        return WebhookOutcome.applied

    async def _on_cancelled(self, event: WebhookEvent) -> WebhookOutcome:
        subscription = await self._subscription_for(event)
        if subscription.status == S.cancelled.value:
            return WebhookOutcome.duplicate
        if subscription.is_terminal:
            return self._ignore(event, subscription)

        tenant = await tenant_service.require_tenant(subscription.tenant_id, self.db)
        self._transition(subscription, S.cancelled, SOURCE_WEBHOOK, event_id=event.id, detail="Cancelled at provider")
        subscription.cancelled_at = _now()
        subscription.cancel_reason = subscription.cancel_reason or "Cancelled at billing provider"
        await self._downgrade_to_free(tenant)
        await self.db.commit()
        return WebhookOutcome.applied

    async def _on_suspended(self, event: WebhookEvent) -> WebhookOutcome:
        subscription = await self._subscription_for(event)
        if subscription.status == S.suspended.value:
            return WebhookOutcome.duplicate
        if S.suspended.value not in ALLOWED_TRANSITIONS[subscription.status]:
            return self._ignore(event, subscription)

        self._transition(subscription, S.suspended, SOURCE_WEBHOOK, event_id=event.id)
        await self.db.commit()
        return WebhookOutcome.applied

    async def _on_expired(self, event: WebhookEvent) -> WebhookOutcome:
        subscription = await self._subscription_for(event)
        if subscription.status == S.expired.value:
            return WebhookOutcome.duplicate
        # Covers pending: a subscription that was never activated cannot expire
        if S.expired.value not in ALLOWED_TRANSITIONS[subscription.status]:
            return self._ignore(event, subscription)

        tenant = await tenant_service.require_tenant(subscription.tenant_id, self.db)
        self._transition(subscription, S.expired, SOURCE_WEBHOOK, event_id=event.id)
        await self._downgrade_to_free(tenant)
        await self.db.commit()
        return WebhookOutcome.applied

    async def _on_payment_failed(self, event: WebhookEvent) -> WebhookOutcome:
        subscription = await self._subscription_for(event)
        if subscription.status == S.past_due.value:
            return WebhookOutcome.duplicate
        if subscription.status != S.active.value:
            return self._ignore(event, subscription)

        self._transition(subscription, S.past_due, SOURCE_WEBHOOK, event_id=event.id, detail="Payment failed")
        await self.db.commit()
        return WebhookOutcome.applied

    async def _on_payment_completed(self, event: WebhookEvent) -> WebhookOutcome:
        logger.info(
            "Payment completed: billing_agreement_id=%s amount=%s",
            event.resource.get("billing_agreement_id"),
            event.resource.get("amount"),
        )
        return WebhookOutcome.applied
