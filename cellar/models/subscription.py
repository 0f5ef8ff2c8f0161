"""
Subscription Models

A Subscription belongs to exactly one tenant and mirrors a subscription at
the billing provider. Records are never deleted: a new subscription
supersedes the previous one, which is closed and linked through
``superseded_by_id`` so the audit trail survives.

SubscriptionEvent is the append-only audit log of applied state transitions.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text

from cellar.database import Base


class SubscriptionStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    past_due = "past_due"
    trialing = "trialing"
    suspended = "suspended"
    cancelled = "cancelled"
    expired = "expired"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.cancelled.value, SubscriptionStatus.expired.value})
NON_TERMINAL_STATUSES = frozenset(s.value for s in SubscriptionStatus) - TERMINAL_STATUSES


class BillingCycle(str, enum.Enum):
    monthly = "monthly"
    yearly = "yearly"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    uuid = Column(String(36), nullable=False, unique=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    plan_id = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.pending.value)
    billing_cycle = Column(String(20), nullable=False, default=BillingCycle.monthly.value)

    # Provider side
    external_subscription_id = Column(String(64), nullable=True, unique=True)
    provider_plan_id = Column(String(64), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="EUR")

    # Billing period
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)

    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(String(255), nullable=True)
    superseded_by_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("idx_subscription_tenant_status", "tenant_id", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} tenant_id={self.tenant_id} plan={self.plan_id} status={self.status}>"


class SubscriptionEvent(Base):
    """Audit log entry for a subscription state transition."""

    __tablename__ = "subscription_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    source = Column(String(20), nullable=False)  # "api" | "webhook"
    external_event_id = Column(String(64), nullable=True)
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
