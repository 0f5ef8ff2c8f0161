from cellar.models.subscription import (
    BillingCycle,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
from cellar.models.tenant import Tenant, TenantStatus, TenantTier
from cellar.models.usage_metric import MetricName, UsageMetric

__all__ = [
    "BillingCycle",
    "MetricName",
    "Subscription",
    "SubscriptionEvent",
    "SubscriptionStatus",
    "Tenant",
    "TenantStatus",
    "TenantTier",
    "UsageMetric",
]
