"""
Tier Policy

Static mapping from subscription tier to usage limits and feature flags,
plus the catalogue of purchasable plans. Both tables are compiled in:
changing a limit or a price requires a deploy, not a data migration.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from cellar.config import settings
from cellar.exceptions import PlanNotFoundError
from cellar.models.tenant import TenantTier

# Feature flags
FEATURE_BOTANICALS = "botanicals"
FEATURE_COCKTAILS = "cocktails"
FEATURE_AI_SUGGESTIONS = "ai_suggestions"
FEATURE_EXPORT = "export"
FEATURE_IMPORT = "import"
FEATURE_API_ACCESS = "api_access"
FEATURE_MULTI_USER = "multi_user"

ALL_FEATURES = (
    FEATURE_BOTANICALS,
    FEATURE_COCKTAILS,
    FEATURE_AI_SUGGESTIONS,
    FEATURE_EXPORT,
    FEATURE_IMPORT,
    FEATURE_API_ACCESS,
    FEATURE_MULTI_USER,
)

# Ordered from lowest to highest
TIER_ORDER = (TenantTier.free, TenantTier.basic, TenantTier.pro, TenantTier.enterprise)


@dataclass(frozen=True)
class TierLimits:
    """Limits of one tier. ``None`` means unlimited."""

    max_items: int | None
    max_photos_per_item: int | None
    storage_ceiling_mb: int | None
    requests_per_hour: int
    features: frozenset[str] = field(default_factory=frozenset)

    def has_feature(self, feature: str) -> bool:
        return feature in self.features

    def to_dict(self) -> dict:
        return {
            "max_items": self.max_items,
            "max_photos_per_item": self.max_photos_per_item,
            "storage_ceiling_mb": self.storage_ceiling_mb,
            "requests_per_hour": self.requests_per_hour,
            "features": sorted(self.features),
        }


TIER_LIMITS: dict[TenantTier, TierLimits] = {
    TenantTier.free: TierLimits(
        max_items=25,
        max_photos_per_item=3,
        storage_ceiling_mb=100,
        requests_per_hour=100,
    ),
    TenantTier.basic: TierLimits(
        max_items=100,
        max_photos_per_item=10,
        storage_ceiling_mb=1000,
        requests_per_hour=500,
        features=frozenset({FEATURE_EXPORT}),
    ),
    TenantTier.pro: TierLimits(
        max_items=500,
        max_photos_per_item=25,
        storage_ceiling_mb=5000,
        requests_per_hour=5000,
        features=frozenset(
            {
                FEATURE_BOTANICALS,
                FEATURE_COCKTAILS,
                FEATURE_AI_SUGGESTIONS,
                FEATURE_EXPORT,
                FEATURE_IMPORT,
                FEATURE_API_ACCESS,
            }
        ),
    ),
    TenantTier.enterprise: TierLimits(
        max_items=None,
        max_photos_per_item=None,
        storage_ceiling_mb=None,
        requests_per_hour=10000,
        features=frozenset(ALL_FEATURES),
    ),
}


def get_tier_limits(tier: str | TenantTier) -> TierLimits:
    """Limits for a tier; unknown tiers get the free tier's limits."""
    try:
        return TIER_LIMITS[TenantTier(tier)]
    except ValueError:
        return TIER_LIMITS[TenantTier.free]


def required_tier_for_feature(feature: str) -> TenantTier:
    """Lowest tier that includes ``feature``."""
    for tier in TIER_ORDER:
        if TIER_LIMITS[tier].has_feature(feature):
            return tier
    return TenantTier.enterprise


def tier_rank(tier: str | TenantTier) -> int:
    return TIER_ORDER.index(TenantTier(tier))


# =============================================================================
# Plans
# =============================================================================

PLAN_FREE = "PLAN_FREE"
PLAN_BASIC_MONTHLY = "PLAN_BASIC_MONTHLY"
PLAN_BASIC_YEARLY = "PLAN_BASIC_YEARLY"
PLAN_PRO_MONTHLY = "PLAN_PRO_MONTHLY"
PLAN_PRO_YEARLY = "PLAN_PRO_YEARLY"
PLAN_ENTERPRISE = "PLAN_ENTERPRISE"


@dataclass(frozen=True)
class Plan:
    id: str
    tier: TenantTier
    name: str
    description: str
    billing_cycle: str | None  # None: either cycle may be chosen
    price_monthly: Decimal
    price_yearly: Decimal
    currency: str = "EUR"
    provider_plan_id: str | None = None
    features: tuple[str, ...] = ()

    @property
    def is_free(self) -> bool:
        return self.tier == TenantTier.free

    def price_for(self, billing_cycle: str) -> Decimal:
        return self.price_yearly if billing_cycle == "yearly" else self.price_monthly

    def resolved_provider_plan_id(self) -> str | None:
        """Provider plan id, overridable per deployment through ``PAYPAL_PLAN_IDS``."""
        return settings.paypal_plan_ids.get(self.id, self.provider_plan_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tier": self.tier.value,
            "name": self.name,
            "description": self.description,
            "billing_cycle": self.billing_cycle,
            "price_monthly": str(self.price_monthly),
            "price_yearly": str(self.price_yearly),
            "currency": self.currency,
            "features": list(self.features),
            "limits": get_tier_limits(self.tier).to_dict(),
        }


PLANS: dict[str, Plan] = {
    PLAN_FREE: Plan(
        id=PLAN_FREE,
        tier=TenantTier.free,
        name="Free",
        description="Get started with a small collection",
        billing_cycle=None,
        price_monthly=Decimal("0"),
        price_yearly=Decimal("0"),
        features=("Up to 25 items", "3 photos per item", "100 MB storage"),
    ),
    PLAN_BASIC_MONTHLY: Plan(
        id=PLAN_BASIC_MONTHLY,
        tier=TenantTier.basic,
        name="Basic",
        description="For growing collections",
        billing_cycle="monthly",
        price_monthly=Decimal("2.99"),
        price_yearly=Decimal("29.99"),
        provider_plan_id="P-BASIC-MONTHLY",
        features=("Up to 100 items", "10 photos per item", "1 GB storage", "Export"),
    ),
    PLAN_BASIC_YEARLY: Plan(
        id=PLAN_BASIC_YEARLY,
        tier=TenantTier.basic,
        name="Basic (yearly)",
        description="For growing collections, billed yearly",
        billing_cycle="yearly",
        price_monthly=Decimal("2.99"),
        price_yearly=Decimal("29.99"),
        provider_plan_id="P-BASIC-YEARLY",
        features=("Up to 100 items", "10 photos per item", "1 GB storage", "Export"),
    ),
    PLAN_PRO_MONTHLY: Plan(
        id=PLAN_PRO_MONTHLY,
        tier=TenantTier.pro,
        name="Pro",
        description="For serious collectors",
        billing_cycle="monthly",
        price_monthly=Decimal("5.99"),
        price_yearly=Decimal("59.99"),
        provider_plan_id="P-PRO-MONTHLY",
        features=("Up to 500 items", "25 photos per item", "5 GB storage", "Botanicals & cocktails", "AI suggestions", "Import/Export", "API access"),
    ),
    PLAN_PRO_YEARLY: Plan(
        id=PLAN_PRO_YEARLY,
        tier=TenantTier.pro,
        name="Pro (yearly)",
        description="For serious collectors, billed yearly",
        billing_cycle="yearly",
        price_monthly=Decimal("5.99"),
        price_yearly=Decimal("59.99"),
        provider_plan_id="P-PRO-YEARLY",
        features=("Up to 500 items", "25 photos per item", "5 GB storage", "Botanicals & cocktails", "AI suggestions", "Import/Export", "API access"),
    ),
    PLAN_ENTERPRISE: Plan(
        id=PLAN_ENTERPRISE,
        tier=TenantTier.enterprise,
        name="Enterprise",
        description="Unlimited collection on a dedicated database",
        billing_cycle=None,
        price_monthly=Decimal("0"),
        price_yearly=Decimal("0"),
        provider_plan_id="P-ENTERPRISE",
        features=("Unlimited items", "Unlimited photos", "Unlimited storage", "Multi-user", "Dedicated database"),
    ),
}


def get_plan(plan_id: str) -> Plan:
    plan = PLANS.get(plan_id)
    if plan is None:
        raise PlanNotFoundError(plan_id)
    return plan


def list_plans() -> list[Plan]:
    return list(PLANS.values())


def tier_for_plan(plan_id: str) -> TenantTier:
    """Tier a plan grants; unknown plans grant nothing beyond free."""
    plan = PLANS.get(plan_id)
    return plan.tier if plan else TenantTier.free
