"""
Quota Service

Quota Enforcer: decides whether a tenant may consume more of a resource
before the operation runs, using the tenant's tier limits and the Quota
Ledger.

SoftQuotaEnforcer is a check-then-act design. The check and the caller's
later ``record_usage`` are not wrapped in one transaction, so concurrent
callers can both pass the check and jointly exceed a limit by a small
margin. Callers depend on the QuotaEnforcer protocol so a transactional
implementation can replace it without touching them.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from cellar.exceptions import FeatureNotAvailableError, ValidationError
from cellar.models.tenant import Tenant
from cellar.models.usage_metric import MetricName
from cellar.services import tenant_service, usage_service
from cellar.tiers import get_tier_limits, required_tier_for_feature
from cellar.utils.metrics import record_quota_denial

logger = logging.getLogger(__name__)


class Resource(str, enum.Enum):
    items = "items"
    storage = "storage"  # delta and ledger values in KB, limits in MB
    photos = "photos"  # per item; the caller supplies the current count


# Ledger metric backing each resource
RESOURCE_METRICS = {
    Resource.items: MetricName.item_count,
    Resource.storage: MetricName.storage_kb,
    Resource.photos: MetricName.photo_count,
}


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    resource: str
    current: int
    limit: int | None  # None: unlimited

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(self.limit - self.current, 0)


class QuotaEnforcer(Protocol):
    async def check_and_reserve(
        self,
        tenant_id: int,
        resource: Resource | str,
        delta: int = 1,
        current: int | None = None,
    ) -> QuotaDecision: ...

    async def record_usage(self, tenant_id: int, resource: Resource | str, delta: int = 1) -> int: ...

    async def release_usage(self, tenant_id: int, resource: Resource | str, delta: int = 1) -> int: ...


def kb_to_mb(kilobytes: int) -> int:
    """Integer KB to MB conversion; fractional megabytes are dropped."""
    return kilobytes // 1024


def _parse_resource(resource: Resource | str) -> Resource:
    try:
        return Resource(resource)
    except ValueError:
        raise ValidationError(f"Unknown quota resource '{resource}'", field="resource")


class SoftQuotaEnforcer:
    """Non-transactional quota enforcement against the usage ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def check_and_reserve(
        self,
        tenant_id: int,
        resource: Resource | str,
        delta: int = 1,
        current: int | None = None,
    ) -> QuotaDecision:
        """
        Check whether ``delta`` more units of ``resource`` fit the tenant's tier.

        Nothing is reserved in storage: the caller records usage with
        ``record_usage`` after its operation succeeds.

        Args:
            tenant_id: Tenant primary key
            resource: items, storage (delta in KB) or photos
            delta: Units the operation will consume
            current: Current count for per-entity resources (photos)

        Returns:
            QuotaDecision; denied decisions carry the current/limit pair
        """
        resource = _parse_resource(resource)
        tenant = await tenant_service.require_tenant(tenant_id, self.db)
        limits = get_tier_limits(tenant.tier)

        if resource == Resource.items:
            limit = limits.max_items
        elif resource == Resource.storage:
            limit = limits.storage_ceiling_mb
        else:
            limit = limits.max_photos_per_item

        if limit is None:
            return QuotaDecision(allowed=True, resource=resource.value, current=current or 0, limit=None)

        if resource == Resource.photos:
            used = current or 0
            requested = delta
        elif resource == Resource.storage:
            used_kb = await usage_service.get_usage(tenant_id, MetricName.storage_kb, self.db)
            used = kb_to_mb(used_kb)
            requested = kb_to_mb(delta)
        else:
            used = await usage_service.get_usage(tenant_id, MetricName.item_count, self.db)
            requested = delta

        if used + requested > limit:
            record_quota_denial(resource.value)
            logger.warning(
                "Quota denied: tenant_id=%d resource=%s current=%d delta=%d limit=%d tier=%s",
                tenant_id,
                resource.value,
                used,
                requested,
                limit,
                tenant.tier,
            )
            return QuotaDecision(allowed=False, resource=resource.value, current=used, limit=limit)

        return QuotaDecision(allowed=True, resource=resource.value, current=used, limit=limit)

    async def record_usage(self, tenant_id: int, resource: Resource | str, delta: int = 1) -> int:
        """Increment the ledger after a successful operation."""
        metric = RESOURCE_METRICS[_parse_resource(resource)]
        return await usage_service.increment_usage(tenant_id, metric, delta, self.db)

    async def release_usage(self, tenant_id: int, resource: Resource | str, delta: int = 1) -> int:
        """Decrement the ledger after a deletion."""
        metric = RESOURCE_METRICS[_parse_resource(resource)]
        return await usage_service.decrement_usage(tenant_id, metric, delta, self.db)


def require_feature(tenant: Tenant, feature: str) -> None:
    """Raise FeatureNotAvailableError unless the tenant's tier includes ``feature``."""
    if get_tier_limits(tenant.tier).has_feature(feature):
        return
    required = required_tier_for_feature(feature)
    logger.info("Feature denied: tenant_id=%d feature=%s tier=%s", tenant.id, feature, tenant.tier)
    raise FeatureNotAvailableError(feature=feature, current_tier=tenant.tier, required_tier=required.value)
