"""
Tenant Routes

GET /api/v1/tenant  → resolved tenant with its tier limits and current usage
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.database import get_db
from cellar.dependencies import get_current_tenant
from cellar.models.tenant import Tenant
from cellar.services import usage_service
from cellar.services.usage_service import current_period
from cellar.tiers import get_tier_limits

router = APIRouter(tags=["Tenant"])


@router.get("")
async def get_tenant_overview(
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    period_start, period_end = current_period()
    usage = await usage_service.get_all_usage(tenant.id, db)
    return {
        "id": tenant.uuid,
        "name": tenant.name,
        "subdomain": tenant.subdomain,
        "tier": tenant.tier,
        "status": tenant.status,
        "dedicated_store": bool(tenant.store_descriptor),
        "limits": get_tier_limits(tenant.tier).to_dict(),
        "usage": {
            **usage,
            "storage_mb": usage["storage_kb"] // 1024,
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
        },
    }
