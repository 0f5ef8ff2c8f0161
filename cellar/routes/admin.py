"""
Operator Routes

All routes require the X-Admin-Key header.

POST /api/v1/admin/tenants/{tenant_id}/provision     → create the dedicated store
POST /api/v1/admin/tenants/{tenant_id}/decommission  → release (and drop) it
GET  /api/v1/admin/tenants/{tenant_id}/store-health  → ping it
"""

import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from cellar.dependencies import get_provisioning_service, verify_admin_key
from cellar.models.tenant import Tenant
from cellar.services.provisioning_service import ProvisioningService

router = APIRouter(tags=["Admin"], dependencies=[Depends(verify_admin_key)])
logger = logging.getLogger(__name__)


class StoreStatusResponse(BaseModel):
    tenant_id: int
    tier: str
    provisioned: bool

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "StoreStatusResponse":
        return cls(tenant_id=tenant.id, tier=tenant.tier, provisioned=bool(tenant.store_descriptor))


@router.post(
    "/tenants/{tenant_id}/provision",
    response_model=StoreStatusResponse,
    status_code=status.HTTP_201_CREATED,
)
async def provision_tenant_store(
    tenant_id: int,
    service: ProvisioningService = Depends(get_provisioning_service),
) -> StoreStatusResponse:
    tenant = await service.provision(tenant_id)
    return StoreStatusResponse.from_tenant(tenant)


@router.post("/tenants/{tenant_id}/decommission", response_model=StoreStatusResponse)
async def decommission_tenant_store(
    tenant_id: int,
    drop_store: bool = True,
    service: ProvisioningService = Depends(get_provisioning_service),
) -> StoreStatusResponse:
    tenant = await service.decommission(tenant_id, drop_store=drop_store)
    return StoreStatusResponse.from_tenant(tenant)


@router.get("/tenants/{tenant_id}/store-health")
async def tenant_store_health(
    tenant_id: int,
    service: ProvisioningService = Depends(get_provisioning_service),
) -> dict:
    return await service.health_check(tenant_id)
