"""
FastAPI dependencies

Wire the request to the tenancy core: the resolved tenant, the quota and
feature gates, the router-selected data session, and the service objects
built from the process-wide collaborators kept on ``app.state``.
"""

import hmac
from collections.abc import AsyncIterator
from typing import Any

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.config import settings
from cellar.database import get_db
from cellar.exceptions import AuthenticationError, LimitExceededError, TenantInactiveError, TenantNotFoundError
from cellar.models.tenant import Tenant
from cellar.services import quota_service, tenant_service
from cellar.services.connection_router import TenantConnectionRouter
from cellar.services.provisioning_service import ProvisioningService
from cellar.services.quota_service import QuotaDecision, QuotaEnforcer, Resource, SoftQuotaEnforcer
from cellar.services.subscription_service import SubscriptionService


def get_router(request: Request) -> TenantConnectionRouter:
    return request.app.state.router


async def get_current_tenant(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Tenant:
    """
    The active Tenant for this request.

    Reads request.state.tenant_id set by TenantMiddleware.
    """
    tenant_id: Any = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise TenantNotFoundError()
    tenant = await tenant_service.get_tenant_by_id(tenant_id, db)
    if tenant is None:
        raise TenantNotFoundError(tenant_id)
    if not tenant.is_active:
        raise TenantInactiveError(tenant.status)
    return tenant


def get_quota_enforcer(db: AsyncSession = Depends(get_db)) -> QuotaEnforcer:
    return SoftQuotaEnforcer(db)


def require_quota(resource: Resource | str, delta: int = 1):
    """
    Dependency factory rejecting the request when ``resource`` is exhausted.

    Usage:
        @router.post("/items", dependencies=[Depends(require_quota("items"))])
    """

    async def dependency(
        tenant: Tenant = Depends(get_current_tenant),
        enforcer: QuotaEnforcer = Depends(get_quota_enforcer),
    ) -> QuotaDecision:
        decision = await enforcer.check_and_reserve(tenant.id, resource, delta)
        if not decision.allowed:
            raise LimitExceededError(decision.resource, decision.current, decision.limit, tier=tenant.tier)
        return decision

    return dependency


def require_feature(feature: str):
    """Dependency factory rejecting tenants whose tier lacks ``feature``."""

    async def dependency(tenant: Tenant = Depends(get_current_tenant)) -> Tenant:
        quota_service.require_feature(tenant, feature)
        return tenant

    return dependency


async def get_tenant_session(
    tenant: Tenant = Depends(get_current_tenant),
    router: TenantConnectionRouter = Depends(get_router),
) -> AsyncIterator[AsyncSession]:
    """Session on the data store the tenant's tier routes to."""
    engine = await router.resolve(tenant.id, tenant.tier, tenant.store_descriptor)
    async with router.session_factory(engine)() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def get_provisioning_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> ProvisioningService:
    return ProvisioningService(db, request.app.state.store_backend, request.app.state.router)


def get_subscription_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> SubscriptionService:
    return SubscriptionService(
        db,
        request.app.state.billing_client,
        deduplicator=request.app.state.deduplicator,
        provisioning=provisioning,
    )


def verify_admin_key(x_admin_key: str | None = Header(default=None)) -> None:
    """Guard for operator endpoints: X-Admin-Key must match ADMIN_API_KEY."""
    if not settings.admin_api_key:
        raise AuthenticationError("Admin API is disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.admin_api_key):
        raise AuthenticationError("Invalid admin key")
