"""
Tenant Service

Tenant Directory: resolves tenants by subdomain, opaque id or the
``tenant_id`` claim of a bearer token, and exposes tier/status updates for
the subscription and provisioning services.
All functions accept an injected AsyncSession.
"""

import logging

from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.config import settings
from cellar.exceptions import TenantNotFoundError, ValidationError
from cellar.models.tenant import Tenant, TenantStatus, TenantTier

logger = logging.getLogger(__name__)

# Subdomains that never name a tenant
RESERVED_SUBDOMAINS = frozenset({"www", "api"})


def extract_subdomain(host: str, app_domain: str) -> str | None:
    """
    Extract the tenant subdomain from a request host.

    Examples:
        host="acme.cellar.app",  app_domain="cellar.app" → "acme"
        host="cellar.app",       app_domain="cellar.app" → None
        host="www.cellar.app",   app_domain="cellar.app" → None
    """
    # Strip port if present
    host = host.split(":")[0].lower()
    if host == app_domain or not host.endswith("." + app_domain):
        return None
    subdomain = host[: -(len(app_domain) + 1)]
    if not subdomain or "." in subdomain or subdomain in RESERVED_SUBDOMAINS:
        return None
    return subdomain


def tenant_id_from_token(token: str) -> int | None:
    """
    Return the ``tenant_id`` claim of a signed bearer token.

    Invalid or expired tokens and tokens without the claim yield None.
    """
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.debug("Rejected bearer token while resolving tenant: %s", e)
        return None

    claim = payload.get("tenant_id")
    if claim is None:
        return None
    try:
        return int(claim)
    except (TypeError, ValueError):
        return None


async def create_tenant(
    name: str,
    subdomain: str,
    db: AsyncSession,
    tier: str = TenantTier.free.value,
) -> Tenant:
    """Create a new tenant on the given tier (free by default)."""
    subdomain = subdomain.lower()
    if subdomain in RESERVED_SUBDOMAINS:
        raise ValidationError(f"Subdomain '{subdomain}' is reserved", field="subdomain")

    tenant = Tenant(
        name=name,
        subdomain=subdomain,
        tier=TenantTier(tier).value,
        status=TenantStatus.active.value,
    )
    db.add(tenant)
    await db.commit()
    await db.refresh(tenant)
    logger.info("Tenant created: id=%d subdomain=%s tier=%s", tenant.id, tenant.subdomain, tenant.tier)
    return tenant


async def get_tenant_by_id(tenant_id: int, db: AsyncSession) -> Tenant | None:
    """Return a Tenant by primary key, or None if not found."""
    result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalars().first()


async def get_tenant_by_uuid(tenant_uuid: str, db: AsyncSession) -> Tenant | None:
    """Return a Tenant by its opaque public id, or None if not found."""
    result = await db.execute(select(Tenant).where(Tenant.uuid == tenant_uuid))
    return result.scalars().first()


async def get_tenant_by_subdomain(subdomain: str, db: AsyncSession) -> Tenant | None:
    """Return a Tenant by subdomain, or None if not found."""
    result = await db.execute(select(Tenant).where(Tenant.subdomain == subdomain.lower()))
    return result.scalars().first()


async def require_tenant(tenant_id: int, db: AsyncSession) -> Tenant:
    """Like get_tenant_by_id but raises TenantNotFoundError."""
    tenant = await get_tenant_by_id(tenant_id, db)
    if tenant is None:
        raise TenantNotFoundError(tenant_id)
    return tenant


async def list_dedicated_tenants(db: AsyncSession) -> list[Tenant]:
    """Top-tier tenants that have a dedicated store recorded."""
    result = await db.execute(
        select(Tenant).where(
            Tenant.tier == TenantTier.enterprise.value,
            Tenant.store_descriptor.is_not(None),
        )
    )
    return list(result.scalars().all())


def set_tier(tenant: Tenant, tier: str | TenantTier) -> bool:
    """
    Change a tenant's tier in the current unit of work (caller commits).

    Returns True if the tier changed.
    """
    new_tier = TenantTier(tier).value
    if tenant.tier == new_tier:
        return False
    logger.info("Tenant tier changed: id=%d %s -> %s", tenant.id, tenant.tier, new_tier)
    tenant.tier = new_tier
    return True


async def set_tenant_status(tenant_id: int, status: str | TenantStatus, db: AsyncSession) -> Tenant:
    """Set a tenant's status (active, suspended, cancelled)."""
    tenant = await require_tenant(tenant_id, db)
    tenant.status = TenantStatus(status).value
    await db.commit()
    await db.refresh(tenant)
    logger.info("Tenant status changed: id=%d subdomain=%s status=%s", tenant.id, tenant.subdomain, tenant.status)
    return tenant
