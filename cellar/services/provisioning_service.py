"""
Provisioning Service

Creates and destroys the dedicated data store of a top-tier tenant and
records its connection descriptor on the tenant.

If anything fails after the store was created, the store is dropped again
before the error is surfaced so no orphaned database is left behind.

A tenant that left the top tier keeps its database; provisioning it again
reattaches that database instead of creating a new one.
"""

import logging
import re
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from cellar.config import settings
from cellar.exceptions import (
    AlreadyProvisionedError,
    ProviderError,
    ProvisioningMissingError,
    ValidationError,
)
from cellar.models.tenant import TOP_TIER
from cellar.services import tenant_service
from cellar.services.connection_router import TenantConnectionRouter
from cellar.utils.metrics import PROVISIONING_OPERATIONS_TOTAL

logger = logging.getLogger(__name__)

_STORE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,62}$")


def store_name(tenant_id: int) -> str:
    return f"cellar_tenant_{tenant_id}"


class StoreBackend(Protocol):
    def descriptor_for(self, name: str) -> str: ...

    async def store_exists(self, name: str) -> bool: ...

    async def create_store(self, name: str) -> str:
        """Create the store and return its connection descriptor."""
        ...

    async def drop_store(self, name: str) -> None: ...


class SqlStoreBackend:
    """Creates one database per tenant on the shared database server."""

    def __init__(self, admin_engine: AsyncEngine, url_template: str | None = None):
        self.admin_engine = admin_engine
        self.url_template = url_template if url_template is not None else settings.dedicated_store_url_template

    @staticmethod
    def _validate(name: str) -> str:
        # Identifiers cannot be bound as parameters, so only safe names reach SQL
        if not _STORE_NAME_PATTERN.match(name):
            raise ValidationError(f"Invalid store name '{name}'", field="name")
        return name

    def descriptor_for(self, name: str) -> str:
        if self.url_template:
            return self.url_template.format(name=name)
        return self.admin_engine.url.set(database=name).render_as_string(hide_password=False)

    async def _execute_autocommit(self, statement: str) -> None:
        async with self.admin_engine.connect() as conn:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            await conn.execute(text(statement))

    async def store_exists(self, name: str) -> bool:
        name = self._validate(name)
        async with self.admin_engine.connect() as conn:
            result = await conn.execute(text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": name})
            return result.scalar() is not None

    async def create_store(self, name: str) -> str:
        name = self._validate(name)
        await self._execute_autocommit(f'CREATE DATABASE "{name}"')
        logger.info("Created dedicated database %s", name)
        return self.descriptor_for(name)

    async def drop_store(self, name: str) -> None:
        name = self._validate(name)
        await self._execute_autocommit(f'DROP DATABASE IF EXISTS "{name}"')
        logger.info("Dropped dedicated database %s", name)


class ProvisioningService:
    def __init__(self, db: AsyncSession, backend: StoreBackend, router: TenantConnectionRouter):
        self.db = db
        self.backend = backend
        self.router = router

    async def provision(self, tenant_id: int):
        """
        Create or reattach the dedicated store for a top-tier tenant.

        Raises:
            TenantNotFoundError: unknown tenant
            ValidationError: tenant is not on the top tier
            AlreadyProvisionedError: a store is already recorded
            ProviderError: the store could not be created or recorded
        """
        tenant = await tenant_service.require_tenant(tenant_id, self.db)
        if tenant.tier != TOP_TIER.value:
            raise ValidationError(
                f"Only {TOP_TIER.value} tenants get a dedicated store (tenant is {tenant.tier})",
                field="tier",
            )
        if tenant.store_descriptor:
            raise AlreadyProvisionedError(tenant_id)

        name = store_name(tenant_id)
        try:
            reattached = await self.backend.store_exists(name)
            if reattached:
                descriptor = self.backend.descriptor_for(name)
            else:
                descriptor = await self.backend.create_store(name)
        except Exception as e:
            PROVISIONING_OPERATIONS_TOTAL.labels(operation="provision", outcome="failure").inc()
            logger.error("Failed to create dedicated store %s for tenant_id=%d: %s", name, tenant_id, e)
            raise ProviderError(f"Failed to create dedicated store: {e}", operation="create_store") from e

        try:
            tenant.store_descriptor = descriptor
            await self.db.commit()
            await self.db.refresh(tenant)
        except Exception as e:
            await self.db.rollback()
            logger.error("Failed to record dedicated store for tenant_id=%d, rolling back: %s", tenant_id, e)
            if not reattached:
                await self._compensate(name)
            PROVISIONING_OPERATIONS_TOTAL.labels(operation="provision", outcome="failure").inc()
            raise ProviderError(f"Failed to record dedicated store: {e}", operation="provision") from e

        PROVISIONING_OPERATIONS_TOTAL.labels(operation="provision", outcome="success").inc()
        logger.info("Tenant provisioned: id=%d store=%s reattached=%s", tenant.id, name, reattached)
        return tenant

    async def _compensate(self, name: str) -> None:
        try:
            await self.backend.drop_store(name)
        except Exception as e:
            # Left for manual cleanup
            logger.error("Compensating drop of dedicated store %s failed: %s", name, e)

    async def decommission(self, tenant_id: int, drop_store: bool = True):
        """
        Release a tenant's dedicated store and clear its descriptor.

        With ``drop_store=False`` the physical database is kept, which is how
        a downgrade away from the top tier detaches it.
        """
        tenant = await tenant_service.require_tenant(tenant_id, self.db)
        if not tenant.store_descriptor:
            raise ProvisioningMissingError(tenant_id)

        await self.router.release(tenant_id)

        name = store_name(tenant_id)
        if drop_store:
            try:
                await self.backend.drop_store(name)
            except Exception as e:
                PROVISIONING_OPERATIONS_TOTAL.labels(operation="decommission", outcome="failure").inc()
                logger.error("Failed to drop dedicated store %s for tenant_id=%d: %s", name, tenant_id, e)
                raise ProviderError(f"Failed to drop dedicated store: {e}", operation="drop_store") from e

        tenant.store_descriptor = None
        await self.db.commit()
        await self.db.refresh(tenant)

        PROVISIONING_OPERATIONS_TOTAL.labels(operation="decommission", outcome="success").inc()
        logger.info("Tenant decommissioned: id=%d store=%s dropped=%s", tenant.id, name, drop_store)
        return tenant

    async def health_check(self, tenant_id: int) -> dict:
        tenant = await tenant_service.require_tenant(tenant_id, self.db)
        if not tenant.store_descriptor:
            return {"tenant_id": tenant.id, "store": None, "status": "not_provisioned"}

        try:
            await self.router.resolve(tenant.id, tenant.tier, tenant.store_descriptor)
        except Exception as e:
            return {"tenant_id": tenant.id, "store": store_name(tenant.id), "status": str(e)}

        status = await self.router.check_tenant(tenant.id)
        if status == "not_open":
            # Tenant is below the top tier; its store is detached from routing
            status = "detached"
        return {"tenant_id": tenant.id, "store": store_name(tenant.id), "status": status}
