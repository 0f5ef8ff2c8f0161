"""
Tenant Connection Router

Hands out the data-store engine a tenant's requests must use: the single
shared engine for standard tiers and one lazily opened dedicated engine per
top-tier tenant.

The dedicated-engine map is the only shared mutable state. Reads are
lock-free; the open path takes an asyncio.Lock and re-checks the map so
concurrent first requests for the same tenant open exactly one engine.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from cellar.config import settings
from cellar.database import engine_options
from cellar.exceptions import ProvisioningMissingError
from cellar.models.tenant import TOP_TIER, TenantTier
from cellar.utils.metrics import DEDICATED_STORES_OPEN

logger = logging.getLogger(__name__)

StoreOpener = Callable[[str], Awaitable[AsyncEngine]]

SHARED_STORE = "shared"


def dedicated_store_id(tenant_id: int) -> str:
    return f"dedicated_tenant_{tenant_id}"


async def open_dedicated_engine(descriptor: str) -> AsyncEngine:
    """Create an engine for a dedicated store and verify it answers."""
    engine = create_async_engine(
        descriptor,
        **engine_options(descriptor, settings.dedicated_pool_size, settings.dedicated_pool_size, pool_recycle=1800),
    )
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        await engine.dispose()
        raise
    return engine


async def _ping(engine: AsyncEngine) -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


class TenantConnectionRouter:
    """Route tenants to the shared engine or to their dedicated engine."""

    def __init__(self, shared_engine: AsyncEngine, opener: StoreOpener | None = None):
        self.shared_engine = shared_engine
        self._opener = opener or open_dedicated_engine
        self._dedicated: dict[int, AsyncEngine] = {}
        self._lock = asyncio.Lock()

    @property
    def open_tenant_ids(self) -> list[int]:
        return list(self._dedicated)

    async def resolve(self, tenant_id: int, tier: str | TenantTier, connection_descriptor: str | None) -> AsyncEngine:
        """
        Return the engine for a tenant.

        Raises:
            ProvisioningMissingError: top-tier tenant without a recorded store
        """
        if TenantTier(tier) != TOP_TIER:
            return self.shared_engine

        engine = self._dedicated.get(tenant_id)
        if engine is not None:
            return engine

        async with self._lock:
            engine = self._dedicated.get(tenant_id)
            if engine is not None:
                return engine

            if not connection_descriptor:
                raise ProvisioningMissingError(tenant_id)

            engine = await self._opener(connection_descriptor)
            self._dedicated[tenant_id] = engine
            DEDICATED_STORES_OPEN.set(len(self._dedicated))
            logger.info("Opened dedicated store for tenant_id=%d", tenant_id)
            return engine

    def session_factory(self, engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
        return async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)

    async def release(self, tenant_id: int) -> bool:
        """Dispose and evict one tenant's dedicated engine. Returns False if none was open."""
        async with self._lock:
            engine = self._dedicated.pop(tenant_id, None)
            DEDICATED_STORES_OPEN.set(len(self._dedicated))
        if engine is None:
            return False
        await engine.dispose()
        logger.info("Released dedicated store for tenant_id=%d", tenant_id)
        return True

    async def close(self) -> dict[str, str]:
        """
        Dispose the shared engine and every dedicated engine.

        Individual failures are collected and returned, never raised, so
        one broken store does not keep the others open.

        Returns:
            Mapping of store id to error message for stores that failed to close
        """
        errors: dict[str, str] = {}

        async with self._lock:
            dedicated = list(self._dedicated.items())
            self._dedicated.clear()
            DEDICATED_STORES_OPEN.set(0)

        for tenant_id, engine in dedicated:
            try:
                await engine.dispose()
            except Exception as e:
                errors[dedicated_store_id(tenant_id)] = str(e)
                logger.error("Failed to close dedicated store for tenant_id=%d: %s", tenant_id, e)

        try:
            await self.shared_engine.dispose()
        except Exception as e:
            errors[SHARED_STORE] = str(e)
            logger.error("Failed to close shared store: %s", e)

        return errors

    async def health_check(self) -> dict[str, str]:
        """
        Ping the shared store and each open dedicated store independently.

        Returns:
            Mapping of store id to "ok" or the error message
        """
        targets = [(SHARED_STORE, self.shared_engine)]
        targets += [(dedicated_store_id(tenant_id), engine) for tenant_id, engine in list(self._dedicated.items())]

        results = await asyncio.gather(*(_ping(engine) for _, engine in targets), return_exceptions=True)

        report = {}
        for (store_id, _), outcome in zip(targets, results):
            report[store_id] = "ok" if outcome is None else str(outcome) or outcome.__class__.__name__
        return report

    async def check_tenant(self, tenant_id: int) -> str:
        """Ping one tenant's dedicated engine; "not_open" if it is not cached."""
        engine = self._dedicated.get(tenant_id)
        if engine is None:
            return "not_open"
        try:
            await _ping(engine)
        except Exception as e:
            return str(e) or e.__class__.__name__
        return "ok"
