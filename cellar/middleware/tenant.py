"""
Tenant Resolution Middleware

Resolves the current tenant from:
  1. X-Tenant-ID request header  (opaque tenant id, API clients)
  2. Subdomain of the request host (browser clients, e.g. acme.cellar.app)
  3. ``tenant_id`` claim of the bearer token

Sets request.state.tenant_id and request.state.tenant_tier for downstream
handlers. Requests outside the exempt paths that resolve no tenant get a
404; suspended or cancelled tenants get a 403.

Starlette middleware is LIFO: this middleware is registered AFTER
RateLimitMiddleware in create_app(), so it runs BEFORE rate limiting.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware

from cellar.config import settings
from cellar.exception_handlers import create_error_response
from cellar.exceptions import ErrorCode
from cellar.middleware.logging import tenant_id_var
from cellar.services import tenant_service

if TYPE_CHECKING:
    from collections.abc import Callable

    from fastapi import Request
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from starlette.responses import Response
    from starlette.types import ASGIApp

    from cellar.models.tenant import Tenant

logger = logging.getLogger(__name__)

# Paths served without a tenant
EXEMPT_PATH_PREFIXES = (
    "/webhooks",
    "/health",
    "/metrics",
    "/api/v1/subscriptions/plans",
    "/api/v1/admin",
    "/docs",
    "/redoc",
    "/openapi.json",
)


def is_exempt(path: str) -> bool:
    return path == "/" or path.startswith(EXEMPT_PATH_PREFIXES)


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Resolve the current tenant and attach it to request.state.

    Attributes set on request.state:
        tenant_id   (int | None): DB primary key of the tenant
        tenant_tier (str | None): tier of the tenant
    """

    def __init__(self, app: ASGIApp, session_factory: async_sessionmaker[AsyncSession] | None = None):
        super().__init__(app)
        self.session_factory = session_factory

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self.session_factory is None:
            # Deferred import avoids creating the engine at module load time
            from cellar.database import AsyncSessionLocal

            self.session_factory = AsyncSessionLocal
        return self.session_factory

    async def _resolve(self, request: Request, db: AsyncSession) -> Tenant | None:
        # 1. Explicit header
        tenant_uuid = request.headers.get("X-Tenant-ID")
        if tenant_uuid:
            return await tenant_service.get_tenant_by_uuid(tenant_uuid, db)

        # 2. Subdomain
        subdomain = tenant_service.extract_subdomain(request.headers.get("host", ""), settings.app_domain)
        if subdomain:
            return await tenant_service.get_tenant_by_subdomain(subdomain, db)

        # 3. Auth claim
        token = _bearer_token(request)
        if token:
            tenant_id = tenant_service.tenant_id_from_token(token)
            if tenant_id is not None:
                return await tenant_service.get_tenant_by_id(tenant_id, db)

        return None

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Always initialise state so downstream code can safely read without AttributeError
        request.state.tenant_id = None
        request.state.tenant_tier = None

        path = request.url.path
        if is_exempt(path):
            return await call_next(request)

        async with self._sessions()() as db:
            tenant = await self._resolve(request, db)

        if tenant is None:
            logger.debug("TenantMiddleware: no tenant resolved for %s", path)
            return create_error_response(
                status_code=404,
                message="Tenant not found",
                error_code=ErrorCode.TENANT_NOT_FOUND,
                path=path,
            )

        if not tenant.is_active:
            logger.info("TenantMiddleware: rejected %s tenant_id=%d", tenant.status, tenant.id)
            return create_error_response(
                status_code=403,
                message=f"Tenant account is {tenant.status}",
                error_code=ErrorCode.TENANT_INACTIVE,
                details={"status": tenant.status},
                path=path,
            )

        request.state.tenant_id = tenant.id
        request.state.tenant_tier = tenant.tier
        tenant_id_var.set(tenant.id)
        logger.debug("TenantMiddleware: resolved tenant_id=%d subdomain=%s", tenant.id, tenant.subdomain)

        return await call_next(request)
