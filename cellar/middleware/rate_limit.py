"""
Rate Limiting Middleware for FastAPI

Throttles every request per client IP (per minute) and, once a tenant is
resolved, per tenant according to its tier's requests_per_hour.
Responses carry X-RateLimit-* headers; rejections are 429 with Retry-After.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from cellar.services.rate_limiter import RateLimiter, RateLimitResult

if TYPE_CHECKING:
    from collections.abc import Callable

    from fastapi import Request
    from starlette.responses import Response
    from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

# Infrastructure and provider callbacks are never throttled
EXCLUDED_PATH_PREFIXES = ("/health", "/metrics", "/webhooks", "/docs", "/redoc", "/openapi.json")


def get_client_ip(request: Request) -> str:
    """Client IP, honouring X-Forwarded-For / X-Real-IP from the proxy."""
    client_ip = request.headers.get(
        "X-Forwarded-For", request.headers.get("X-Real-IP", request.client.host if request.client else "unknown")
    )
    if client_ip and "," in client_ip:
        client_ip = client_ip.split(",")[0].strip()
    return client_ip


def rate_limited_response(result: RateLimitResult) -> JSONResponse:
    return JSONResponse(status_code=429, content=result.error_body(), headers=result.headers())


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, limiter: RateLimiter):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(EXCLUDED_PATH_PREFIXES):
            return await call_next(request)

        result = await self.limiter.check_ip(get_client_ip(request))
        if not result.allowed:
            return rate_limited_response(result)

        tenant_id = getattr(request.state, "tenant_id", None)
        tenant_tier = getattr(request.state, "tenant_tier", None)
        if tenant_id is not None and tenant_tier:
            result = await self.limiter.check_tenant(tenant_id, tenant_tier)
            if not result.allowed:
                return rate_limited_response(result)

        response = await call_next(request)
        for name, value in result.headers().items():
            response.headers[name] = value
        return response
