"""
Health and metrics endpoints.

GET /health   → health of the shared store and every open dedicated store
GET /metrics  → Prometheus exposition
"""

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from cellar.config import settings
from cellar.dependencies import get_router
from cellar.services.connection_router import TenantConnectionRouter
from cellar.utils.metrics import update_store_health

router = APIRouter(tags=["Monitoring"])


@router.get("/health")
async def health(store_router: TenantConnectionRouter = Depends(get_router)) -> JSONResponse:
    stores = await store_router.health_check()
    for store, status in stores.items():
        update_store_health(store, status == "ok")

    healthy = all(status == "ok" for status in stores.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": settings.app_version,
            "stores": stores,
        },
    )


@router.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
