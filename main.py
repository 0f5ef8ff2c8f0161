import logging
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from cellar.config import settings
from cellar.database import Base, engine, AsyncSessionLocal
from cellar.exception_handlers import register_exception_handlers
from cellar.middleware.logging import StructuredLoggingMiddleware, setup_structured_logging
from cellar.middleware.rate_limit import RateLimitMiddleware
from cellar.middleware.tenant import TenantMiddleware
from cellar.routes import admin, monitoring, subscriptions, tenant, webhooks
from cellar.scheduler import scheduler, schedule_maintenance
from cellar.services.billing_client import PayPalClient
from cellar.services.connection_router import TenantConnectionRouter
from cellar.services.provisioning_service import SqlStoreBackend
from cellar.services.rate_limiter import RateLimiter
from cellar.services.webhook_dedupe import WebhookDeduplicator
from cellar.utils.cache import cache_manager
from cellar.utils.metrics import PrometheusMiddleware, set_app_info


if settings.is_production:
    setup_structured_logging(log_level="INFO", json_format=True)
else:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(name)s - %(message)s")
logger = logging.getLogger(__name__)


def create_app(
    session_factory=None,
    store_router=None,
    billing_client=None,
    cache=None,
    rate_limiter=None,
    store_backend=None,
) -> FastAPI:
    """Create the FastAPI application. Collaborators can be swapped for tests."""
    app = FastAPI(
        title=settings.app_name,
        description="Tenant routing, subscription lifecycle and quota enforcement",
        debug=settings.debug,
        version=settings.app_version,
    )

    cache = cache if cache is not None else cache_manager
    app.state.router = store_router or TenantConnectionRouter(engine)
    app.state.billing_client = billing_client or PayPalClient()
    app.state.rate_limiter = rate_limiter or RateLimiter(cache)
    app.state.deduplicator = WebhookDeduplicator(cache)
    app.state.store_backend = store_backend or SqlStoreBackend(engine)
    app.state.cache = cache

    register_exception_handlers(app)

    # Middleware is LIFO: the last one added runs first.
    # Order of execution: CORS -> logging -> metrics -> tenant -> rate limit
    app.add_middleware(RateLimitMiddleware, limiter=app.state.rate_limiter)
    app.add_middleware(TenantMiddleware, session_factory=session_factory or AsyncSessionLocal)
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(monitoring.router)
    app.include_router(webhooks.router, prefix="/webhooks")
    app.include_router(subscriptions.router, prefix="/api/v1/subscriptions")
    app.include_router(tenant.router, prefix="/api/v1/tenant")
    app.include_router(admin.router, prefix="/api/v1/admin")

    @app.on_event("startup")
    async def startup_event():
        """Tasks to run at application startup."""
        logger.info("Starting up the application...")
        set_app_info(settings.app_version, settings.environment)
        if settings.debug:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created (if not existing).")

        await app.state.cache.connect()

        if settings.enable_scheduler:
            schedule_maintenance(app.state.rate_limiter, app.state.router)
            scheduler.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down the application...")
        if scheduler.running:
            scheduler.shutdown(wait=False)
        await app.state.billing_client.aclose()
        await app.state.cache.disconnect()
        errors = await app.state.router.close()
        for store, error in errors.items():
            logger.error(f"Failed to close store {store}: {error}")

    if settings.debug:
        logger.info(f"Running in {settings.environment} mode")
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)  # Logs SQL statements

    return app


app = create_app()


@app.get("/", tags=["Root"])
async def root():
    return {"message": f"Welcome to the {settings.app_name} API"}


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.debug)
