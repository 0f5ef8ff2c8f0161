from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from cellar.services.connection_router import TenantConnectionRouter
from cellar.services.rate_limiter import RateLimiter
from cellar.utils.metrics import update_store_health
import logging

scheduler = AsyncIOScheduler()

logger = logging.getLogger(__name__)

MAINTENANCE_INTERVAL_MINUTES = 5


async def prune_rate_limit_counters(rate_limiter: RateLimiter):
    removed = rate_limiter.prune_fallback()
    if removed:
        logger.info(f"[Scheduler] Pruned {removed} expired rate limit counters.")


async def check_store_health(router: TenantConnectionRouter):
    report = await router.health_check()
    for store, status in report.items():
        update_store_health(store, status == "ok")
        if status != "ok":
            logger.error(f"[Scheduler] Store {store} unhealthy: {status}")


def schedule_maintenance(rate_limiter: RateLimiter, router: TenantConnectionRouter):
    scheduler.add_job(
        prune_rate_limit_counters,
        trigger=IntervalTrigger(minutes=MAINTENANCE_INTERVAL_MINUTES),
        args=[rate_limiter],
        id="prune_rate_limit_counters",
        replace_existing=True
    )
    scheduler.add_job(
        check_store_health,
        trigger=IntervalTrigger(minutes=MAINTENANCE_INTERVAL_MINUTES),
        args=[router],
        id="check_store_health",
        replace_existing=True
    )
    logger.info(f"[Scheduler] Maintenance jobs scheduled every {MAINTENANCE_INTERVAL_MINUTES} minutes")
