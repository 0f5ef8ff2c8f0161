"""
Usage Service

Quota Ledger: durable per-tenant usage counters for the current billing
period. The period is the calendar month (UTC) containing "now"; rows from
closed months are kept but never written again. Values never go below zero.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.models.usage_metric import MetricName, UsageMetric

logger = logging.getLogger(__name__)


def current_period(now: datetime | None = None) -> tuple[datetime, datetime]:
    """Return the (start, end) of the calendar month containing ``now`` in UTC."""
    now = now.astimezone(timezone.utc) if now else datetime.now(timezone.utc)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return start, end


def _metric_filter(tenant_id: int, metric: MetricName | str, period_start: datetime):
    return (
        UsageMetric.tenant_id == tenant_id,
        UsageMetric.metric_name == MetricName(metric).value,
        UsageMetric.period_start == period_start,
    )


async def get_usage(
    tenant_id: int,
    metric: MetricName | str,
    db: AsyncSession,
    now: datetime | None = None,
) -> int:
    """Current-period value of a metric; 0 when nothing was recorded yet."""
    start, _ = current_period(now)
    result = await db.execute(select(UsageMetric.current_value).where(*_metric_filter(tenant_id, metric, start)))
    value = result.scalar()
    return int(value) if value is not None else 0


async def get_all_usage(tenant_id: int, db: AsyncSession, now: datetime | None = None) -> dict[str, int]:
    """Current-period values of every metric for a tenant."""
    start, _ = current_period(now)
    result = await db.execute(
        select(UsageMetric.metric_name, UsageMetric.current_value).where(
            UsageMetric.tenant_id == tenant_id,
            UsageMetric.period_start == start,
        )
    )
    usage = {metric.value: 0 for metric in MetricName}
    for name, value in result.all():
        usage[name] = int(value)
    return usage


async def _apply(
    tenant_id: int,
    metric: MetricName | str,
    db: AsyncSession,
    now: datetime | None,
    new_value,
    initial_value: int,
) -> int:
    """
    Update the current-period row with ``new_value`` (a SQL expression),
    inserting it with ``initial_value`` when the period has no row yet.
    """
    start, end = current_period(now)
    stmt = (
        update(UsageMetric)
        .where(*_metric_filter(tenant_id, metric, start))
        .values(current_value=new_value, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )

    result = await db.execute(stmt)
    if result.rowcount == 0:
        db.add(
            UsageMetric(
                tenant_id=tenant_id,
                metric_name=MetricName(metric).value,
                current_value=max(initial_value, 0),
                period_start=start,
                period_end=end,
            )
        )
        try:
            await db.commit()
        except IntegrityError:
            # Another writer created the period row first
            await db.rollback()
            await db.execute(stmt)
            await db.commit()
    else:
        await db.commit()

    return await get_usage(tenant_id, metric, db, now)


async def increment_usage(
    tenant_id: int,
    metric: MetricName | str,
    delta: int,
    db: AsyncSession,
    now: datetime | None = None,
) -> int:
    """Add ``delta`` to the current-period counter and return the new value."""
    if delta < 0:
        return await decrement_usage(tenant_id, metric, -delta, db, now)
    value = await _apply(tenant_id, metric, db, now, UsageMetric.current_value + delta, delta)
    logger.debug("Usage incremented: tenant_id=%d metric=%s delta=%d value=%d", tenant_id, metric, delta, value)
    return value


async def decrement_usage(
    tenant_id: int,
    metric: MetricName | str,
    delta: int,
    db: AsyncSession,
    now: datetime | None = None,
) -> int:
    """Subtract ``delta`` from the current-period counter, clamped at zero."""
    remaining = UsageMetric.current_value - abs(delta)
    value = await _apply(tenant_id, metric, db, now, case((remaining < 0, 0), else_=remaining), 0)
    logger.debug("Usage decremented: tenant_id=%d metric=%s delta=%d value=%d", tenant_id, metric, delta, value)
    return value


async def set_usage(
    tenant_id: int,
    metric: MetricName | str,
    value: int,
    db: AsyncSession,
    now: datetime | None = None,
) -> int:
    """Overwrite the current-period counter (negative values are stored as 0)."""
    value = max(int(value), 0)
    return await _apply(tenant_id, metric, db, now, value, value)
