"""
UsageMetric model: per-tenant, per-billing-period usage counters.

One row per (tenant, metric, calendar month). Rows from closed months are
kept for reporting and never incremented again.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from cellar.database import Base


class MetricName(str, enum.Enum):
    item_count = "item_count"
    storage_kb = "storage_kb"
    photo_count = "photo_count"


class UsageMetric(Base):
    __tablename__ = "usage_metrics"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    metric_name = Column(String(50), nullable=False)
    current_value = Column(BigInteger, nullable=False, default=0)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "metric_name", "period_start", name="uq_usage_metric_period"),
    )
