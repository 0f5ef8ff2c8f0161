"""
Tenant model.

Each Tenant is an isolated customer account: the unit of billing and data
isolation. Standard tiers share one data store; enterprise tenants get a
dedicated store whose connection URL is kept in ``store_descriptor``.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from cellar.database import Base


class TenantTier(str, enum.Enum):
    free = "free"
    basic = "basic"
    pro = "pro"
    enterprise = "enterprise"


class TenantStatus(str, enum.Enum):
    active = "active"
    suspended = "suspended"
    cancelled = "cancelled"


TOP_TIER = TenantTier.enterprise


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(36), nullable=False, unique=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    subdomain = Column(String(63), nullable=False, unique=True)  # e.g. "acme" in acme.cellar.app
    tier = Column(String(20), nullable=False, default=TenantTier.free.value)
    status = Column(String(20), nullable=False, default=TenantStatus.active.value)
    # Connection URL of the dedicated store; only set for provisioned enterprise tenants
    store_descriptor = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("idx_tenant_subdomain", "subdomain"),
        Index("idx_tenant_status", "status"),
    )

    @property
    def is_top_tier(self) -> bool:
        return self.tier == TOP_TIER.value

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.active.value

    def __repr__(self) -> str:
        return f"<Tenant id={self.id} subdomain={self.subdomain!r} tier={self.tier}>"
