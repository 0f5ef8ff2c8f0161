"""
Pytest configuration and fixtures for Cellar tests
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

# Settings are read at import time; point them at an in-memory database first
os.environ["DATABASE_URL"] = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["ENVIRONMENT"] = "testing"
os.environ["ENABLE_SCHEDULER"] = "false"

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from cellar.database import Base  # noqa: E402
from cellar.exceptions import ProviderError  # noqa: E402
from cellar.models.tenant import Tenant, TenantStatus, TenantTier  # noqa: E402
from cellar.services.billing_client import ProviderSubscription  # noqa: E402
from cellar.utils.cache import CacheManager  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# One shared connection so every session sees the same in-memory database
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def setup_test_database():
    """Create a fresh schema for each test function that needs it."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(scope="function")
async def db(setup_test_database) -> AsyncGenerator[AsyncSession, None]:
    """Database session on the fresh schema."""
    async with TestSessionLocal() as session:
        yield session


async def make_tenant(
    db: AsyncSession,
    subdomain: str,
    tier: str = TenantTier.free.value,
    status: str = TenantStatus.active.value,
    store_descriptor: str | None = None,
) -> Tenant:
    tenant = Tenant(
        name=subdomain.capitalize(),
        subdomain=subdomain,
        tier=tier,
        status=status,
        store_descriptor=store_descriptor,
    )
    db.add(tenant)
    await db.commit()
    await db.refresh(tenant)
    return tenant


@pytest.fixture
async def free_tenant(db: AsyncSession) -> Tenant:
    return await make_tenant(db, "acme")


@pytest.fixture
async def enterprise_tenant(db: AsyncSession) -> Tenant:
    return await make_tenant(db, "bigcorp", tier=TenantTier.enterprise.value)


class OfflineCache(CacheManager):
    """CacheManager that behaves as if Redis were down."""

    async def connect(self) -> None:
        self._enabled = False

    async def disconnect(self) -> None:
        pass

    async def _client(self):
        return None


class FakeBillingClient:
    """
    In-memory stand-in for the PayPal client.

    Subscriptions start APPROVAL_PENDING; tests call approve() to play the
    part of the payer.
    """

    def __init__(self):
        self.remote: dict[str, ProviderSubscription] = {}
        self.created: list[str] = []
        self.cancelled: list[tuple[str, str]] = []
        self.fail_create: Exception | None = None
        self.fail_cancel: Exception | None = None
        self.fail_get: Exception | None = None
        self.webhook_verified = True
        self._counter = 0

    async def create_subscription(self, provider_plan_id, return_url, cancel_url, custom_id=None):
        if self.fail_create:
            raise self.fail_create
        self._counter += 1
        subscription_id = f"I-TEST{self._counter:04d}"
        self.remote[subscription_id] = ProviderSubscription(
            id=subscription_id,
            status="APPROVAL_PENDING",
            plan_id=provider_plan_id,
            approval_url=f"https://paypal.test/approve?token={subscription_id}",
        )
        self.created.append(subscription_id)
        return self.remote[subscription_id]

    def approve(
        self, subscription_id: str, start_time: datetime | None = None, trial_days: int = 0
    ) -> ProviderSubscription:
        start = start_time or datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)
        remote = self.remote[subscription_id]
        remote.status = "ACTIVE"
        remote.start_time = start
        remote.in_trial = trial_days > 0
        remote.next_billing_time = start + timedelta(days=trial_days or 31)
        return remote

    def end_trial(self, subscription_id: str) -> ProviderSubscription:
        """The first regular cycle has been billed."""
        remote = self.remote[subscription_id]
        remote.in_trial = False
        remote.next_billing_time = remote.next_billing_time + timedelta(days=31)
        return remote

    async def get_subscription(self, subscription_id):
        if self.fail_get:
            raise self.fail_get
        if subscription_id not in self.remote:
            raise ProviderError("RESOURCE_NOT_FOUND", operation="get_subscription", provider_status=404)
        return self.remote[subscription_id]

    async def cancel_subscription(self, subscription_id, reason):
        if self.fail_cancel:
            raise self.fail_cancel
        self.cancelled.append((subscription_id, reason))
        if subscription_id in self.remote:
            self.remote[subscription_id].status = "CANCELLED"

    async def verify_webhook_signature(self, webhook_id, headers, event):
        return self.webhook_verified

    async def aclose(self):
        pass


@pytest.fixture
def billing() -> FakeBillingClient:
    return FakeBillingClient()


class FakeStoreBackend:
    """Store backend that keeps its databases in a set and, like PostgreSQL, rejects duplicates."""

    def __init__(self):
        self.stores: set[str] = set()
        self.dropped: list[str] = []
        self.create_error: Exception | None = None
        self.drop_error: Exception | None = None

    def descriptor_for(self, name: str) -> str:
        return f"postgresql+asyncpg://db/{name}"

    async def store_exists(self, name: str) -> bool:
        return name in self.stores

    async def create_store(self, name: str) -> str:
        if self.create_error:
            raise self.create_error
        if name in self.stores:
            raise RuntimeError(f'database "{name}" already exists')
        self.stores.add(name)
        return self.descriptor_for(name)

    async def drop_store(self, name: str) -> None:
        if self.drop_error:
            raise self.drop_error
        self.stores.discard(name)
        self.dropped.append(name)
