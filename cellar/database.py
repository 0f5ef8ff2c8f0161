from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from cellar.config import settings
import logging

logger = logging.getLogger(__name__)


def engine_options(url: str, pool_size: int, max_overflow: int, **extra) -> dict:
    """Pool arguments for create_async_engine. SQLite drivers manage their own pool."""
    if url.startswith("sqlite"):
        return {}
    return {"pool_size": pool_size, "max_overflow": max_overflow, "pool_pre_ping": True, **extra}


# Environment-based configurations
if settings.environment == "production":
    _options = engine_options(settings.database_url, 20, 50, pool_timeout=60, pool_recycle=1800)
else:
    _options = engine_options(settings.database_url, 10, 20, pool_timeout=30)

engine = create_async_engine(settings.database_url, echo=settings.debug, **_options)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    autoflush=False,
    expire_on_commit=False,
)

Base = declarative_base()


async def get_db():
    async with AsyncSessionLocal() as db:
        try:
            yield db
        except Exception as e:
            logger.error(f"Database session error: {e}")
            await db.rollback()
            raise
