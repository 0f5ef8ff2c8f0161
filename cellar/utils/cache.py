"""
Cache Utility Module

Redis connection management shared by the rate limiter and the webhook
deduplicator. Every operation returns ``None`` when Redis is unavailable so
callers can fall back to their in-process stores.
"""

import logging
import time

import redis.asyncio as redis

from cellar.config import settings
from cellar.utils.metrics import REDIS_CONNECTED

logger = logging.getLogger(__name__)


class CacheManager:
    """
    Manages the Redis connection for counters and markers.

    Provides:
    - Atomic counters with TTL set on first increment
    - Set-if-absent markers with TTL
    - Self-healing reconnect after a cooldown
    """

    # Key prefixes
    PREFIX_RATE_LIMIT = "ratelimit:"
    PREFIX_WEBHOOK = "webhook:seen:"

    RETRY_COOLDOWN_SECONDS = 30

    def __init__(self, client: redis.Redis | None = None):
        self._redis: redis.Redis | None = client
        self._pool: redis.ConnectionPool | None = None
        self._enabled = True
        self._last_connect_attempt: float = 0  # timestamp of last failed connect

    @property
    def available(self) -> bool:
        return self._enabled and self._redis is not None

    async def connect(self) -> None:
        """Establish connection to Redis from redis_url or individual params."""
        if self._redis is not None:
            return

        self._last_connect_attempt = time.time()

        try:
            if settings.redis_url:
                self._pool = redis.ConnectionPool.from_url(settings.redis_url, decode_responses=True)
            else:
                self._pool = redis.ConnectionPool(
                    host=settings.redis_host,
                    port=settings.redis_port,
                    db=settings.redis_db,
                    password=settings.redis_password,
                    decode_responses=True,
                )

            self._redis = redis.Redis(connection_pool=self._pool)
            await self._redis.ping()
            REDIS_CONNECTED.labels(role="cache").set(1)
            logger.info("Cache: Successfully connected to Redis")
        except Exception as e:
            REDIS_CONNECTED.labels(role="cache").set(0)
            logger.warning(f"Cache: Failed to connect to Redis: {e}. Using in-process fallback.")
            self._redis = None
            self._enabled = False

    async def disconnect(self) -> None:
        """Close Redis connection"""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        if self._pool:
            await self._pool.aclose()
            self._pool = None
        REDIS_CONNECTED.labels(role="cache").set(0)
        logger.info("Cache: Disconnected from Redis")

    async def _maybe_retry_connect(self) -> None:
        """Re-attempt connection after a cooldown to allow self-healing."""
        if not self._enabled and time.time() - self._last_connect_attempt >= self.RETRY_COOLDOWN_SECONDS:
            logger.info("Cache: retrying Redis connection after cooldown...")
            self._redis = None
            self._pool = None
            self._enabled = True
            await self.connect()

    async def _client(self) -> redis.Redis | None:
        await self._maybe_retry_connect()
        if not self._enabled:
            return None
        if not self._redis:
            await self.connect()
        return self._redis

    async def incr_with_ttl(self, key: str, ttl: int) -> int | None:
        """
        Atomically increment ``key``; the first increment sets its TTL.

        Returns:
            The post-increment count, or None if Redis is unavailable
        """
        client = await self._client()
        if client is None:
            return None

        try:
            count = await client.incr(key)
            if count == 1:
                await client.expire(key, ttl)
            return int(count)
        except Exception as e:
            logger.warning(f"Cache incr error for {key}: {e}")
            return None

    async def set_nx(self, key: str, value: str, ttl: int) -> bool | None:
        """
        Set ``key`` only if it does not exist yet.

        Returns:
            True if the key was set, False if it already existed,
            None if Redis is unavailable
        """
        client = await self._client()
        if client is None:
            return None

        try:
            return bool(await client.set(key, value, nx=True, ex=ttl))
        except Exception as e:
            logger.warning(f"Cache set_nx error for {key}: {e}")
            return None

    async def exists(self, key: str) -> bool | None:
        client = await self._client()
        if client is None:
            return None

        try:
            return bool(await client.exists(key))
        except Exception as e:
            logger.warning(f"Cache exists error for {key}: {e}")
            return None


# Global cache manager instance
cache_manager = CacheManager()
