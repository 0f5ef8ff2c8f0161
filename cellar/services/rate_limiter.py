"""
Rate Limiter

Fixed-window request counters keyed by ``(scope, identity, bucket)``:

- tenant:          calendar hour, limit = tier requests_per_hour
- ip:              calendar minute, limit = IP_REQUESTS_PER_MINUTE
- login:           fixed 15-minute block, 5 attempts
- registration:    calendar hour, 3 per IP
- password_reset:  calendar hour, 3 per hashed e-mail

Counters live in Redis (INCR, TTL set on the first increment so stale keys
expire on their own) and fall back to an in-process store when Redis is
down. Fixed windows are an approximation: a burst straddling a window
boundary can reach twice the nominal rate.
"""

import enum
import hashlib
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from cellar.config import settings
from cellar.tiers import get_tier_limits
from cellar.utils.cache import CacheManager
from cellar.utils.metrics import record_rate_limit_rejection

logger = logging.getLogger(__name__)


class RateLimitScope(str, enum.Enum):
    tenant = "tenant"
    ip = "ip"
    login = "login"
    registration = "registration"
    password_reset = "password_reset"


@dataclass(frozen=True)
class WindowPolicy:
    seconds: int
    ttl_seconds: int  # slightly longer than the window so keys self-expire
    bucket_format: str | None  # strftime pattern; None keys by window start epoch


HOURLY = WindowPolicy(seconds=3600, ttl_seconds=65 * 60, bucket_format="%Y%m%d%H")
MINUTELY = WindowPolicy(seconds=60, ttl_seconds=2 * 60, bucket_format="%Y%m%d%H%M")
LOGIN_BLOCK = WindowPolicy(seconds=15 * 60, ttl_seconds=16 * 60, bucket_format=None)

SCOPE_WINDOWS = {
    RateLimitScope.tenant: HOURLY,
    RateLimitScope.ip: MINUTELY,
    RateLimitScope.login: LOGIN_BLOCK,
    RateLimitScope.registration: HOURLY,
    RateLimitScope.password_reset: HOURLY,
}

LOGIN_ATTEMPTS_PER_BLOCK = 5
REGISTRATIONS_PER_HOUR = 3
PASSWORD_RESETS_PER_HOUR = 3

REJECTION_MESSAGES = {
    RateLimitScope.tenant: "Hourly request limit reached for your plan. Please upgrade or try again later.",
    RateLimitScope.ip: "Too many requests from this IP address. Please slow down.",
    RateLimitScope.login: "Too many login attempts. Please try again later.",
    RateLimitScope.registration: "Too many registration attempts. Please try again later.",
    RateLimitScope.password_reset: "Too many password reset requests. Please try again later.",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    scope: str
    limit: int
    count: int
    reset: int  # epoch seconds at which the window ends
    retry_after: int | None = None  # seconds, only set on rejection

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    def error_body(self) -> dict:
        return {
            "error": {
                "code": "RATE_LIMIT_EXCEEDED",
                "message": REJECTION_MESSAGES[RateLimitScope(self.scope)],
                "retry_after": self.retry_after,
                "limit": self.limit,
                "reset": self.reset,
            }
        }


class InMemoryCounterStore:
    """Process-local counters used while Redis is unavailable."""

    def __init__(self):
        self._counters: dict[str, tuple[int, float]] = {}  # key -> (count, expires_at epoch)

    def incr(self, key: str, ttl: int, now: float) -> int:
        count, expires_at = self._counters.get(key, (0, 0.0))
        if expires_at <= now:
            count, expires_at = 0, now + ttl
        count += 1
        self._counters[key] = (count, expires_at)
        return count

    def prune(self, now: float) -> int:
        """Drop expired counters; returns how many were removed."""
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._counters)


class RateLimiter:
    """Fixed-window rate limiter with a Redis backend and in-process fallback."""

    def __init__(
        self,
        cache: CacheManager | None = None,
        clock: Callable[[], datetime] = utc_now,
        ip_requests_per_minute: int | None = None,
    ):
        self.cache = cache
        self.clock = clock
        self.ip_requests_per_minute = ip_requests_per_minute or settings.ip_requests_per_minute
        self.fallback = InMemoryCounterStore()

    @staticmethod
    def _window(policy: WindowPolicy, now: datetime) -> tuple[str, float]:
        """Return (bucket label, window end epoch) for ``now``."""
        timestamp = now.timestamp()
        start = math.floor(timestamp / policy.seconds) * policy.seconds
        if policy.bucket_format is None:
            label = str(start)
        else:
            label = datetime.fromtimestamp(start, tz=timezone.utc).strftime(policy.bucket_format)
        return label, start + policy.seconds

    async def _increment(self, key: str, ttl: int, now: datetime) -> int:
        count = None
        if self.cache is not None:
            count = await self.cache.incr_with_ttl(key, ttl)
        if count is None:
            count = self.fallback.incr(key, ttl, now.timestamp())
        return count

    async def hit(self, scope: RateLimitScope | str, identity: str, limit: int) -> RateLimitResult:
        """
        Count one request for ``identity`` in the current window of ``scope``.

        Returns:
            RateLimitResult; rejected results carry retry_after, the whole
            seconds until the window boundary (at least 1)
        """
        scope = RateLimitScope(scope)
        policy = SCOPE_WINDOWS[scope]
        now = self.clock().astimezone(timezone.utc)
        bucket, window_end = self._window(policy, now)
        key = f"{CacheManager.PREFIX_RATE_LIMIT}{scope.value}:{identity}:{bucket}"

        count = await self._increment(key, policy.ttl_seconds, now)
        reset = int(window_end)

        if count > limit:
            retry_after = max(math.ceil(window_end - now.timestamp()), 1)
            record_rate_limit_rejection(scope.value)
            logger.warning(
                "Rate limit exceeded: scope=%s identity=%s count=%d limit=%d retry_after=%d",
                scope.value,
                identity,
                count,
                limit,
                retry_after,
            )
            return RateLimitResult(
                allowed=False, scope=scope.value, limit=limit, count=count, reset=reset, retry_after=retry_after
            )

        return RateLimitResult(allowed=True, scope=scope.value, limit=limit, count=count, reset=reset)

    async def check_tenant(self, tenant_id: int, tier: str) -> RateLimitResult:
        return await self.hit(RateLimitScope.tenant, str(tenant_id), get_tier_limits(tier).requests_per_hour)

    async def check_ip(self, client_ip: str) -> RateLimitResult:
        return await self.hit(RateLimitScope.ip, client_ip, self.ip_requests_per_minute)

    async def check_login(self, client_ip: str) -> RateLimitResult:
        return await self.hit(RateLimitScope.login, client_ip, LOGIN_ATTEMPTS_PER_BLOCK)

    async def check_registration(self, client_ip: str) -> RateLimitResult:
        return await self.hit(RateLimitScope.registration, client_ip, REGISTRATIONS_PER_HOUR)

    async def check_password_reset(self, email: str) -> RateLimitResult:
        # The address itself never lands in a cache key
        email_hash = hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]
        return await self.hit(RateLimitScope.password_reset, email_hash, PASSWORD_RESETS_PER_HOUR)

    def prune_fallback(self) -> int:
        removed = self.fallback.prune(self.clock().timestamp())
        if removed:
            logger.debug("Pruned %d expired in-process rate limit counters", removed)
        return removed
