"""
Prometheus Metrics Module

Provides application metrics using the prometheus_client library.
Metrics are exposed at /metrics endpoint for Prometheus scraping.
"""

import time
from collections.abc import Callable

from prometheus_client import Counter, Gauge, Histogram, Info
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# =============================================================================
# Application Info
# =============================================================================

APP_INFO = Info("cellar_app", "Cellar application information")


def set_app_info(version: str, environment: str) -> None:
    """Set application info labels."""
    APP_INFO.info({"version": version, "environment": environment})


# =============================================================================
# HTTP Request Metrics
# =============================================================================

HTTP_REQUESTS_TOTAL = Counter(
    "cellar_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "cellar_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# =============================================================================
# Tenancy Metrics
# =============================================================================

DEDICATED_STORES_OPEN = Gauge(
    "cellar_dedicated_stores_open",
    "Number of dedicated tenant stores with an open connection pool",
)

STORE_HEALTH_STATUS = Gauge(
    "cellar_store_health_status",
    "Store health status (1=healthy, 0=unhealthy)",
    ["store"],  # "shared" or "dedicated_tenant_<id>"
)

PROVISIONING_OPERATIONS_TOTAL = Counter(
    "cellar_provisioning_operations_total",
    "Dedicated store provisioning operations",
    ["operation", "outcome"],  # provision/decommission, success/failure
)

# =============================================================================
# Enforcement Metrics
# =============================================================================

RATE_LIMIT_REJECTIONS_TOTAL = Counter(
    "cellar_rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    ["scope"],  # tenant, ip, login, registration, password_reset
)

QUOTA_DENIALS_TOTAL = Counter(
    "cellar_quota_denials_total",
    "Operations denied by the quota enforcer",
    ["resource"],  # items, storage, photos
)

# =============================================================================
# Billing Metrics
# =============================================================================

WEBHOOK_EVENTS_TOTAL = Counter(
    "cellar_webhook_events_total",
    "Billing webhook events received",
    ["event_type", "outcome"],  # applied, duplicate, ignored, failed
)

BILLING_REQUESTS_TOTAL = Counter(
    "cellar_billing_requests_total",
    "Requests made to the billing provider",
    ["operation", "outcome"],  # success, error, timeout
)

SUBSCRIPTION_TRANSITIONS_TOTAL = Counter(
    "cellar_subscription_transitions_total",
    "Applied subscription state transitions",
    ["to_status"],
)

# Redis connectivity, set by CacheManager on connect/disconnect
REDIS_CONNECTED = Gauge(
    "cellar_redis_connected",
    "Redis connection status (1 = connected, 0 = disconnected)",
    ["role"],
)


# =============================================================================
# Prometheus Metrics Middleware
# =============================================================================


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect request count and duration per normalized endpoint."""

    # Endpoints to exclude from metrics (to avoid noise)
    EXCLUDED_PATHS = {"/metrics", "/health", "/favicon.ico"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.EXCLUDED_PATHS:
            return await call_next(request)

        method = request.method
        endpoint = self._normalize_path(path)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            status_code = 500
            raise
        finally:
            duration = time.perf_counter() - start_time
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, endpoint=endpoint).observe(duration)
            HTTP_REQUESTS_TOTAL.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()

        return response

    @staticmethod
    def _normalize_path(path: str) -> str:
        """
        Normalize URL path for metrics by replacing dynamic segments.

        Examples:
            /api/v1/admin/tenants/123/provision -> /api/v1/admin/tenants/{id}/provision
        """
        parts = path.split("/")
        normalized = []

        for part in parts:
            if part.isdigit():
                normalized.append("{id}")
            elif part and len(part) == 36 and "-" in part:
                normalized.append("{uuid}")
            else:
                normalized.append(part)

        return "/".join(normalized)


# =============================================================================
# Helper Functions
# =============================================================================


def record_rate_limit_rejection(scope: str) -> None:
    RATE_LIMIT_REJECTIONS_TOTAL.labels(scope=scope).inc()


def record_quota_denial(resource: str) -> None:
    QUOTA_DENIALS_TOTAL.labels(resource=resource).inc()


def record_webhook_event(event_type: str, outcome: str) -> None:
    WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=outcome).inc()


def record_billing_request(operation: str, outcome: str) -> None:
    BILLING_REQUESTS_TOTAL.labels(operation=operation, outcome=outcome).inc()


def record_subscription_transition(to_status: str) -> None:
    SUBSCRIPTION_TRANSITIONS_TOTAL.labels(to_status=to_status).inc()


def update_store_health(store: str, healthy: bool) -> None:
    """Update health status for a data store."""
    STORE_HEALTH_STATUS.labels(store=store).set(1 if healthy else 0)
