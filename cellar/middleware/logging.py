"""
Structured Logging Middleware

JSON access logs carrying the request id and the resolved tenant, plus a
logging filter that stamps both onto every record emitted while the
request is handled.
"""

import json
import logging
import time
import uuid
from collections.abc import Callable
from contextvars import ContextVar
from datetime import datetime, timezone

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from cellar.middleware.rate_limit import get_client_ip

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
tenant_id_var: ContextVar[int | None] = ContextVar("tenant_id", default=None)

# Extra record attributes copied into the JSON line
ACCESS_FIELDS = ("tenant_id", "method", "path", "status_code", "duration_ms", "client_ip", "error_code")

QUIET_PATHS = frozenset({"/health", "/metrics"})


class RequestContextFilter(logging.Filter):
    """Add the current request id and tenant id to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("")
        if not hasattr(record, "tenant_id"):
            record.tenant_id = tenant_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, for log aggregation (Loki, ELK, CloudWatch)."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", ""),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in ACCESS_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Access logging with request ids.

    The X-Request-ID header is honoured when the caller sends one and is
    always echoed on the response. Health and metrics checks are not logged.
    """

    def __init__(self, app: ASGIApp, logger_name: str = "cellar.access"):
        super().__init__(app)
        self.logger = logging.getLogger(logger_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)
        tenant_id_var.set(None)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            self._log_access(request, 500, start_time, error=str(e))
            raise

        response.headers["X-Request-ID"] = request_id
        self._log_access(request, response.status_code, start_time)
        return response

    def _log_access(self, request: Request, status_code: int, start_time: float, error: str | None = None) -> None:
        if request.url.path in QUIET_PATHS:
            return

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        tenant_id = getattr(request.state, "tenant_id", None)
        level = logging.ERROR if status_code >= 500 else logging.WARNING if status_code >= 400 else logging.INFO

        message = f"{request.method} {request.url.path} - {status_code} ({duration_ms:.2f}ms)"
        if error:
            message += f" - Error: {error}"

        self.logger.log(
            level,
            message,
            extra={
                "tenant_id": tenant_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "client_ip": get_client_ip(request),
            },
        )


def setup_structured_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure root logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use the JSON formatter (production); plain text otherwise
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s")
        )
    handler.addFilter(RequestContextFilter())
    root_logger.addHandler(handler)

    for logger_name, level in {
        "cellar": log_level,
        "uvicorn.access": "WARNING",
        "sqlalchemy.engine": "WARNING",
        "apscheduler": "WARNING",
    }.items():
        logging.getLogger(logger_name).setLevel(getattr(logging, level.upper()))
