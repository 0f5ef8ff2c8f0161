"""
Custom Exception Classes for Cellar

This module defines the error taxonomy of the tenancy and billing core so
that every failure surfaces with a consistent status code, machine-readable
error code and details payload.

Domain errors (validation, not found, conflict) are never retried.
ProviderError marks failures of the external billing provider; those are
``retryable`` at the caller's discretion.
"""

import enum
from typing import Any

from fastapi import status


class ErrorCode(str, enum.Enum):
    """Machine-readable error codes returned in error responses."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    WEBHOOK_SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"
    AUTH_FAILED = "AUTH_FAILED"
    AUTH_PERMISSION_DENIED = "AUTH_PERMISSION_DENIED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    TENANT_NOT_FOUND = "TENANT_NOT_FOUND"
    TENANT_INACTIVE = "TENANT_INACTIVE"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    PLAN_NOT_FOUND = "PLAN_NOT_FOUND"
    CONFLICT = "CONFLICT"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    PROVISIONING_MISSING = "PROVISIONING_MISSING"
    ALREADY_PROVISIONED = "ALREADY_PROVISIONED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    FEATURE_NOT_AVAILABLE = "FEATURE_NOT_AVAILABLE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class CellarError(Exception):
    """Base exception class for all Cellar errors"""

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.error_code = error_code
        super().__init__(self.message)


# ============================================================================
# Validation & Authentication
# ============================================================================


class ValidationError(CellarError):
    """Raised when input validation fails (bad plan id, malformed webhook)"""

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None):
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=error_details,
            error_code=ErrorCode.VALIDATION_FAILED,
        )


class WebhookSignatureError(CellarError):
    """Raised when an inbound webhook cannot be authenticated"""

    def __init__(self, message: str = "Webhook signature verification failed", provider: str | None = None):
        details = {"provider": provider} if provider else {}
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
            error_code=ErrorCode.WEBHOOK_SIGNATURE_INVALID,
        )


class AuthenticationError(CellarError):
    """Raised when authentication fails"""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message=message, status_code=status.HTTP_401_UNAUTHORIZED, error_code=ErrorCode.AUTH_FAILED)


# ============================================================================
# Resource Not Found Exceptions
# ============================================================================


class NotFoundError(CellarError):
    """Base class for resource not found errors"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Any | None = None,
        error_code: ErrorCode = ErrorCode.RESOURCE_NOT_FOUND,
    ):
        message = f"{resource_type} not found"
        if resource_id is not None:
            message = f"{resource_type} with id '{resource_id}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id},
            error_code=error_code,
        )


class TenantNotFoundError(NotFoundError):
    def __init__(self, tenant_id: Any | None = None):
        super().__init__(resource_type="Tenant", resource_id=tenant_id, error_code=ErrorCode.TENANT_NOT_FOUND)


class SubscriptionNotFoundError(NotFoundError):
    def __init__(self, subscription_id: Any | None = None):
        super().__init__(
            resource_type="Subscription",
            resource_id=subscription_id,
            error_code=ErrorCode.SUBSCRIPTION_NOT_FOUND,
        )


class PlanNotFoundError(NotFoundError):
    def __init__(self, plan_id: Any | None = None):
        super().__init__(resource_type="Plan", resource_id=plan_id, error_code=ErrorCode.PLAN_NOT_FOUND)


# ============================================================================
# Conflicts & State Machine
# ============================================================================


class ConflictError(CellarError):
    """Raised when an operation conflicts with the current state"""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.CONFLICT,
    ):
        super().__init__(message=message, status_code=status.HTTP_409_CONFLICT, details=details, error_code=error_code)


class InvalidStatusTransitionError(ConflictError):
    """Raised when a subscription state transition is not allowed"""

    def __init__(self, current_status: str, target_status: str, resource_type: str = "Subscription"):
        super().__init__(
            message=f"Cannot transition {resource_type} from '{current_status}' to '{target_status}'",
            details={"resource_type": resource_type, "current_status": current_status, "target_status": target_status},
            error_code=ErrorCode.INVALID_STATUS_TRANSITION,
        )


class ProvisioningMissingError(ConflictError):
    """Raised when a top-tier tenant has no dedicated store recorded"""

    def __init__(self, tenant_id: Any):
        super().__init__(
            message=f"Tenant {tenant_id} has no dedicated store provisioned",
            details={"tenant_id": tenant_id},
            error_code=ErrorCode.PROVISIONING_MISSING,
        )


class AlreadyProvisionedError(ConflictError):
    """Raised when provisioning is attempted twice for the same tenant"""

    def __init__(self, tenant_id: Any):
        super().__init__(
            message=f"Dedicated store already provisioned for tenant {tenant_id}",
            details={"tenant_id": tenant_id},
            error_code=ErrorCode.ALREADY_PROVISIONED,
        )


# ============================================================================
# External Provider Exceptions
# ============================================================================


class ProviderError(CellarError):
    """Raised when the billing provider is unreachable or returns a non-2xx response"""

    retryable = True

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        provider_status: int | None = None,
        debug_id: str | None = None,
        status_code: int = status.HTTP_502_BAD_GATEWAY,
        error_code: ErrorCode = ErrorCode.PROVIDER_ERROR,
    ):
        details: dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if provider_status is not None:
            details["provider_status"] = provider_status
        if debug_id:
            details["debug_id"] = debug_id
        self.operation = operation
        self.provider_status = provider_status
        super().__init__(message=message, status_code=status_code, details=details, error_code=error_code)


class ProviderTimeoutError(ProviderError):
    """Raised when a billing provider call exceeds its timeout"""

    def __init__(self, operation: str | None = None):
        super().__init__(
            message="Billing provider request timed out",
            operation=operation,
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            error_code=ErrorCode.PROVIDER_TIMEOUT,
        )


# ============================================================================
# Limits, Features & Tenant Access
# ============================================================================


class LimitExceededError(CellarError):
    """Raised by the HTTP layer to surface a quota denial as an upgrade prompt"""

    def __init__(self, resource: str, current: int, limit: int, tier: str | None = None):
        self.resource = resource
        self.current = current
        self.limit = limit
        super().__init__(
            message=f"{resource.capitalize()} limit reached. Please upgrade your plan.",
            status_code=status.HTTP_403_FORBIDDEN,
            details={
                "resource": resource,
                "current": current,
                "limit": limit,
                "current_tier": tier,
                "upgrade_required": True,
            },
            error_code=ErrorCode.LIMIT_EXCEEDED,
        )


class FeatureNotAvailableError(CellarError):
    """Raised when a feature is not part of the tenant's tier"""

    def __init__(self, feature: str, current_tier: str, required_tier: str):
        super().__init__(
            message=f"Feature '{feature}' requires the {required_tier} tier",
            status_code=status.HTTP_403_FORBIDDEN,
            details={
                "feature": feature,
                "current_tier": current_tier,
                "required_tier": required_tier,
                "upgrade_required": True,
            },
            error_code=ErrorCode.FEATURE_NOT_AVAILABLE,
        )


class RateLimitExceededError(CellarError):
    """Raised when rate limit is exceeded"""

    def __init__(self, message: str = "Rate limit exceeded. Please try again later.", retry_after: int | None = None):
        details = {"retry_after": retry_after} if retry_after is not None else {}
        super().__init__(
            message=message,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details=details,
            error_code=ErrorCode.RATE_LIMIT_EXCEEDED,
        )


class TenantInactiveError(CellarError):
    """Raised when a suspended or cancelled tenant makes a request"""

    def __init__(self, tenant_status: str):
        super().__init__(
            message=f"Tenant account is {tenant_status}",
            status_code=status.HTTP_403_FORBIDDEN,
            details={"status": tenant_status},
            error_code=ErrorCode.TENANT_INACTIVE,
        )
