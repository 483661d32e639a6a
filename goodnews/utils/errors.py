"""
Error taxonomy for the Good News backend.

Every error carries a stable external ``code`` (what callers see), an
HTTP-like ``status`` and optional ``details``. Caller-facing operations
translate these into ``{code, message, details}`` payloads via
``to_error_payload``.
"""

from typing import Any, Dict, Optional


MAX_INTERNAL_DETAIL_CHARS = 100


class GoodNewsError(Exception):
    """Base class for all domain errors"""

    code = "internal"
    status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(GoodNewsError):
    """Bad caller input. Never retried."""

    code = "invalid-argument"
    status = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class ResourceNotFound(GoodNewsError):
    code = "not-found"
    status = 404

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found" if not resource_id else f"{resource} '{resource_id}' not found"
        super().__init__(message, {"resource": resource})
        self.resource = resource


class RateLimitError(GoodNewsError):
    """Upstream throttling. Short-circuits retries."""

    code = "resource-exhausted"
    status = 429

    def __init__(self, service: str, retry_after: int = 60, message: Optional[str] = None):
        super().__init__(
            message or f"Rate limit exceeded for {service}",
            {"service": service, "retryAfter": retry_after},
        )
        self.service = service
        self.retry_after = retry_after


class QuotaExhausted(GoodNewsError):
    """Provider credit/quota is used up. Not retryable."""

    code = "resource-exhausted"
    status = 402

    def __init__(self, service: str):
        super().__init__(f"{service} quota exhausted", {"service": service})
        self.service = service


class ProviderError(GoodNewsError):
    code = "unavailable"

    def __init__(self, service: str, status: int = 503, message: Optional[str] = None):
        super().__init__(
            message or f"{service} request failed with status {status}",
            {"service": service, "status": status},
        )
        self.service = service
        self.status = status


class ClassifierError(GoodNewsError):
    """AI classification failure. ``kind`` drives logging and backoff."""

    STATUS_BY_KIND = {
        "auth": 401,
        "quota": 429,
        "invalid": 400,
        "timeout": 408,
        "internal": 500,
        "unavailable": 503,
        "unparseable": 502,
        "unknown": 500,
    }

    def __init__(self, message: str, kind: str = "unknown"):
        super().__init__(message, {"kind": kind})
        self.kind = kind
        self.status = self.STATUS_BY_KIND.get(kind, 500)


class CapacityExceeded(GoodNewsError):
    """A write would exceed the store's batch or payload limits."""

    code = "failed-precondition"
    status = 413


class ConfigError(GoodNewsError):
    """Missing credentials or invalid settings. Fatal, never retried."""

    code = "failed-precondition"
    status = 500


class StoreError(GoodNewsError):
    def __init__(self, operation: str, message: Optional[str] = None):
        super().__init__(message or f"Database operation failed: {operation}", {"operation": operation})
        self.operation = operation


class PayloadTooLarge(GoodNewsError):
    code = "invalid-argument"
    status = 413


class ConcurrencyLimitExceeded(GoodNewsError):
    code = "resource-exhausted"
    status = 429

    def __init__(self, retry_after: int = 30):
        super().__init__(
            "Too many concurrent requests. Please wait and try again.",
            {"reason": "CONCURRENT_REQUEST_LIMIT_EXCEEDED", "retryAfter": retry_after},
        )
        self.retry_after = retry_after


class PermissionDenied(GoodNewsError):
    code = "permission-denied"
    status = 403


class Unauthenticated(GoodNewsError):
    code = "unauthenticated"
    status = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


# Errors that RetryExecutor must never retry
NON_RETRYABLE_ERRORS = (ConfigError, QuotaExhausted, ValidationError, CapacityExceeded)


def to_error_payload(exc: BaseException) -> Dict[str, Any]:
    """Translate any exception into the stable external error shape."""
    if isinstance(exc, GoodNewsError):
        return {"code": exc.code, "message": exc.message, "details": dict(exc.details)}
    return {
        "code": "internal",
        "message": "An internal error occurred",
        "details": {"error": str(exc)[:MAX_INTERNAL_DETAIL_CHARS]},
    }
