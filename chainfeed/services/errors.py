"""
Service layer exceptions.

Every error raised inside the engine is a ServiceError subclass carrying a
category from the taxonomy below. Provider failures are converted into error
entries on the response; only internal faults reach the caller.
"""

import asyncio
import re
from typing import Any

import httpx


class ServiceError(Exception):
    """Base exception for service layer errors."""

    code = "SERVICE_ERROR"
    category = "provider"
    retryable = True

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.service_id = service_id
        self.context = context or {}
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category,
            "message": self.message,
            "service_id": self.service_id,
            "retryable": self.retryable,
        }


class NetworkError(ServiceError):
    """Transport-level failure (connection refused, DNS, reset)."""

    code = "NETWORK_ERROR"
    category = "network"

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, service_id=service_id, context=context)


class AuthenticationError(ServiceError):
    """Credentials were rejected by the upstream."""

    code = "AUTHENTICATION_ERROR"
    category = "authentication"
    retryable = False


class ValidationError(ServiceError):
    """Malformed input."""

    code = "VALIDATION_ERROR"
    category = "validation"
    retryable = False

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any = None,
        context: dict[str, Any] | None = None,
    ):
        self.field = field
        self.value = value
        super().__init__(message, context=context)


class ProviderError(ServiceError):
    """Upstream-specific failure not otherwise classified."""

    code = "PROVIDER_ERROR"
    category = "provider"

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, service_id=service_id, context=context)
        # 4xx answers will not change on retry
        if status_code is not None and 400 <= status_code < 500:
            self.retryable = False


class CacheError(ServiceError):
    """Cache operation failed."""

    code = "CACHE_ERROR"
    category = "cache"


class AggregationError(ServiceError):
    """Internal fault inside the aggregation machinery."""

    code = "AGGREGATION_ERROR"
    category = "aggregation"

    def __init__(
        self,
        message: str,
        failed_providers: list[str] | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.failed_providers = failed_providers or []
        super().__init__(message, service_id="aggregator", context=context)


class ConfigurationError(ServiceError):
    """The engine or a provider is misconfigured."""

    code = "CONFIGURATION_ERROR"
    category = "configuration"
    retryable = False


class RateLimitError(ServiceError):
    """Rate limit exceeded."""

    code = "RATE_LIMIT_ERROR"
    category = "rate_limit"

    def __init__(self, service_id: str, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, service_id=service_id)


class RequestTimeoutError(ServiceError):
    """Request timed out."""

    code = "TIMEOUT_ERROR"
    category = "timeout"

    def __init__(self, service_id: str, timeout: float, message: str | None = None):
        self.timeout = timeout
        super().__init__(
            message or f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    code = "CIRCUIT_OPEN"
    category = "provider"
    retryable = False

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )


# Message heuristics for errors that did not originate in this package
RETRYABLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"timeout",
        r"timed out",
        r"network",
        r"connection",
        r"rate limit",
        r"too many requests",
        r"service unavailable",
        r"internal server error",
        r"bad gateway",
        r"gateway timeout",
    )
]

NETWORK_KEYWORDS = ("network", "connection", "dns", "socket", "econnrefused", "enotfound")
AUTH_KEYWORDS = ("unauthorized", "forbidden", "authentication", "api key", "401", "403")
TIMEOUT_KEYWORDS = ("timeout", "timed out", "time limit", "deadline")
VALIDATION_KEYWORDS = ("validation", "invalid", "required", "missing", "format", "schema")


def normalize_error(error: BaseException, service_id: str | None = None) -> ServiceError:
    """Convert any exception into a ServiceError of the matching category."""
    if isinstance(error, ServiceError):
        return error

    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return RequestTimeoutError(service_id or "unknown", 0.0)
    if isinstance(error, httpx.TransportError):
        return NetworkError(str(error) or type(error).__name__, service_id=service_id)

    message = str(error) or type(error).__name__
    lowered = message.lower()
    context = {"original_error": type(error).__name__}

    if any(k in lowered for k in TIMEOUT_KEYWORDS):
        err = RequestTimeoutError(service_id or "unknown", 0.0, message=message)
        err.context.update(context)
        return err
    if any(k in lowered for k in NETWORK_KEYWORDS):
        return NetworkError(message, service_id=service_id, context=context)
    if any(k in lowered for k in AUTH_KEYWORDS):
        return AuthenticationError(message, service_id=service_id, context=context)
    if any(k in lowered for k in VALIDATION_KEYWORDS):
        return ValidationError(message, context=context)

    return ProviderError(message, service_id=service_id, context=context)


def error_from_category(
    category: str | None, message: str, service_id: str | None = None
) -> ServiceError:
    """Rebuild a typed error from a category reported across a plain-data boundary."""
    if category == "timeout":
        return RequestTimeoutError(service_id or "unknown", 0.0, message=message)
    if category == "rate_limit":
        return RateLimitError(service_id or "unknown")
    if category == "network":
        return NetworkError(message, service_id=service_id)
    if category == "authentication":
        return AuthenticationError(message, service_id=service_id)
    if category == "validation":
        return ValidationError(message)
    if category == "configuration":
        return ConfigurationError(message, service_id=service_id)
    if category is None:
        return normalize_error(Exception(message), service_id)
    return ProviderError(message, service_id=service_id)


def is_retryable(error: BaseException) -> bool:
    """Decide whether an error is worth another attempt."""
    if isinstance(error, ServiceError):
        return error.retryable
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True
    message = str(error)
    return any(p.search(message) for p in RETRYABLE_PATTERNS)
