"""
Service layer infrastructure - resilience patterns for upstream calls.

Provides:
- MemoryCache: TTL + LRU cache with events and statistics
- CacheKeyBuilder: Deterministic, versioned cache keys
- RetryExecutor: Exponential backoff with jitter
- CircuitBreaker: Stops calling failing providers
- ServiceClient: httpx client combining the above for adapters
"""

from chainfeed.services.errors import (
    ServiceError,
    NetworkError,
    AuthenticationError,
    ValidationError,
    ProviderError,
    CacheError,
    AggregationError,
    ConfigurationError,
    RateLimitError,
    RequestTimeoutError,
    CircuitOpenError,
    normalize_error,
    error_from_category,
    is_retryable,
)
from chainfeed.services.cache import (
    CacheBackend,
    CacheEntry,
    CacheEvent,
    CacheStats,
    MemoryCache,
)
from chainfeed.services.cache_keys import CacheKeyBuilder, CacheKeyMetadata
from chainfeed.services.retry import (
    RETRY_PRESETS,
    RetryAttempt,
    RetryConfig,
    RetryExecutor,
    RetryResult,
    with_retry,
)
from chainfeed.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    with_retry_and_circuit_breaker,
)
from chainfeed.services.client import RequestResult, ServiceClient, ServiceConfig

__all__ = [
    # Errors
    "ServiceError",
    "NetworkError",
    "AuthenticationError",
    "ValidationError",
    "ProviderError",
    "CacheError",
    "AggregationError",
    "ConfigurationError",
    "RateLimitError",
    "RequestTimeoutError",
    "CircuitOpenError",
    "normalize_error",
    "error_from_category",
    "is_retryable",
    # Cache
    "CacheBackend",
    "CacheEntry",
    "CacheEvent",
    "CacheStats",
    "MemoryCache",
    "CacheKeyBuilder",
    "CacheKeyMetadata",
    # Retry
    "RETRY_PRESETS",
    "RetryAttempt",
    "RetryConfig",
    "RetryExecutor",
    "RetryResult",
    "with_retry",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "with_retry_and_circuit_breaker",
    # Client
    "ServiceClient",
    "ServiceConfig",
    "RequestResult",
]
