"""
CircuitBreaker - Stops calling a provider that keeps failing.

States:
- CLOSED: Normal operation, calls pass through
- OPEN: Provider is failing, calls are rejected without I/O
- HALF_OPEN: Trial calls decide whether the provider recovered

Transitions:
- CLOSED → OPEN: After failure_threshold consecutive failures
- OPEN → HALF_OPEN: Once recovery_time has elapsed since the last failure
- HALF_OPEN → CLOSED: After success_threshold consecutive successes
- HALF_OPEN → OPEN: On any failure
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from chainfeed.services.errors import CircuitOpenError
from chainfeed.services.retry import RetryConfig, RetryExecutor

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_time: timedelta = timedelta(seconds=60)
    success_threshold: int = 2


@dataclass
class BreakerStatus:
    """Point-in-time view of one breaker."""

    provider: str
    state: str
    failure_count: int
    success_count: int
    last_failure: str | None
    opened_at: str | None
    time_until_reset: float | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CircuitBreaker:
    """
    Circuit breaker for a single provider.

    Usage:
        cb = CircuitBreaker("blockfrost")
        data = await cb.execute(lambda: provider.get_token_data(unit))
    """

    def __init__(self, provider: str, config: CircuitBreakerConfig | None = None):
        self.provider = provider
        self.config = config or CircuitBreakerConfig()

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._last_failure_at: datetime | None = None
        self._opened_at: datetime | None = None

    @property
    def state(self) -> CircuitState:
        """Current state; an open breaker whose recovery time passed reads as half-open."""
        if self._state is CircuitState.OPEN and self._recovery_due():
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def is_available(self) -> bool:
        return self.state is not CircuitState.OPEN

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` under the breaker.

        Raises:
            CircuitOpenError: If the circuit is open (``fn`` is not called)
        """
        if not self.is_available:
            raise CircuitOpenError(self.provider, self.get_time_until_reset() or 0)

        try:
            result = await fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        state = self.state
        if state is CircuitState.CLOSED:
            self._failures = 0
            return
        if state is CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.config.success_threshold:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._failures += 1
        self._last_failure_at = datetime.now()

        state = self.state
        tripped = state is CircuitState.HALF_OPEN or (
            state is CircuitState.CLOSED and self._failures >= self.config.failure_threshold
        )
        if tripped:
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        self._transition(CircuitState.CLOSED)
        self._last_failure_at = None
        logger.info(f"[{self.provider}] Circuit breaker reset")

    def get_time_until_reset(self) -> float | None:
        """Seconds until the circuit goes half-open, None unless open."""
        if self._state is not CircuitState.OPEN or self._last_failure_at is None:
            return None
        remaining = self._last_failure_at + self.config.recovery_time - datetime.now()
        return max(0.0, remaining.total_seconds())

    def get_status(self) -> dict[str, Any]:
        return BreakerStatus(
            provider=self.provider,
            state=self.state.value,
            failure_count=self._failures,
            success_count=self._successes,
            last_failure=_iso(self._last_failure_at),
            opened_at=_iso(self._opened_at),
            time_until_reset=self.get_time_until_reset(),
        ).to_dict()

    def _recovery_due(self) -> bool:
        if self._last_failure_at is None:
            return True
        return datetime.now() - self._last_failure_at >= self.config.recovery_time

    def _transition(self, target: CircuitState) -> None:
        self._state = target
        self._successes = 0

        if target is CircuitState.OPEN:
            self._opened_at = datetime.now()
            logger.warning(
                f"[{self.provider}] Circuit opened after {self._failures} failures"
            )
        elif target is CircuitState.HALF_OPEN:
            logger.info(f"[{self.provider}] Circuit half-open, allowing trial calls")
        else:
            self._failures = 0
            self._opened_at = None
            logger.info(f"[{self.provider}] Circuit closed")


class CircuitBreakerRegistry:
    """
    Lazily created breakers keyed by provider name.

    Usage:
        breakers = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=3))
        breakers.get("coingecko").record_failure()
        breakers.is_available("coingecko")
    """

    def __init__(self, default_config: CircuitBreakerConfig | None = None):
        self.default_config = default_config or CircuitBreakerConfig()
        self._by_provider: dict[str, CircuitBreaker] = {}

    def get(self, provider: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        """The provider's breaker, created with ``config`` (or the default) on first use."""
        breaker = self._by_provider.get(provider)
        if breaker is None:
            breaker = CircuitBreaker(provider, config or self.default_config)
            self._by_provider[provider] = breaker
        return breaker

    def is_available(self, provider: str) -> bool:
        """True unless the provider has a breaker that is currently open."""
        breaker = self._by_provider.get(provider)
        return breaker is None or breaker.is_available

    def remove(self, provider: str) -> None:
        self._by_provider.pop(provider, None)

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_status() for name, breaker in self._by_provider.items()}

    def reset_all(self) -> None:
        for breaker in self._by_provider.values():
            breaker.reset()

    def reset(self, provider: str) -> bool:
        breaker = self._by_provider.get(provider)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def get_open_circuits(self) -> list[str]:
        return [name for name, breaker in self._by_provider.items() if not breaker.is_available]


async def with_retry_and_circuit_breaker(
    fn: Callable[[], Awaitable[T]],
    breaker: CircuitBreaker,
    retry_config: RetryConfig | None = None,
) -> T:
    """Retry ``fn`` inside a single breaker-guarded call."""
    executor = RetryExecutor(retry_config)
    return await breaker.execute(lambda: executor.execute(fn))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
