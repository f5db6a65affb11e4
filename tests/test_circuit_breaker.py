"""
Tests for CircuitBreaker state transitions and the breaker registry.
"""

import asyncio
from datetime import timedelta

import pytest

from chainfeed.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    with_retry_and_circuit_breaker,
)
from chainfeed.services.errors import CircuitOpenError, NetworkError
from chainfeed.services.retry import RetryConfig

FAST = CircuitBreakerConfig(
    failure_threshold=3,
    recovery_time=timedelta(milliseconds=50),
    success_threshold=2,
)


async def ok():
    return "ok"


async def boom():
    raise NetworkError("connection reset")


async def trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(NetworkError):
            await breaker.execute(boom)


class TestTransitions:
    async def test_opens_after_consecutive_failures(self):
        breaker = CircuitBreaker("p", FAST)

        await trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

        await trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN
        assert breaker.is_available is False

    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("p", FAST)

        await trip(breaker, 2)
        await breaker.execute(ok)
        await trip(breaker, 2)

        assert breaker.state == CircuitState.CLOSED

    async def test_open_circuit_rejects_without_calling(self):
        breaker = CircuitBreaker("p", FAST)
        await trip(breaker, 3)
        called = []

        async def fn():
            called.append(True)
            return "ok"

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(fn)

        assert called == []
        assert exc_info.value.retryable is False
        assert exc_info.value.service_id == "p"

    async def test_half_open_after_recovery_time(self):
        breaker = CircuitBreaker("p", FAST)
        await trip(breaker, 3)

        await asyncio.sleep(0.06)

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.is_available is True

    async def test_half_open_closes_after_successes(self):
        breaker = CircuitBreaker("p", FAST)
        await trip(breaker, 3)
        await asyncio.sleep(0.06)

        await breaker.execute(ok)
        assert breaker.state == CircuitState.HALF_OPEN

        await breaker.execute(ok)
        assert breaker.state == CircuitState.CLOSED

    async def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker("p", FAST)
        await trip(breaker, 3)
        await asyncio.sleep(0.06)
        assert breaker.state == CircuitState.HALF_OPEN

        await trip(breaker, 1)

        assert breaker.state == CircuitState.OPEN

    async def test_reset(self):
        breaker = CircuitBreaker("p", FAST)
        await trip(breaker, 3)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_time_until_reset() is None

    async def test_status(self):
        breaker = CircuitBreaker("p", FAST)
        await trip(breaker, 3)

        status = breaker.get_status()
        assert status["state"] == "open"
        assert status["failure_count"] == 3
        assert 0 <= status["time_until_reset"] <= 0.05


class TestRegistry:
    def test_one_breaker_per_provider(self):
        registry = CircuitBreakerRegistry()
        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")

    async def test_open_circuits_and_reset(self):
        registry = CircuitBreakerRegistry(FAST)
        await trip(registry.get("a"), 3)
        registry.get("b")

        assert registry.get_open_circuits() == ["a"]
        assert registry.is_available("a") is False
        assert registry.is_available("b") is True
        assert registry.is_available("unknown") is True

        assert registry.reset("a") is True
        assert registry.reset("missing") is False
        assert registry.get_open_circuits() == []

    async def test_remove(self):
        registry = CircuitBreakerRegistry(FAST)
        await trip(registry.get("a"), 3)

        registry.remove("a")

        assert registry.is_available("a") is True
        assert registry.get("a").state == CircuitState.CLOSED


class TestComposition:
    async def test_retries_count_as_one_breaker_call(self):
        """The breaker sees the outcome of the whole retried call."""
        breaker = CircuitBreaker("p", FAST)
        calls = {"n": 0}

        async def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise NetworkError("connection reset")
            return "ok"

        result = await with_retry_and_circuit_breaker(
            flaky, breaker, RetryConfig(max_attempts=3, base_delay=0.01)
        )

        assert result == "ok"
        assert calls["n"] == 3
        assert breaker.get_status()["failure_count"] == 0

    async def test_exhausted_retries_record_one_failure(self):
        breaker = CircuitBreaker("p", FAST)

        with pytest.raises(NetworkError):
            await with_retry_and_circuit_breaker(
                boom, breaker, RetryConfig(max_attempts=2, base_delay=0.01)
            )

        assert breaker.get_status()["failure_count"] == 1
