"""
Tests for RetryExecutor backoff, jitter bounds and abort rules.
"""

import asyncio

import pytest

from chainfeed.services.errors import NetworkError, ProviderError, ValidationError
from chainfeed.services.retry import (
    RETRY_PRESETS,
    RetryConfig,
    RetryExecutor,
    with_retry,
)


def failing(times: int, error: Exception, result: str = "ok"):
    """Coroutine factory that raises ``error`` ``times`` times, then returns."""
    calls = {"n": 0}

    async def fn():
        calls["n"] += 1
        if calls["n"] <= times:
            raise error
        return result

    fn.calls = calls
    return fn


class TestBackoff:
    async def test_delays_follow_exponential_backoff_with_jitter(self):
        config = RetryConfig(max_attempts=3, base_delay=0.1, backoff_multiplier=2.0)
        executor = RetryExecutor(config)

        result = await executor.execute(failing(2, NetworkError("connection reset")))

        assert result == "ok"
        attempts = executor.attempts
        assert [a.attempt for a in attempts] == [1, 2, 3]
        assert 0.075 <= attempts[0].delay <= 0.125
        assert 0.15 <= attempts[1].delay <= 0.25
        assert attempts[2].delay == 0.0
        assert attempts[2].error is None

    def test_delay_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=3.0, jitter=False)
        assert RetryExecutor.calculate_delay(1, config) == 1.0
        assert RetryExecutor.calculate_delay(2, config) == 2.0
        assert RetryExecutor.calculate_delay(5, config) == 3.0

    def test_no_jitter_is_exact(self):
        config = RetryConfig(base_delay=0.5, backoff_multiplier=3.0, jitter=False)
        assert RetryExecutor.calculate_delay(3, config) == pytest.approx(4.5)


class TestAbortRules:
    async def test_last_error_is_raised_after_exhaustion(self):
        config = RetryConfig(max_attempts=3, base_delay=0.01, jitter=False)
        executor = RetryExecutor(config)
        fn = failing(10, NetworkError("connection refused"))

        with pytest.raises(NetworkError):
            await executor.execute(fn)

        assert fn.calls["n"] == 3
        assert len(executor.attempts) == 3
        assert executor.attempts[-1].delay == 0.0

    async def test_non_retryable_error_aborts_immediately(self):
        executor = RetryExecutor(RetryConfig(max_attempts=5, base_delay=0.01))
        fn = failing(10, ValidationError("bad input"))

        with pytest.raises(ValidationError):
            await executor.execute(fn)

        assert fn.calls["n"] == 1

    async def test_client_error_status_is_not_retried(self):
        executor = RetryExecutor(RetryConfig(max_attempts=5, base_delay=0.01))
        fn = failing(10, ProviderError("not found", status_code=404))

        with pytest.raises(ProviderError):
            await executor.execute(fn)

        assert fn.calls["n"] == 1

    async def test_should_retry_can_veto(self):
        vetoed = []

        def should_retry(error, attempt):
            vetoed.append(attempt)
            return attempt < 2

        config = RetryConfig(max_attempts=5, base_delay=0.01, should_retry=should_retry)
        fn = failing(10, NetworkError("connection reset"))

        with pytest.raises(NetworkError):
            await RetryExecutor(config).execute(fn)

        assert fn.calls["n"] == 2
        assert vetoed == [1, 2]

    async def test_should_retry_cannot_force_non_retryable(self):
        config = RetryConfig(max_attempts=5, base_delay=0.01, should_retry=lambda e, a: True)
        fn = failing(10, ValidationError("bad input"))

        with pytest.raises(ValidationError):
            await RetryExecutor(config).execute(fn)

        assert fn.calls["n"] == 1

    async def test_plain_exception_with_transient_message_is_retried(self):
        config = RetryConfig(max_attempts=3, base_delay=0.01)
        fn = failing(1, RuntimeError("503 Service Unavailable"))

        assert await RetryExecutor(config).execute(fn) == "ok"
        assert fn.calls["n"] == 2

    async def test_cancellation_propagates(self):
        async def slow():
            await asyncio.sleep(10)

        task = asyncio.create_task(RetryExecutor().execute(slow))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


class TestHelpers:
    async def test_execute_with_result_reports_failure(self):
        config = RetryConfig(max_attempts=2, base_delay=0.01)
        result = await RetryExecutor(config).execute_with_result(
            failing(5, NetworkError("connection reset"))
        )

        assert result.success is False
        assert result.attempts == 2
        assert isinstance(result.error, NetworkError)
        assert len(result.history) == 2

    async def test_execute_with_result_reports_success(self):
        result = await RetryExecutor(RETRY_PRESETS["none"]).execute_with_result(failing(0, None))

        assert result.success is True
        assert result.result == "ok"
        assert result.attempts == 1

    async def test_decorator(self):
        calls = {"n": 0}

        @with_retry(RetryConfig(max_attempts=3, base_delay=0.01))
        async def flaky(x):
            calls["n"] += 1
            if calls["n"] < 2:
                raise NetworkError("connection reset")
            return x * 2

        assert await flaky(21) == 42
        assert calls["n"] == 2

    def test_merged_ignores_none(self):
        base = RetryConfig(max_attempts=4, base_delay=0.5)
        merged = base.merged(max_attempts=None, base_delay=0.1)

        assert merged.max_attempts == 4
        assert merged.base_delay == 0.1
