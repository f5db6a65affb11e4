"""
RetryExecutor - Bounded retries with exponential backoff and jitter.

Delay before attempt n+1 is ``base_delay * backoff_multiplier ** (n - 1)``,
capped at ``max_delay`` and shifted by up to ``jitter_ratio`` either way.
Errors that classify as non-retryable abort at once.
"""

import asyncio
import functools
import random
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger

from chainfeed.services.errors import is_retryable

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy. Delays are in seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_ratio: float = 0.1
    should_retry: Callable[[BaseException, int], bool] | None = None

    def merged(self, **overrides: Any) -> "RetryConfig":
        """Copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


RETRY_PRESETS: dict[str, RetryConfig] = {
    "standard": RetryConfig(),
    "quick": RetryConfig(max_attempts=2, base_delay=0.5, max_delay=2.0),
    "aggressive": RetryConfig(
        max_attempts=5, base_delay=2.0, max_delay=30.0, backoff_multiplier=1.5
    ),
    "none": RetryConfig(
        max_attempts=1, base_delay=0.0, max_delay=0.0, backoff_multiplier=1.0, jitter=False
    ),
}


@dataclass
class RetryAttempt:
    """One attempt; ``delay`` is the pause taken after it (0 when none followed)."""

    attempt: int
    delay: float
    timestamp: datetime
    error: BaseException | None = None


@dataclass
class RetryResult(Generic[T]):
    success: bool
    attempts: int
    total_time: float
    result: T | None = None
    error: BaseException | None = None
    history: list[RetryAttempt] = field(default_factory=list)


class RetryExecutor:
    """
    Runs a coroutine factory until it succeeds or the policy gives up.

    Usage:
        executor = RetryExecutor(RETRY_PRESETS["quick"])
        data = await executor.execute(lambda: client.get("/ping"))
        for attempt in executor.attempts:
            ...
    """

    def __init__(self, config: RetryConfig | None = None):
        self.config = config or RETRY_PRESETS["standard"]
        self._attempts: list[RetryAttempt] = []

    @property
    def attempts(self) -> list[RetryAttempt]:
        """Attempt history of the most recent ``execute`` call."""
        return list(self._attempts)

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        config: RetryConfig | None = None,
    ) -> T:
        """
        Call ``fn`` with retries.

        Raises:
            The last error once attempts are exhausted, or the first
            error that is not worth retrying.
        """
        cfg = config or self.config
        max_attempts = max(1, cfg.max_attempts)
        self._attempts = []

        for attempt in range(1, max_attempts + 1):
            started = datetime.now()
            try:
                result = await fn()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                record = RetryAttempt(attempt=attempt, delay=0.0, timestamp=started, error=e)
                self._attempts.append(record)

                if attempt >= max_attempts:
                    raise
                if cfg.should_retry is not None and not cfg.should_retry(e, attempt):
                    raise
                if not is_retryable(e):
                    logger.debug(f"Not retrying {type(e).__name__}: {e}")
                    raise

                delay = self.calculate_delay(attempt, cfg)
                record.delay = delay
                logger.debug(
                    f"Attempt {attempt}/{max_attempts} failed ({e}), retrying in {delay:.3f}s"
                )
                await asyncio.sleep(delay)
            else:
                self._attempts.append(
                    RetryAttempt(attempt=attempt, delay=0.0, timestamp=started)
                )
                return result

        raise RuntimeError("retry loop exited without a result")

    async def execute_with_result(
        self,
        fn: Callable[[], Awaitable[T]],
        config: RetryConfig | None = None,
    ) -> RetryResult[T]:
        """Like ``execute`` but reports the outcome instead of raising."""
        start = time.monotonic()
        try:
            result = await self.execute(fn, config)
        except Exception as e:
            return RetryResult(
                success=False,
                attempts=len(self._attempts),
                total_time=time.monotonic() - start,
                error=e,
                history=self.attempts,
            )
        return RetryResult(
            success=True,
            attempts=len(self._attempts),
            total_time=time.monotonic() - start,
            result=result,
            history=self.attempts,
        )

    @staticmethod
    def calculate_delay(attempt: int, config: RetryConfig) -> float:
        delay = config.base_delay * config.backoff_multiplier ** (attempt - 1)
        delay = min(delay, config.max_delay)
        if config.jitter and delay > 0:
            delay += random.uniform(-1.0, 1.0) * delay * config.jitter_ratio
        return max(0.0, delay)


def with_retry(config: RetryConfig | None = None):
    """Decorator form of ``RetryExecutor.execute`` for coroutine functions."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            executor = RetryExecutor(config)
            return await executor.execute(lambda: func(*args, **kwargs))

        return wrapper

    return decorator
