"""
Resilience patterns for the remote order API.

Provides:
- Exponential backoff retry that honours an explicit retry-after
- Token bucket rate limiter
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from ordersync.exceptions import GatewayError
from ordersync.observability import get_logger

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]
AttemptCallback = Callable[[int, int], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour for one batch of remote calls."""

    max_attempts: int = 3
    base_delay: float = 5.0  # seconds
    multiplier: float = 2.0

    def delay_for(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """
        Wait before the attempt following ``attempt`` (1-based).

        A rate-limited error carrying an explicit retry-after wins over the
        exponential schedule: 5s, 10s, 20s with the defaults.
        """
        if isinstance(error, GatewayError):
            retry_after = error.retry_after_seconds
            if retry_after is not None:
                return float(retry_after)
        return self.base_delay * (self.multiplier ** (attempt - 1))


async def retry_with_backoff(
    func: Callable[[], Awaitable[Any]],
    policy: Optional[RetryPolicy] = None,
    sleep: SleepFunc = asyncio.sleep,
    on_attempt: Optional[AttemptCallback] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Any:
    """
    Execute ``func`` with exponential backoff retry.

    Only ``GatewayError`` instances that report ``is_retryable`` are retried.
    Non-retryable gateway errors and unclassified exceptions propagate
    immediately; after the final attempt the last error propagates.

    Args:
        func: Zero-argument coroutine function to execute
        policy: Retry policy (defaults: 3 attempts, 5s base, x2)
        sleep: Awaitable sleep, injectable for tests
        on_attempt: Called with (attempt, max_attempts) before each attempt
        context: Extra fields for the log lines (batch number, ids...)
    """
    policy = policy or RetryPolicy()
    context = context or {}

    for attempt in range(1, policy.max_attempts + 1):
        if on_attempt is not None:
            await on_attempt(attempt, policy.max_attempts)
        try:
            return await func()
        except GatewayError as e:
            if not e.is_retryable:
                logger.error(
                    f"Non-retryable gateway error: {e}",
                    extra={**context, **e.to_dict(), "attempt": attempt},
                )
                raise

            if attempt == policy.max_attempts:
                logger.error(
                    f"All {policy.max_attempts} attempts failed",
                    extra={**context, **e.to_dict(), "attempt": attempt},
                )
                raise

            delay = policy.delay_for(attempt, e)
            logger.warning(
                f"Attempt {attempt} failed, retrying in {delay:.0f}s",
                extra={**context, **e.to_dict(), "attempt": attempt, "delay": delay},
            )
            await sleep(delay)
        except Exception as e:
            logger.error(
                f"Unexpected error, not retrying: {e}",
                extra={**context, "attempt": attempt, "error_class": type(e).__name__},
            )
            raise


@dataclass
class RateLimiter:
    """
    Token bucket rate limiter.

    Args:
        rate: Tokens replenished per second
        burst: Maximum burst size
    """

    rate: float = 2.5
    burst: int = 10
    tokens: float = field(default=0, init=False)
    last_update: float = field(default=0, init=False)

    def __post_init__(self):
        self.tokens = float(self.burst)
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    @classmethod
    def per_minute(cls, requests_per_minute: int, burst: int = 10) -> "RateLimiter":
        return cls(rate=requests_per_minute / 60.0, burst=burst)

    async def acquire(self, timeout: float = 60.0) -> bool:
        """
        Acquire a token, waiting if necessary.

        Returns:
            True if token acquired, False if timeout
        """
        start_time = time.monotonic()

        while True:
            async with self._lock:
                now = time.monotonic()
                elapsed = now - self.last_update
                self.tokens = min(self.burst, self.tokens + elapsed * self.rate)
                self.last_update = now

                if self.tokens >= 1:
                    self.tokens -= 1
                    return True

                wait_time = (1 - self.tokens) / self.rate

            if time.monotonic() - start_time >= timeout:
                return False

            await asyncio.sleep(min(wait_time, 0.5))
