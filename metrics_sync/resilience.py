"""
Resilience patterns for platform API clients.

Provides:
- Exponential backoff retry driven by a retryability predicate
- Token bucket rate limiter
"""
import asyncio
import random
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Optional

from metrics_sync.exceptions import is_retryable
from metrics_sync.observability import get_logger

logger = get_logger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.1  # random jitter factor

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Backoff delay before the attempt following ``attempt``."""
        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )
        if retry_after:
            delay = min(max(delay, float(retry_after)), self.max_delay)
        return delay + delay * self.jitter * random.random()


@dataclass
class RateLimiter:
    """
    Token bucket rate limiter.

    Args:
        rate: Requests per second
        burst: Maximum burst size
    """
    rate: float = 10.0
    burst: int = 20
    tokens: float = field(default=0, init=False)
    last_update: float = field(default=0, init=False)

    def __post_init__(self):
        self.tokens = float(self.burst)
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

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


async def retry_with_backoff(
    func: Callable[..., Any],
    *args,
    config: Optional[RetryConfig] = None,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    label: str = "request",
    **kwargs
) -> Any:
    """
    Execute an async function with exponential backoff retry.

    Only exceptions for which ``should_retry`` returns True are retried;
    everything else propagates on the first failure.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        config: Retry configuration
        should_retry: Retryability predicate
        label: Operation name used in log lines (e.g. "stripe GET invoices")
        **kwargs: Keyword arguments for func

    Returns:
        Result of func

    Raises:
        The last exception if all attempts fail or it is not retryable
    """
    config = config or RetryConfig()

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not should_retry(e):
                raise

            if attempt == config.max_attempts:
                logger.error(
                    f"{label}: giving up after {config.max_attempts} attempts",
                    extra={"operation": label, "error": str(e)}
                )
                raise

            delay = config.delay_for(attempt, getattr(e, "retry_after", None))
            logger.warning(
                f"{label}: attempt {attempt} failed, retrying in {delay:.2f}s",
                extra={"operation": label, "attempt": attempt, "delay": round(delay, 2), "error": str(e)}
            )
            await asyncio.sleep(delay)


def with_retry(
    config: Optional[RetryConfig] = None,
    should_retry: Callable[[BaseException], bool] = is_retryable,
):
    """
    Decorator for adding retry logic to async functions.

    Usage:
        @with_retry(RetryConfig(max_attempts=3))
        async def download_report():
            ...
    """
    config = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_with_backoff(
                func, *args,
                config=config,
                should_retry=should_retry,
                label=func.__qualname__,
                **kwargs
            )
        return wrapper
    return decorator
