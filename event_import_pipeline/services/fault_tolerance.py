"""
Retry mechanisms for outbound I/O.

Provides the retry policy and exponential-backoff loop used when fetching
remote import sources. Errors flagged as non-retryable are raised at once.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..core.exceptions import FetchError, NonRetryableError
from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_retries: int = 3
    initial_delay: float = 6.0
    max_delay: float = 300.0
    exponential_base: float = 2.0
    jitter: bool = False

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after failed ``attempt`` (1-based)."""
        delay = min(self.initial_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


def is_retryable(error: Exception) -> bool:
    """Decide whether another attempt could succeed."""
    if isinstance(error, NonRetryableError):
        return False
    if isinstance(error, FetchError):
        return error.retryable
    return True


async def execute_with_retry(
    func: Callable[[int], Awaitable[Any]],
    policy: Optional[RetryPolicy] = None,
    operation: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Run ``func(attempt)`` until it succeeds or attempts run out.

    Args:
        func: Coroutine function receiving the 1-based attempt number
        policy: Retry policy, defaults to ``RetryPolicy()``
        operation: Label used in log records
        sleep: Awaitable sleep, injectable for tests

    Returns:
        The result of the first successful attempt

    Raises:
        The last error once attempts are exhausted, or any non-retryable error
    """
    policy = policy or RetryPolicy()
    last_error: Optional[Exception] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func(attempt)
        except Exception as e:
            last_error = e
            retryable = is_retryable(e)
            will_retry = retryable and attempt < policy.max_attempts
            delay = policy.delay_for(attempt) if will_retry else None

            logger.warning(f"{operation} attempt {attempt} failed", extra={
                "operation": operation,
                "attempt": attempt,
                "max_attempts": policy.max_attempts,
                "error": str(e),
                "retryable": retryable,
                "next_retry_in": delay
            })

            if not will_retry:
                raise
            await sleep(delay)

    raise last_error
