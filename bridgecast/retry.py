"""Bounded retry with exponential backoff for async operations.

One combinator serves both the cache read sweep (constant delay, multiplier
1.0) and the orchestrator's transfer loop (exponential, multiplier 2.0)::

    policy = RetryPolicy(max_attempts=3, base_delay=1.0, backoff_multiplier=2.0)
    entry = await retry_with_backoff(attempt, policy, retry_on=(TransportError,))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger("bridgecast.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for one bounded loop.

    Attributes:
        max_attempts:       Total attempts including the first one (>= 1).
        base_delay:         Seconds; scaled by the multiplier per failed attempt.
        backoff_multiplier: 1.0 for a constant delay, 2.0 for doubling.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")

    def delay_after(self, attempt: int) -> float:
        """Return the sleep before the next attempt, given the 1-based attempt that failed."""
        return self.base_delay * (self.backoff_multiplier ** attempt)

    @classmethod
    def constant(cls, max_attempts: int, delay: float) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, base_delay=delay, backoff_multiplier=1.0)


async def retry_with_backoff(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    log: logging.Logger | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``policy.max_attempts`` is reached.

    Args:
        operation:      Async callable receiving the 1-based attempt number.
        policy:         Attempt count and delay schedule.
        retry_on:       Exception types that trigger another attempt. Anything
                        else propagates immediately.
        operation_name: Name for log lines.
        sleep:          Awaitable sleep, injectable for tests.
        log:            Logger to use instead of the module logger.

    Returns:
        The operation's result.

    Raises:
        The last retryable exception once attempts are exhausted.
    """
    log = log or logger
    last_exc: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await operation(attempt)
        except retry_on as exc:
            last_exc = exc
            log.warning(
                "%s failed on attempt %d/%d: %s",
                operation_name, attempt, policy.max_attempts, exc,
            )
            if attempt < policy.max_attempts:
                delay = policy.delay_after(attempt)
                log.debug("%s: backing off %.3fs before retry", operation_name, delay)
                await sleep(delay)
            continue

        if attempt > 1:
            log.info("%s succeeded after %d attempts", operation_name, attempt)
        return result

    log.error("%s exhausted all %d attempts", operation_name, policy.max_attempts)
    if last_exc is None:
        raise RuntimeError(f"{operation_name} ran no attempts")
    raise last_exc
