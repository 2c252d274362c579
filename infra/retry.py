"""Bounded retry for coroutine operations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_attempts counts the first try. backoff=1.0 gives a fixed delay,
    backoff=2.0 doubles it after every failed attempt (capped at max_delay_seconds).
    """
    max_attempts: int = 3
    delay_seconds: float = 1.5
    backoff: float = 1.0
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_seconds < 0 or self.backoff < 1.0:
            raise ValueError("delay must be >= 0 and backoff >= 1.0")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        return min(self.max_delay_seconds, self.delay_seconds * (self.backoff ** attempt))


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    classifier: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """
    Run operation until it succeeds, a terminal error is raised, or attempts run out.

    Terminal errors (classifier returns False) propagate immediately. When all
    attempts fail the last retryable error is re-raised.
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except Exception as exc:
            if not classifier(exc):
                raise
            last_exception = exc
            logger.warning(
                f"{description} failed ({type(exc).__name__}: {exc}), "
                f"attempt {attempt + 1}/{policy.max_attempts}"
            )

        if attempt < policy.max_attempts - 1:
            delay = policy.delay_for(attempt)
            logger.debug(f"Retrying {description} in {delay:.2f}s")
            await sleep(delay)

    logger.error(f"All {policy.max_attempts} attempts exhausted for {description}")
    assert last_exception is not None
    raise last_exception
