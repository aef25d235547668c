from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

import structlog

from .errors import Unavailable


logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: `attempts` tries, delay doubling up to `max_delay`."""

    attempts: int = 4
    initial_delay: float = 0.2
    multiplier: float = 2.0
    max_delay: float = 5.0

    def __post_init__(self) -> None:
        if self.attempts <= 0:
            raise ValueError("attempts must be > 0")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy = RetryPolicy(),
    retry_on: Tuple[Type[BaseException], ...] = (Unavailable,),
    sleep: Callable[[float], None] = time.sleep,
    operation: Optional[str] = None,
) -> T:
    """
    Call `fn`, retrying only on `retry_on` errors with exponential backoff.

    Any other exception propagates immediately. After the last attempt the
    final retryable error is re-raised unchanged.
    """
    attempt = 0
    delay = policy.initial_delay
    while True:
        try:
            return fn()
        except retry_on as exc:
            attempt += 1
            if attempt >= policy.attempts:
                logger.error("retries_exhausted", operation=operation, attempts=attempt, error=str(exc))
                raise
            logger.warning(
                "retrying_after_transient_error",
                operation=operation,
                attempt=attempt,
                delay=delay,
                error=str(exc),
            )
            sleep(delay)
            delay = min(delay * policy.multiplier, policy.max_delay)


__all__ = ["RetryPolicy", "call_with_retry"]
