"""Bounded exponential backoff for storefront calls.

Every outward call goes through ``retry()``.  Delays follow
``min(base_delay * 2 ** (attempt - 1), max_delay)``.
The observer callback fires between attempts only, never after the last one,
and the final error is re-raised unmodified.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0


def compute_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay to wait after failed attempt number *attempt* (1-based)."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def retry(
    operation: Callable[[], T],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    on_retry: Callable[[int, BaseException], None] | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run *operation* until it succeeds or *max_attempts* are used.

    Args:
        operation: Zero-argument callable to execute.
        max_attempts: Total attempts, including the first one.
        base_delay: Delay in seconds after the first failure.
        max_delay: Upper bound for any single delay.
        on_retry: Called as ``on_retry(failed_attempt, error)`` before each wait.
        retry_on: Exception types that are worth another attempt.  Anything
            else propagates immediately.
        sleep: Injected for tests.

    Returns:
        Whatever *operation* returns on its first successful attempt.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    attempt = 1
    while True:
        try:
            return operation()
        except retry_on as exc:
            if attempt >= max_attempts:
                raise
            delay = compute_delay(attempt, base_delay, max_delay)
            logger.warning(
                "Retry %d/%d for %s (%s: %s), waiting %.1fs",
                attempt,
                max_attempts - 1,
                getattr(operation, "__name__", repr(operation)),
                type(exc).__name__,
                exc,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            sleep(delay)
            attempt += 1

