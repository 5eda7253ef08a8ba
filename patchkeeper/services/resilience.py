"""
Resilience patterns for maintenance runs.

Provides a retry decorator for transient store/catalog failures and a
bounded polling helper for wait-and-recheck loops.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


# -----------------------------------------------------------------------------
# Retry Decorator
# -----------------------------------------------------------------------------


def with_sync_retry(
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 30.0,
    retry_exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable:
    """
    Decorator for sync functions with exponential backoff retry.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        retry_exceptions: Tuple of exception types to retry on

    Usage:
        @with_sync_retry(max_attempts=3, retry_exceptions=(StoreError,))
        def list_rows() -> list[dict]:
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            last_exception: Exception | None = None

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except retry_exceptions as e:
                    last_exception = e
                    if attempt == max_attempts:
                        logger.error(f"{func.__name__} failed after {max_attempts} attempts: {e}")
                        raise

                    wait_time = min(min_wait * (2 ** (attempt - 1)), max_wait)
                    logger.warning(f"{func.__name__} attempt {attempt} failed: {e}. Retrying in {wait_time:.1f}s...")
                    time.sleep(wait_time)

            if last_exception:
                raise last_exception
            raise RuntimeError(f"{func.__name__} failed without exception")

        return wrapper

    return decorator


# -----------------------------------------------------------------------------
# Bounded Polling
# -----------------------------------------------------------------------------


@dataclass
class PollResult:
    """Outcome of a bounded poll."""

    satisfied: bool
    attempts: int
    elapsed_seconds: float

    @property
    def timed_out(self) -> bool:
        return not self.satisfied


def poll_until(
    predicate: Callable[[], bool],
    interval_seconds: float,
    max_attempts: int,
    description: str = "condition",
    sleep: Callable[[float], Any] = time.sleep,
) -> PollResult:
    """
    Re-check predicate until it holds or max_attempts is reached.

    Never loops unbounded: the caller gets a timed-out result instead.
    """
    start = time.time()
    for attempt in range(1, max_attempts + 1):
        if predicate():
            return PollResult(satisfied=True, attempts=attempt, elapsed_seconds=time.time() - start)
        if attempt < max_attempts:
            logger.info(f"Waiting for {description} (attempt {attempt}/{max_attempts})")
            sleep(interval_seconds)

    logger.warning(f"Gave up waiting for {description} after {max_attempts} attempts")
    return PollResult(satisfied=False, attempts=max_attempts, elapsed_seconds=time.time() - start)
