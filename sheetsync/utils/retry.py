"""
Retry utilities with exponential backoff for spreadsheet API calls.
"""
import asyncio
import functools
import random
from typing import Callable, Optional, Tuple, Type

from sheetsync.utils.logger import log


# Network-level failures worth another attempt
DEFAULT_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
)

RETRYABLE_STATUS_CODES: Tuple[int, ...] = (429, 500, 502, 503, 504)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: bool = True
) -> float:
    """
    Delay before the next attempt.

    Args:
        attempt: Attempt that just failed (1-indexed)
        base_delay: Delay after the first failure, in seconds
        max_delay: Cap before jitter
        jitter: Add 0-25% randomness

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    if jitter:
        delay += delay * random.uniform(0, 0.25)
    return delay


def _status_code(error: Exception) -> Optional[int]:
    # googleapiclient.errors.HttpError carries the response status
    resp = getattr(error, "resp", None)
    status = getattr(resp, "status", None)
    if status is None:
        status = getattr(error, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def is_retryable_error(
    error: Exception,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
) -> bool:
    """True for timeouts, dropped connections, rate limiting and 5xx responses."""
    if isinstance(error, retryable_exceptions):
        return True

    status = _status_code(error)
    if status is not None:
        return status in RETRYABLE_STATUS_CODES

    error_str = str(error).lower()
    if "rate limit" in error_str or "too many requests" in error_str:
        return True
    if "timeout" in error_str or "timed out" in error_str:
        return True
    if "connection" in error_str and ("refused" in error_str or "reset" in error_str or "failed" in error_str):
        return True
    return False


def retry_async(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None
):
    """
    Async decorator retrying transient failures with exponential backoff.

    Non-retryable errors, and the last retryable one, propagate unchanged.

    Usage:
        @retry_async(max_attempts=3)
        async def fetch_values():
            ...
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)
                    if attempt > 1:
                        log.info(f"{func.__name__} succeeded on attempt {attempt}")
                    return result
                except Exception as e:
                    if attempt >= max_attempts or not is_retryable_error(e, retryable_exceptions):
                        log.error(f"{func.__name__} failed after {attempt} attempts: {e}")
                        raise

                    delay = calculate_backoff(attempt, base_delay=base_delay, max_delay=max_delay)
                    log.warning(f"{func.__name__} attempt {attempt} failed: {e}. Retrying in {delay:.1f}s...")
                    if on_retry:
                        on_retry(attempt, e, delay)
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
