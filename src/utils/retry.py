"""
Retry decorator with exponential backoff for database operations

Provides resilient retry logic for transient failures with:
- Exponential backoff (base 2.0)
- Optional jitter to prevent thundering herd
- Configurable max retries
- Database-specific exception filtering
- Callback support for metrics integration

Usage:
    from utils.retry import retry_with_backoff

    @retry_with_backoff(max_retries=3, base_delay=1.0)
    def write_batch():
        cursor.executemany(sql, rows)
"""

import logging
import random
import time
from collections.abc import Callable
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt: int,
    base_delay: float,
    exponential_base: float = 2.0,
    max_exponent: int | None = None,
    max_delay: float | None = None,
) -> float:
    """
    Delay before the given 1-based retry attempt.

    Args:
        attempt: Retry attempt number, starting at 1
        base_delay: Delay before the first retry
        exponential_base: Growth factor per attempt
        max_exponent: Cap on the exponent (e.g. 4 caps growth at 16x)
        max_delay: Cap on the resulting delay

    Returns:
        Delay in seconds
    """
    exponent = max(0, attempt - 1)
    if max_exponent is not None:
        exponent = min(exponent, max_exponent)
    delay = base_delay * (exponential_base ** exponent)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
    sleep: Callable[[float], None] | None = None,
):
    """
    Decorator that retries a function with exponential backoff

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 60.0)
        exponential_base: Base for exponential backoff (default: 2.0)
        jitter: Add +/-25% random jitter (default: True)
        retryable_exceptions: Tuple of exception types to retry (default: all exceptions)
        should_retry: Predicate deciding whether an exception is transient
        on_retry: Callback function(attempt, exception, delay) called on each retry
        sleep: Sleep function (default: time.sleep, looked up at call time)

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(
            max_retries=5,
            retryable_exceptions=(ConnectionError, TimeoutError),
            on_retry=lambda attempt, exc, delay: print(f"Retry {attempt}: {exc}")
        )
        def connect_to_database():
            return pyodbc.connect(connection_string)
    """
    def decorator(func: Callable) -> Callable:
        func_name = getattr(func, '__name__', 'function')

        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    retryable = (
                        (retryable_exceptions is None or isinstance(e, retryable_exceptions))
                        and (should_retry is None or should_retry(e))
                    )
                    if not retryable:
                        logger.error(
                            f"Non-retryable exception in {func_name}: {type(e).__name__}: {e}"
                        )
                        raise

                    if attempt == max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded for {func_name}: "
                            f"{type(e).__name__}: {e}"
                        )
                        raise

                    delay = backoff_delay(
                        attempt + 1, base_delay, exponential_base, max_delay=max_delay
                    )
                    if jitter and delay > 0:
                        jitter_amount = delay * 0.25
                        delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

                    logger.warning(
                        f"Attempt {attempt + 1}/{max_retries + 1} failed for {func_name}: "
                        f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s..."
                    )

                    if on_retry:
                        try:
                            on_retry(attempt + 1, e, delay)
                        except Exception as callback_error:
                            logger.error(f"Error in retry callback: {callback_error}")

                    (sleep or time.sleep)(delay)

            raise RuntimeError(f"Unexpected error in retry logic for {func_name}")

        return wrapper
    return decorator


RETRYABLE_PATTERNS = (
    "connection",
    "timeout",
    "deadlock",
    "lock wait timeout",
    "database is locked",
    "lost connection",
    "server has gone away",
    "can't connect",
    "unable to connect",
    "connection refused",
    "connection reset",
    "broken pipe",
    "network error",
    "communication link failure",
    "connection closed",
    "connection terminated",
)

RETRYABLE_TYPE_NAMES = (
    "connectionerror",
    "timeouterror",
    "operationalerror",
    "interfaceerror",
)


def is_retryable_db_exception(exception: Exception) -> bool:
    """
    Determine if a database exception is transient

    Connection, timeout, lock and deadlock errors are retryable; syntax
    errors and constraint violations are not.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    exception_str = str(exception).lower()
    exception_type = type(exception).__name__.lower()

    if exception_type in RETRYABLE_TYPE_NAMES:
        return True

    return any(
        pattern in exception_str or pattern in exception_type
        for pattern in RETRYABLE_PATTERNS
    )


def retry_database_operation(
    max_retries: int = 3,
    base_delay: float = 1.0,
    on_retry: Callable[[int, Exception, float], None] | None = None,
):
    """
    Retry decorator for read-only database operations

    Only retries on transient database errors (connection, timeout, deadlock, etc.)
    Non-retryable errors (syntax errors, constraint violations) fail immediately.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        on_retry: Callback function(attempt, exception, delay) called on each retry
    """
    return retry_with_backoff(
        max_retries=max_retries,
        base_delay=base_delay,
        should_retry=is_retryable_db_exception,
        on_retry=on_retry,
    )
