"""
Retry logic with exponential backoff for handling transient failures.

SQLite serializes writers with a file lock; a writer that loses the race
sees "database is locked" even after the busy timeout. Those failures are
transient and worth retrying, everything else is not.
"""

import time
import functools
from typing import Callable, Type, Tuple, Optional


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable] = None,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation (delay *= base)
        exceptions: Tuple of exceptions to catch and retry
        should_retry: Optional predicate; caught exceptions it rejects are re-raised at once
        on_retry: Optional callback function(attempt, exception, delay)

    Example:
        @exponential_backoff(max_retries=3, exceptions=(OperationalError,),
                             should_retry=is_transient_error)
        def write(conn, rows):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delay = base_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if should_retry is not None and not should_retry(e):
                        raise

                    # Don't sleep after the last attempt
                    if attempt < max_retries:
                        current_delay = min(delay, max_delay)

                        if on_retry:
                            on_retry(attempt + 1, e, current_delay)

                        time.sleep(current_delay)
                        delay *= exponential_base
                    else:
                        raise RetryError(
                            f"Failed after {max_retries + 1} attempts: {str(e)}"
                        ) from e

        return wrapper
    return decorator


def is_transient_error(exception: Exception) -> bool:
    """
    Determine if a storage exception is likely transient and should be retried.

    Args:
        exception: Exception to check

    Returns:
        True if the error looks like lock contention
    """
    error_str = str(exception).lower()

    transient_keywords = [
        'database is locked',
        'database table is locked',
        'database is busy',
        'sqlite_busy',
    ]

    return any(keyword in error_str for keyword in transient_keywords)
