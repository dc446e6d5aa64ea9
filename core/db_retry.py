"""
Retry helpers for transient record-store errors.

Several workers write to the same tables at once (field-scoped updates on
different rows, plus the queue claim and completion flips that run inside a
transaction). Those can collide on lock contention; the operation is simply
retried with exponential backoff and jitter.

SQLite: "database is locked", SQLITE_BUSY / SQLITE_LOCKED
PostgreSQL: deadlock (40P01), serialization failure (40001), lock timeouts,
dropped connections
"""

import asyncio
import functools
import logging
import random
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2

_RETRYABLE_PATTERNS = (
    # SQLite
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
    # PostgreSQL
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "canceling statement due to lock timeout",
    "lock timeout",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
)


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries exhausted."""


def is_retryable_database_error(exc: BaseException) -> bool:
    """Check whether an exception (or its cause) is a transient database error."""
    error_str = str(exc).lower()
    if any(pattern in error_str for pattern in _RETRYABLE_PATTERNS):
        return True

    # asyncpg and psycopg2 expose SQLSTATE codes
    if getattr(exc, "sqlstate", None) in ("40P01", "40001"):
        return True

    # The databases library wraps driver exceptions
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


async def execute_with_retry(
    func: Callable,
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Execute an async function, retrying transient database errors.

    Raises:
        DatabaseRetryableError: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise

            last_exception = e

            if attempt < max_retries:
                delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
                # ±25% jitter so competing workers don't retry in lockstep
                jitter = delay * 0.25 * (2 * random.random() - 1)
                delay = max(0.01, delay + jitter)

                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(f"Database operation failed after {max_retries + 1} attempts: {last_exception}")


def with_db_retry(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
):
    """
    Decorator to add database retry logic to async functions and methods.

    Usage:
        @with_db_retry()
        async def my_database_operation():
            ...

    The call is bound with functools.partial first, so the wrapped function may
    take keywords that share a name with the retry settings (max_retries).
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await execute_with_retry(
                functools.partial(func, *args, **kwargs),
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=max_delay,
            )

        return wrapper

    return decorator
