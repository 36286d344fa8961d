"""
Database retry utilities for handling transient database errors.

Retries use exponential backoff with jitter and cover both backends:

SQLite errors:
- "database is locked" - concurrent write contention
- "SQLITE_BUSY" / "SQLITE_LOCKED" - database busy states

PostgreSQL errors:
- Deadlocks (40P01)
- Serialization failures (40001)
- Connection errors
- "could not obtain lock" - lock contention
"""

import asyncio
import functools
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

# Queries slower than this are logged with their (truncated) SQL
SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2

SQLITE_PATTERNS = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
)

POSTGRES_PATTERNS = (
    "deadlock detected",  # 40P01
    "could not serialize access",  # 40001
    "could not obtain lock",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
    "canceling statement due to lock timeout",
    "lock timeout",
)


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries are exhausted."""

    pass


def is_retryable_database_error(exc: Exception) -> bool:
    """
    Check if an exception is a transient database error worth retrying.

    Inspects the message, the PostgreSQL sqlstate when the driver exposes one,
    and the wrapped cause (the databases library wraps driver exceptions).
    """
    error_str = str(exc).lower()

    if any(pattern in error_str for pattern in SQLITE_PATTERNS):
        return True
    if any(pattern in error_str for pattern in POSTGRES_PATTERNS):
        return True

    if getattr(exc, "sqlstate", None) in ("40P01", "40001"):
        return True

    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


def _backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
    # Jitter (±25%) keeps concurrent retries from re-colliding
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(0.01, delay + jitter)


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Execute an async function with retry logic for transient database errors.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        **kwargs: Keyword arguments for func

    Returns:
        Result of the function

    Raises:
        DatabaseRetryableError: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise

            last_exception = e

            if attempt < max_retries:
                delay = _backoff_delay(attempt, base_delay, max_delay)
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
    Decorator to add database retry logic to async functions.

    Usage:
        @with_db_retry()
        async def replace_tags(video_id, tag_ids):
            async with database.transaction():
                ...

    Only decorate functions that own their transaction; retrying a statement
    inside somebody else's transaction would replay half of it.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await execute_with_retry(
                func,
                *args,
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=max_delay,
                **kwargs,
            )

        return wrapper

    return decorator


async def _timed(label: str, query, call: Callable[[], Awaitable[Any]]) -> Any:
    start_time = time.monotonic()
    result = await call()
    elapsed = time.monotonic() - start_time
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow {label} ({elapsed:.2f}s): {str(query)[:500]}")
    return result


# =============================================================================
# Database Operation Wrappers
# =============================================================================


async def fetch_one_with_retry(
    query,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
):
    """
    Execute a fetch_one query with retry logic for transient database errors.

    Returns the single row or None.

    Raises:
        DatabaseUnavailableError: If no database is configured or connected
        DatabaseRetryableError: If all retries are exhausted
    """
    from api.database import require_database

    database = require_database()
    return await execute_with_retry(
        _timed,
        "query",
        query,
        lambda: database.fetch_one(query),
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
    )


async def fetch_all_with_retry(
    query,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
):
    """
    Execute a fetch_all query with retry logic for transient database errors.

    Returns the list of rows.
    """
    from api.database import require_database

    database = require_database()
    return await execute_with_retry(
        _timed,
        "query",
        query,
        lambda: database.fetch_all(query),
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
    )


async def fetch_val_with_retry(
    query,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
):
    """Execute a fetch_val query with retry logic. Returns a single scalar or None."""
    from api.database import require_database

    database = require_database()
    return await execute_with_retry(
        _timed,
        "query",
        query,
        lambda: database.fetch_val(query),
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
    )


async def db_execute_with_retry(
    query,
    values=None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
):
    """
    Execute a database write query with retry logic for transient database errors.

    Returns the driver result (the row id for inserts on most backends).
    """
    from api.database import require_database

    database = require_database()
    if values is not None:
        call = lambda: database.execute(query, values)  # noqa: E731
    else:
        call = lambda: database.execute(query)  # noqa: E731
    return await execute_with_retry(
        _timed,
        "write",
        query,
        call,
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
    )
