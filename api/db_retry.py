"""
Database retry utilities for handling transient database errors.

Retries with exponential backoff and jitter cover only the database:

SQLite errors:
- "database is locked" - concurrent write contention
- "SQLITE_BUSY" / "SQLITE_LOCKED"

PostgreSQL errors:
- Deadlocks (40P01)
- Serialization failures (40001)
- Dropped connections

External media tools and object storage writes are never retried.
"""

import asyncio
import logging
import random
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2

RETRYABLE_PATTERNS = (
    # SQLite
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
    # PostgreSQL
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
)


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries exhausted."""

    pass


def is_retryable_database_error(exc: BaseException) -> bool:
    """Check if an exception (or the driver exception it wraps) is transient."""
    error_str = str(exc).lower()
    if any(pattern in error_str for pattern in RETRYABLE_PATTERNS):
        return True

    # asyncpg / psycopg expose the SQLSTATE code
    if getattr(exc, "sqlstate", "") in ("40P01", "40001"):
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
    Execute an async function with retry logic for transient database errors.

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
                delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
                # Add jitter (±25%) to prevent thundering herd
                jitter = delay * 0.25 * (2 * random.random() - 1)
                delay = max(0.01, delay + jitter)

                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(f"Database operation failed after {max_retries + 1} attempts: {last_exception}")


async def _timed(coro_factory: Callable, query):
    start_time = time.monotonic()
    result = await coro_factory(query)
    elapsed = time.monotonic() - start_time
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")
    return result


async def fetch_one_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Execute a fetch_one query with retry logic. Returns a single row or None."""
    from api.database import database

    return await execute_with_retry(_timed, database.fetch_one, query, max_retries=max_retries)


async def db_execute_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Execute a write query with retry logic."""
    from api.database import database

    return await execute_with_retry(_timed, database.execute, query, max_retries=max_retries)
