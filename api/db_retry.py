"""
Database retry utilities for handling transient database errors.

Supports both SQLite and PostgreSQL backends:

SQLite errors:
- "database is locked" - concurrent write contention (votes arrive in bursts)
- "SQLITE_BUSY" / "SQLITE_LOCKED" - database busy states

PostgreSQL errors:
- Deadlocks (40P01)
- Serialization failures (40001)
- Dropped or refused connections
"""

import asyncio
import functools
import logging
import random
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

# Queries slower than this are logged with their SQL
SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2

_SQLITE_PATTERNS = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
)

_POSTGRES_PATTERNS = (
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
    """Raised when a database operation fails after all retries exhausted."""

    pass


def is_retryable_database_error(exc: BaseException) -> bool:
    """
    Check if an exception is a retryable database error.

    The databases library wraps driver exceptions, so the cause chain is
    inspected as well.
    """
    error_str = str(exc).lower()

    if any(pattern in error_str for pattern in _SQLITE_PATTERNS):
        return True
    if any(pattern in error_str for pattern in _POSTGRES_PATTERNS):
        return True

    # asyncpg and psycopg2 expose SQLSTATE codes
    if getattr(exc, "sqlstate", "") in ("40P01", "40001"):
        return True

    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


def _backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
    # ±25% jitter so concurrent voters don't retry in lockstep
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(0.01, delay + jitter)


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

    Uses exponential backoff with jitter to reduce contention.

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
        async def cast_vote(...):
            ...
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


# =============================================================================
# Database Operation Wrappers
# =============================================================================


async def _run_timed(method: str, query, *extra):
    """Run one `databases` call and log it when it is slow."""
    from api.database import database

    start_time = time.monotonic()
    result = await getattr(database, method)(query, *extra)
    elapsed = time.monotonic() - start_time
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")
    return result


async def fetch_one_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Execute a fetch_one query, retrying transient errors. Returns a row or None."""
    return await execute_with_retry(_run_timed, "fetch_one", query, max_retries=max_retries)


async def fetch_all_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Execute a fetch_all query, retrying transient errors. Returns a list of rows."""
    return await execute_with_retry(_run_timed, "fetch_all", query, max_retries=max_retries)


async def fetch_val_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Execute a fetch_val query, retrying transient errors. Returns a scalar or None."""
    return await execute_with_retry(_run_timed, "fetch_val", query, max_retries=max_retries)


async def db_execute_with_retry(query, values=None, max_retries: int = DEFAULT_MAX_RETRIES):
    """
    Execute a write query, retrying transient errors.

    Returns the driver result (typically the row id for inserts).
    """
    if values is not None:
        return await execute_with_retry(_run_timed, "execute", query, values, max_retries=max_retries)
    return await execute_with_retry(_run_timed, "execute", query, max_retries=max_retries)
