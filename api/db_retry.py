"""
Database retry utilities for handling transient database errors.

This module provides retry logic with exponential backoff to handle transient
errors gracefully, supporting both SQLite and PostgreSQL backends:

SQLite errors:
- "database is locked" - concurrent write contention
- "SQLITE_BUSY" / "SQLITE_LOCKED" - database busy states

PostgreSQL errors:
- Deadlocks (40P01)
- Serialization failures (40001)
- Connection errors
- "could not obtain lock" - lock contention

Webhook ingestion, the poller and the retry engine all write to the same rows
concurrently, so every job store query goes through these wrappers.
"""

import asyncio
import functools
import logging
import random
import time
from typing import Callable, Optional, TypeVar

from api.metrics import DB_QUERY_DURATION_SECONDS, DB_QUERY_RETRIES_TOTAL
from config import (
    DB_RETRY_BASE_DELAY,
    DB_RETRY_MAX_ATTEMPTS,
    DB_RETRY_MAX_DELAY,
    SLOW_QUERY_THRESHOLD,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = DB_RETRY_MAX_ATTEMPTS
DEFAULT_BASE_DELAY = DB_RETRY_BASE_DELAY
DEFAULT_MAX_DELAY = DB_RETRY_MAX_DELAY
DEFAULT_EXPONENTIAL_BASE = 2


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries exhausted."""

    pass


def is_retryable_database_error(exc: Exception) -> bool:
    """
    Check if an exception is a retryable database error.

    Supports both SQLite and PostgreSQL error patterns.
    """
    error_str = str(exc).lower()

    sqlite_patterns = [
        "database is locked",
        "database table is locked",
        "sqlite_busy",
        "sqlite_locked",
    ]

    postgres_patterns = [
        "deadlock detected",  # 40P01
        "could not serialize access",  # 40001 serialization failure
        "could not obtain lock",
        "connection refused",
        "connection reset",
        "server closed the connection unexpectedly",
        "canceling statement due to lock timeout",
        "lock timeout",
    ]

    for pattern in sqlite_patterns + postgres_patterns:
        if pattern in error_str:
            return True

    # asyncpg exposes the SQLSTATE on the exception
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate in ("40P01", "40001"):
        return True

    # The databases library wraps the underlying driver exception
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
                delay = min(
                    base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt),
                    max_delay,
                )
                # Add jitter (±25%) to prevent thundering herd
                jitter = delay * 0.25 * (2 * random.random() - 1)
                delay = max(0.01, delay + jitter)

                DB_QUERY_RETRIES_TOTAL.inc()
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
        async def my_database_operation():
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


def _resolve(db):
    if db is not None:
        return db
    from api.database import database

    return database


async def _timed(operation: str, call, query):
    start_time = time.monotonic()
    result = await call
    elapsed = time.monotonic() - start_time
    DB_QUERY_DURATION_SECONDS.labels(operation=operation).observe(elapsed)
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")
    return result


async def fetch_one_with_retry(query, db=None, max_retries: int = DEFAULT_MAX_RETRIES):
    """Run `fetch_one` with retry on transient errors. Returns a row or None."""
    db = _resolve(db)

    async def _fetch():
        return await _timed("fetch_one", db.fetch_one(query), query)

    return await execute_with_retry(_fetch, max_retries=max_retries)


async def fetch_all_with_retry(query, db=None, max_retries: int = DEFAULT_MAX_RETRIES):
    """Run `fetch_all` with retry on transient errors."""
    db = _resolve(db)

    async def _fetch():
        return await _timed("fetch_all", db.fetch_all(query), query)

    return await execute_with_retry(_fetch, max_retries=max_retries)


async def fetch_val_with_retry(query, db=None, max_retries: int = DEFAULT_MAX_RETRIES):
    """Run `fetch_val` with retry on transient errors."""
    db = _resolve(db)

    async def _fetch():
        return await _timed("fetch_val", db.fetch_val(query), query)

    return await execute_with_retry(_fetch, max_retries=max_retries)


async def db_execute_with_retry(query, values=None, db=None, max_retries: int = DEFAULT_MAX_RETRIES):
    """
    Execute a write query with retry on transient errors.

    Returns:
        The driver result (typically the row ID for inserts)
    """
    db = _resolve(db)

    async def _execute():
        if values is not None:
            return await _timed("execute", db.execute(query, values), query)
        return await _timed("execute", db.execute(query), query)

    return await execute_with_retry(_execute, max_retries=max_retries)
