"""
Query helpers used by the repositories.

Each helper takes an optional `connection` so a repository can run
several of them inside one `db_pool.transaction()`; without it a pooled
autocommit connection is borrowed for the single statement.
psycopg errors are re-raised as DatabaseError with the failing operation.
"""

import asyncio
import functools
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@asynccontextmanager
async def _borrow(connection: psycopg.AsyncConnection | None) -> AsyncGenerator[psycopg.AsyncConnection, None]:
    if connection is not None:
        yield connection
        return
    async with db_pool.connection() as conn:
        yield conn


def _failed(operation: str, query, e: psycopg.Error) -> DatabaseError:
    logger.error(
        "Database query failed",
        operation=operation,
        query=" ".join(str(query).split())[:100],
        error=str(e),
    )
    return DatabaseError(f"Query failed: {e}", operation=operation)


async def fetch_one(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    try:
        async with _borrow(connection) as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchone()
    except psycopg.Error as e:
        raise _failed("fetch_one", query, e) from e


async def fetch_all(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    try:
        async with _borrow(connection) as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchall()
    except psycopg.Error as e:
        raise _failed("fetch_all", query, e) from e


async def fetch_val(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> Any:
    """First column of the first row, e.g. a COUNT(*)."""
    row = await fetch_one(query, params, connection=connection)
    return next(iter(row.values())) if row else None


async def execute_query(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """Run a write; returns the affected row count."""
    try:
        async with _borrow(connection) as conn:
            cur = await conn.execute(query, params)
            return cur.rowcount
    except psycopg.Error as e:
        raise _failed("execute", query, e) from e


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Retry a repository coroutine on connection-level failures only
    (psycopg.OperationalError, directly or wrapped in DatabaseError),
    with exponential backoff. Constraint violations and bad SQL raise at once.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except (psycopg.OperationalError, DatabaseError) as e:
                    cause = e.__cause__ if isinstance(e, DatabaseError) else e
                    if not isinstance(cause, psycopg.OperationalError):
                        raise
                    if attempt == max_retries:
                        logger.error(
                            "Database operation failed after all retries",
                            operation=func.__name__,
                            attempts=max_retries + 1,
                            error=str(e),
                        )
                        raise DatabaseError(
                            f"Operation failed after {max_retries} retries: {e}",
                            operation=func.__name__,
                            recoverable=False,
                        ) from e

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Database operation failed, retrying",
                        operation=func.__name__,
                        attempt=attempt + 1,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
