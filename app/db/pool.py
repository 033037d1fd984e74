"""
PostgreSQL connection pool (psycopg_pool) for notifications, chat/call
sessions and user rows.

One pool per process, opened from the API lifespan or the worker and
shared by every repository through `connection()` / `transaction()`.
Connections are autocommit; multi-statement writes such as a chat message
plus its session counters go through `transaction()`.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Above this share of busy connections the pool reports unhealthy
UNHEALTHY_UTILIZATION_PERCENT = 90


class DatabasePoolManager:
    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._closed = False

    @property
    def is_ready(self) -> bool:
        return self.pool is not None and not self._closed

    async def initialize(self) -> None:
        if self.pool is not None:
            logger.warning("Database pool already initialized")
            return
        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        pool_config = settings.get_db_pool_config()
        pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )

        try:
            await pool.open(wait=True)
            await self._probe(pool)
        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            await pool.close()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        self.pool = pool
        logger.info(
            "Database pool initialized",
            min_size=pool_config["min_size"],
            max_size=pool_config["max_size"],
            timeout=pool_config["timeout"],
        )

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(
                sql.Literal(f"astrotalk-realtime-{settings.environment}")
            )
        )
        # Billing and presence timestamps are all UTC
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(sql.Literal(f"{settings.DB_STATEMENT_TIMEOUT_MS}ms"))
        )

    @staticmethod
    async def _probe(pool: AsyncConnectionPool) -> float:
        """Round-trip one query; returns latency in ms."""
        start = time.perf_counter()
        async with pool.connection() as conn:
            cur = await conn.execute("SELECT 1 AS ok")
            row = await cur.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database probe returned an unexpected result")
        return (time.perf_counter() - start) * 1000

    async def close(self) -> None:
        if self.pool is None or self._closed:
            return

        self._closed = True
        try:
            await asyncio.wait_for(self.pool.close(), timeout=30.0)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")
        finally:
            self.pool = None

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Usage:
            async with db_pool.connection() as conn:
                cur = await conn.execute("SELECT 1")
        """
        if not self.is_ready:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Connection with commit on success and rollback on exception."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    def stats(self) -> dict[str, Any]:
        """Pool counters; empty when the pool is not open."""
        if not self.is_ready:
            return {}

        raw = self.pool.get_stats()
        pool_size = raw.get("pool_size", 0)
        pool_available = raw.get("pool_available", 0)
        in_use = pool_size - pool_available
        return {
            "pool_size": pool_size,
            "pool_available": pool_available,
            "pool_in_use": in_use,
            "pool_utilization_percent": round(in_use / pool_size * 100, 1) if pool_size else 0,
            "requests_waiting": raw.get("requests_waiting", 0),
            "requests_total": raw.get("requests_num", 0),
            "requests_errors": raw.get("requests_errors", 0),
        }

    async def health_check(self) -> dict[str, Any]:
        if not self.is_ready:
            return {"healthy": False, "error": "Pool not initialized", "service": "database_pool"}

        try:
            latency_ms = await self._probe(self.pool)
        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        stats = self.stats()
        health = {
            "healthy": stats["pool_utilization_percent"] < UNHEALTHY_UTILIZATION_PERCENT,
            "service": "database_pool",
            "connection_time_ms": round(latency_ms, 2),
            "pool_stats": stats,
        }
        if stats["requests_waiting"]:
            health["warnings"] = [f"Requests waiting for connections: {stats['requests_waiting']}"]
        return health


# Global pool instance
db_pool = DatabasePoolManager()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
