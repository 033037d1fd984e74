"""
Application entrypoint: database pool, Redis and realtime hub lifecycle.
"""

import asyncio
import time
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.jobs.call_reaper_job import run_call_reaper_loop, run_presence_heartbeat_loop
from app.middleware.rate_limit_headers import RateLimitHeadersMiddleware
from app.middleware.request_context import RequestContextMiddleware
from app.realtime.connection_manager import ConnectionManager
from app.realtime.hub import RealtimeHub
from app.realtime.registries import build_registries
from app.routes import admin, health, notifications, realtime
from app.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
logger = get_logger(__name__)


def build_realtime_hub() -> RealtimeHub:
    presence, calls = build_registries()
    return RealtimeHub(ConnectionManager(), presence, calls)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    # Startup sequence
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []

    try:
        # Initialize database pool first
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        # Redis only backs the limiter and registries when configured to
        if fast_redis.required:
            logger.info("Initializing Redis connection")
            await fast_redis.initialize()
            startup_tasks.append("redis")

        app.state.realtime_hub = build_realtime_hub()
        startup_tasks.append("realtime_hub")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        # Clean up any successfully initialized services in reverse order
        if "redis" in startup_tasks:
            try:
                await fast_redis.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up Redis", error=str(cleanup_error))

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    # In-memory registries are only visible to this process, so reap here;
    # shared Redis presence needs this process to heartbeat its sockets
    background_tasks = []
    if settings.REALTIME_REGISTRY_BACKEND.strip().lower() == "memory":
        background_tasks.append(asyncio.create_task(run_call_reaper_loop(app.state.realtime_hub)))
    else:
        background_tasks.append(asyncio.create_task(run_presence_heartbeat_loop(app.state.realtime_hub)))

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")

    for task in background_tasks:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    shutdown_errors = []

    # Close Redis first (faster)
    try:
        logger.info("Closing Redis connection")
        await fast_redis.close()
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))
        shutdown_errors.append(f"Redis: {e}")

    # Close database pool last (may have active connections)
    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Astrotalk Realtime",
    description="Realtime sessions, notification dispatch and rate limiting",
    version="0.1.0",
    lifespan=lifespan,
)

# Last added runs first: request context must exist before rate limit headers are read
app.add_middleware(RateLimitHeadersMiddleware)
app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(notifications.router)
app.include_router(admin.router)
app.include_router(realtime.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
