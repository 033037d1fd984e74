"""
Call reaper: resolves calls that no socket will ever finish.

A disconnect never touches calls, so a call can be left `ringing` (nobody
answered, caller went away) or `active` (both sockets dropped without
`end_call`). Each cycle runs `RealtimeHub.reap_stale_calls`:
- ringing past CALL_RING_TIMEOUT_SECONDS -> rejected
- active with both participants offline for CALL_DISCONNECT_GRACE_SECONDS
  -> completed and billed

With the in-memory registries the loop runs inside the API process
(started from the lifespan). With Redis registries it can also run as a
separate worker: `python -m app.jobs.worker call_reaper`. Each cycle first
sweeps Redis presence entries whose process stopped heartbeating
(`run_presence_heartbeat_loop`, started by every API process).
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger
from app.realtime.connection_manager import ConnectionManager
from app.realtime.hub import RealtimeHub
from app.realtime.registries import build_registries
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

ERROR_BACKOFF_SECONDS = 60


async def run_call_reaper_job(hub: RealtimeHub) -> dict[str, int]:
    """One reaper cycle."""
    counts = await hub.reap_stale_calls()
    logger.info("Call reaper cycle completed", job_run="call_reaper", **counts)
    return counts


async def run_call_reaper_loop(hub: RealtimeHub, interval_seconds: int | None = None) -> None:
    """Reap forever; errors in one cycle never stop the loop."""
    interval = interval_seconds or settings.CALL_REAPER_INTERVAL_SECONDS
    logger.info("Starting call reaper", interval_seconds=interval)

    while True:
        try:
            await run_call_reaper_job(hub)
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Call reaper stopped")
            raise
        except Exception as e:
            logger.error("Error in call reaper", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)


async def run_presence_heartbeat_loop(hub: RealtimeHub, interval_seconds: int | None = None) -> None:
    """Keep this process's Redis presence entries fresh so the reaper does not sweep them."""
    interval = interval_seconds or settings.PRESENCE_HEARTBEAT_SECONDS
    logger.info("Starting presence heartbeat", interval_seconds=interval)

    while True:
        try:
            refreshed = await hub.presence.heartbeat()
            logger.debug("Presence heartbeat", refreshed=refreshed)
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Presence heartbeat stopped")
            raise
        except Exception as e:
            logger.error("Error in presence heartbeat", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(interval)


@asynccontextmanager
async def _standalone_hub() -> AsyncIterator[RealtimeHub]:
    """
    Hub for a process with no sockets of its own.

    Room emits from here reach nobody; clients learn the new call state
    the next time they load the session.
    """
    if settings.REALTIME_REGISTRY_BACKEND.strip().lower() != "redis":
        logger.warning(
            "Standalone call reaper needs REALTIME_REGISTRY_BACKEND=redis to see API calls",
            backend=settings.REALTIME_REGISTRY_BACKEND,
        )

    await db_pool.initialize()
    if fast_redis.required:
        await fast_redis.initialize()
    try:
        presence, calls = build_registries()
        yield RealtimeHub(ConnectionManager(), presence, calls)
    finally:
        await fast_redis.close()
        await db_pool.close()


async def start_call_reaper_scheduler() -> None:
    """Worker entrypoint: reap until stopped."""
    async with _standalone_hub() as hub:
        await run_call_reaper_loop(hub)


async def run_call_reaper_once() -> dict[str, int]:
    """Worker entrypoint: a single cycle."""
    async with _standalone_hub() as hub:
        return await run_call_reaper_job(hub)
