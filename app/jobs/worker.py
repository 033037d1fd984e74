"""
Background worker entrypoint.

    astrotalk-worker call_reaper          # reap until stopped
    astrotalk-worker call_reaper_once     # one cycle, for cron-style schedulers

The job name comes from argv or WORKER_JOB (default `call_reaper`).
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.call_reaper_job import run_call_reaper_once, start_call_reaper_scheduler

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[object]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "call_reaper": start_call_reaper_scheduler,
    "call_reaper_once": run_call_reaper_once,
}


def _job_name_from_env() -> str:
    if len(sys.argv) > 1:
        return sys.argv[1]
    return os.getenv("WORKER_JOB", "call_reaper")


async def run_worker(job_name: str | None = None) -> None:
    """Run one registered job until it returns."""
    name = (job_name or _job_name_from_env()).strip().lower()
    job = JOB_REGISTRY.get(name)
    if job is None:
        raise ValueError(f"Unknown worker job '{name}'. Available jobs: {', '.join(sorted(JOB_REGISTRY))}")

    logger.info("Worker starting", job=name, registry_backend=settings.REALTIME_REGISTRY_BACKEND)
    await job()
    logger.info("Worker finished", job=name)


def main() -> None:
    setup_logging(log_level=settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
