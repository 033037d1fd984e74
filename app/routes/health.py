# app/routes/health.py
"""
Health check endpoints: liveness, readiness (database, Redis when used, realtime hub), pool stats.
"""

import time

from fastapi import APIRouter, Request

from app.config import settings
from app.db.pool import db_health_check, db_pool
from app.services.redis_client import fast_redis, redis_consumers

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "astrotalk-realtime"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check with all dependencies.

    Push/email providers are reported but never make the service unready:
    an unconfigured provider only means that channel is skipped.
    """
    checks = {}
    overall_ok = True

    # 1) Redis, only counted when the limiter or registries live there
    consumers = redis_consumers()
    t0 = time.time()
    try:
        redis_ok = bool(await fast_redis.ping())
        checks["redis"] = {
            "ok": redis_ok,
            "required_by": consumers,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
    except Exception as e:
        redis_ok = False
        checks["redis"] = {"ok": False, "required_by": consumers, "error": f"{type(e).__name__}: {e}"}
    if consumers:
        overall_ok = overall_ok and redis_ok

    # 2) Database pool health check
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)

        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }

        if "pool_stats" in db_health:
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                    "pool_utilization_percent": pool_stats.get("pool_utilization_percent", 0),
                }
            )

        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 3) Providers and realtime (informational)
    checks["providers"] = {
        "push_configured": settings.firebase_configured(),
        "email_configured": settings.sendgrid_configured(),
    }

    hub = getattr(request.app.state, "realtime_hub", None)
    checks["realtime"] = {
        "ok": hub is not None,
        "registry_backend": settings.REALTIME_REGISTRY_BACKEND,
        "connections": hub.connections.connection_count if hub else 0,
    }
    overall_ok = overall_ok and hub is not None

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()


@router.get("/health/pool-stats")
async def pool_stats():
    """Live pool counters without probing the database."""
    if not db_pool.is_ready:
        return {"error": "Pool not initialized", "pool_health": "not_initialized"}
    return {"pool_health": "healthy", **db_pool.stats()}
