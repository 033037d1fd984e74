"""
Rate Limit Dependencies - rate limiting for endpoints as FastAPI dependencies.

Usage:
    from app.middleware.rate_limit_dependencies import rate_limit
    from app.middleware.rate_limiter import RATE_LIMIT_CONFIGS

    @router.post("/login")
    async def login(
        request: Request,
        _rate: None = Depends(rate_limit("login", RATE_LIMIT_CONFIGS["login"])),
    ):
        ...

Features:
- Keyed by `identifier:client_fingerprint`
- Automatic 429 responses with Retry-After
- Rate limit info stored on request.state for RateLimitHeadersMiddleware
- Exceeded limits written to the audit log
"""

from fastapi import HTTPException, Request, status

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.middleware.rate_limit_headers import rate_limit_headers
from app.middleware.rate_limiter import RateLimitConfig, RateLimitResult, rate_limiter
from app.middleware.request_context import client_fingerprint
from app.utils.audit_helpers import audit_security_event

logger = get_logger(__name__)


async def _enforce(request: Request, identifier: str, result: RateLimitResult) -> None:
    info = result.to_info()
    request.state.rate_limit_info = info

    if result.allowed:
        return

    logger.warning(
        "Rate limit exceeded",
        identifier=identifier,
        limit=info["limit"],
        level=result.level,
        retry_after=info["retry_after"],
        path=request.url.path,
    )

    await audit_security_event(
        conn=request,
        event_type="rate_limit_exceeded",
        severity="medium",
        description=f"Rate limit '{identifier}' exceeded on {request.url.path}",
        metadata={
            "limit": info["limit"],
            "level": result.level,
            "retry_after": info["retry_after"],
            "endpoint": request.url.path,
        },
    )

    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "error": "rate_limit_exceeded",
            "message": f"Too many requests. Try again in {info['retry_after']} seconds.",
            "limit": info["limit"],
            "retry_after": info["retry_after"],
        },
        headers=rate_limit_headers(info),
    )


def rate_limit(identifier: str, config: RateLimitConfig):
    """Dependency factory for a fixed-window limit."""

    async def dependency(request: Request) -> None:
        if not settings.RATE_LIMIT_ENABLED:
            return

        result = await rate_limiter.check_limit(identifier, client_fingerprint(request), config)
        await _enforce(request, identifier, result)

    return dependency


def progressive_rate_limit(identifier: str, tiers: list[RateLimitConfig]):
    """Dependency factory for an escalating limit (stricter tier per violation)."""

    async def dependency(request: Request) -> None:
        if not settings.RATE_LIMIT_ENABLED:
            return

        result = await rate_limiter.check_progressive_limit(
            identifier, client_fingerprint(request), tiers
        )
        await _enforce(request, identifier, result)

    return dependency
