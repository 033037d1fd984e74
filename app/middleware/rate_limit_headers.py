"""
Copies the limiter outcome of the current request into response headers.

    X-RateLimit-Limit       max requests in the window
    X-RateLimit-Remaining   requests left in the window
    X-RateLimit-Reset       epoch seconds when the window ends
    X-RateLimit-Level       progressive tier in use (progressive limits only)
    Retry-After             seconds to wait (denied requests only)

The rate limit dependencies leave `rate_limit_info` on request.state;
routes without a limit get no headers.
"""

from starlette.middleware.base import BaseHTTPMiddleware


def rate_limit_headers(info: dict) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(info["limit"]),
        "X-RateLimit-Remaining": str(info["remaining"]),
    }
    if info.get("reset") is not None:
        headers["X-RateLimit-Reset"] = str(info["reset"])
    if info.get("level") is not None:
        headers["X-RateLimit-Level"] = str(info["level"])
    if not info.get("allowed", True) and info.get("retry_after"):
        headers["Retry-After"] = str(info["retry_after"])
    return headers


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        info = getattr(request.state, "rate_limit_info", None)
        if info:
            response.headers.update(rate_limit_headers(info))
        return response
