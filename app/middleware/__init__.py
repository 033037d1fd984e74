"""
Middleware components for request processing.

This package contains middleware for:
- Request context (request ID, IP address, user agent)
- Rate limiting (fixed-window and progressive limits, X-RateLimit-* headers)
"""

from app.middleware.rate_limit_dependencies import progressive_rate_limit, rate_limit
from app.middleware.rate_limit_headers import RateLimitHeadersMiddleware
from app.middleware.rate_limiter import rate_limiter
from app.middleware.request_context import RequestContextMiddleware

__all__ = [
    "RequestContextMiddleware",
    "RateLimitHeadersMiddleware",
    "rate_limiter",
    "rate_limit",
    "progressive_rate_limit",
]
