"""
RequestContext Middleware - Adds request tracking to all requests.

Adds to request.state:
- request_id: Unique ID for request tracing
- ip_address: Client fingerprint used for rate limiting and audit rows
- user_agent: Client user agent string
"""

import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import HTTPConnection

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def client_fingerprint(conn: HTTPConnection) -> str:
    """
    Client identity for rate limit keys.

    First entry of X-Forwarded-For, else X-Real-IP, else the socket peer,
    else "unknown". Works for both HTTP requests and WebSockets.
    """
    forwarded_for = conn.headers.get("x-forwarded-for")
    if forwarded_for:
        # "client, proxy1, proxy2"
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = conn.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if conn.client and conn.client.host:
        return conn.client.host

    return "unknown"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Add request context to all incoming requests.

    Echoes X-Request-ID on the response (the incoming one if the caller sent it).

    Request.state Namespace Convention:
    - request_id, ip_address, user_agent: Set by RequestContextMiddleware
    - rate_limit_info: Set by rate limit dependencies
    """

    async def dispatch(self, request: Request, call_next):
        # Keep an id handed in by the gateway so both sides log the same one
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        ip_address = client_fingerprint(request)
        request.state.ip_address = ip_address

        user_agent = request.headers.get("user-agent")
        request.state.user_agent = user_agent

        logger.debug(
            "Request started",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            ip_address=ip_address,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response
