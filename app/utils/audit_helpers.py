"""
Audit Helper Utilities - One-line audit logging for endpoints and sockets.

Usage:
    from app.utils.audit_helpers import audit_security_event

    await audit_security_event(
        conn=request,
        event_type="rate_limit_exceeded",
        severity="medium",
        description="Login rate limit exceeded",
    )

Request context (IP, user-agent, request ID) comes from request.state when
RequestContextMiddleware ran, otherwise from the connection itself
(WebSockets never pass through HTTP middleware).
"""

from typing import Any

from starlette.requests import HTTPConnection

from app.infrastructure.audit.audit_logger import audit_logger
from app.middleware.request_context import client_fingerprint


def _connection_context(conn: HTTPConnection) -> dict[str, str | None]:
    state = conn.state
    return {
        "ip_address": getattr(state, "ip_address", None) or client_fingerprint(conn),
        "user_agent": getattr(state, "user_agent", None) or conn.headers.get("user-agent"),
        "request_id": getattr(state, "request_id", None),
    }


async def audit_data_modification(
    conn: HTTPConnection,
    user_id: str,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    resource_count: int | None = None,
    changes: dict[str, Any] | None = None,
) -> bool:
    """
    Audit an administrative write (bulk send, rate limit reset).

    Examples:
        await audit_data_modification(
            conn=request,
            user_id=admin_id,
            action="rate_limit_reset",
            resource_type="rate_limit",
            resource_id=key,
        )
    """
    return await audit_logger.log(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        resource_count=resource_count,
        metadata={"changes": changes} if changes else None,
        **_connection_context(conn),
    )


async def audit_security_event(
    conn: HTTPConnection,
    event_type: str,
    severity: str,
    description: str,
    user_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """
    One-line helper for security events (rate limiting, auth failures, etc.).

    Args:
        conn: Request or WebSocket
        event_type: Type of event (e.g., "rate_limit_exceeded", "socket_auth_rejected")
        severity: Severity ("low", "medium", "high", "critical")
        description: Human-readable description
        user_id: User involved (None for unauthenticated events)
    """
    return await audit_logger.log_security_event(
        user_id=user_id,
        event_type=event_type,
        severity=severity,
        description=description,
        metadata=metadata,
        **_connection_context(conn),
    )
