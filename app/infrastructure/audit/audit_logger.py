"""
Audit trail for security, billing and administrative events.

Every event is written twice: a structured log line first (so it survives
a database outage) and then an immutable row in `audit_logs`. Writing the
row never raises; a failure is logged with the full event so it can be
replayed.

    security_event         rate limit exceeded, socket handshake rejected
    call_billed            an active call ended with a computed charge
    notification_broadcast admin bulk send
    rate_limit_reset       admin cleared a limiter key
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ANONYMOUS_USER_ID = "00000000-0000-0000-0000-000000000000"

# Security severities logged above info level
_ESCALATED_SEVERITIES = {"high", "critical"}


@dataclass
class AuditEvent:
    user_id: str
    action: str
    resource_type: str | None = None
    resource_id: str | None = None
    resource_count: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class AuditLogger:
    async def record(self, event: AuditEvent, level: str = "info") -> bool:
        """Returns False if the database row could not be written."""
        getattr(logger, level)(
            "Audit event",
            audit_action=event.action,
            user_id=event.user_id,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            resource_count=event.resource_count,
            ip_address=event.ip_address,
            request_id=event.request_id,
        )

        try:
            await execute_query(
                """
                INSERT INTO audit_logs (
                    user_id, action, resource_type, resource_id,
                    resource_count, ip_address, user_agent,
                    request_id, metadata, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.user_id,
                    event.action,
                    event.resource_type,
                    event.resource_id,
                    event.resource_count,
                    event.ip_address,
                    event.user_agent,
                    event.request_id,
                    Jsonb(event.metadata) if event.metadata is not None else None,
                    event.created_at,
                ),
            )
        except Exception as e:
            fallback = asdict(event)
            fallback["created_at"] = event.created_at.isoformat()
            logger.error(
                "CRITICAL: Failed to write audit log to database",
                error=str(e),
                error_type=type(e).__name__,
                fallback_data=fallback,
            )
            return False
        return True

    async def log(
        self,
        user_id: str | UUID,
        action: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        resource_count: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        return await self.record(
            AuditEvent(
                user_id=str(user_id),
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                resource_count=resource_count,
                ip_address=ip_address,
                user_agent=user_agent,
                request_id=request_id,
                metadata=metadata,
            )
        )

    async def log_security_event(
        self,
        user_id: str | UUID | None,
        event_type: str,
        severity: str,
        description: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Args:
            user_id: None for unauthenticated callers (stored as the anonymous id)
            event_type: e.g. "rate_limit_exceeded", "socket_auth_rejected"
            severity: "low", "medium", "high" or "critical"
        """
        event = AuditEvent(
            user_id=str(user_id) if user_id else ANONYMOUS_USER_ID,
            action="security_event",
            resource_type="security",
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
            metadata={
                **(metadata or {}),
                "event_type": event_type,
                "severity": severity,
                "description": description,
            },
        )
        return await self.record(event, level="warning" if severity in _ESCALATED_SEVERITIES else "info")

    async def log_call_billed(
        self,
        session_id: str,
        user_id: str,
        astrologer_id: str,
        duration_minutes: int,
        total_amount: Decimal,
        rate_per_minute: Decimal,
    ) -> bool:
        # Amounts as strings so the JSON keeps both decimal places
        return await self.record(
            AuditEvent(
                user_id=user_id,
                action="call_billed",
                resource_type="call_session",
                resource_id=session_id,
                metadata={
                    "astrologer_id": astrologer_id,
                    "duration_minutes": duration_minutes,
                    "total_amount": str(total_amount),
                    "rate_per_minute": str(rate_per_minute),
                },
            )
        )


audit_logger = AuditLogger()
