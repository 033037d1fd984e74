"""
Persistence for notification records.

Records are never deleted. Status updates and read-marking address rows by
id; read-marking only touches rows still unread, so `read_at` keeps the
timestamp of the first successful mark.
"""

from datetime import UTC, datetime
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, fetch_all, fetch_one, fetch_val, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.notification_domain import (
    DeliveryStatus,
    Notification,
    NotificationRecord,
    NotificationTarget,
    NotificationType,
)
from app.repositories.user_repository import parse_uuid

logger = get_logger(__name__)


class NotificationRepository:
    """Raw SQL helpers over the notifications table."""

    SELECT_COLUMNS = """
        id, user_id, user_type, type, title, body, data, image_url, action_url,
        priority, channels, is_read, delivery_status, scheduled_at,
        created_at, updated_at, read_at
    """

    @classmethod
    def _row_to_record(cls, row: dict) -> NotificationRecord:
        return NotificationRecord.model_validate(
            {
                **row,
                "id": str(row["id"]),
                "user_id": str(row["user_id"]),
                "data": row.get("data") or {},
                "channels": row.get("channels") or [],
            }
        )

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def create(
        cls,
        target: NotificationTarget,
        notification: Notification,
        data: dict[str, Any],
    ) -> NotificationRecord:
        """Insert a pending record for one recipient."""
        now = datetime.now(UTC)
        row = await fetch_one(
            f"""
            INSERT INTO notifications (
                user_id, user_type, type, title, body, data, image_url, action_url,
                priority, channels, is_read, delivery_status, scheduled_at,
                created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, false, %s, %s, %s, %s)
            RETURNING {cls.SELECT_COLUMNS}
            """,
            (
                parse_uuid(target.user_id),
                target.user_type.value,
                notification.type.value,
                notification.title,
                notification.body,
                Jsonb(data),
                notification.image_url,
                notification.action_url,
                notification.priority.value,
                [c.value for c in notification.resolved_channels()],
                DeliveryStatus.PENDING.value,
                notification.scheduled_at,
                now,
                now,
            ),
        )
        return cls._row_to_record(row)

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def update_delivery_status(cls, notification_id: str, status: DeliveryStatus) -> bool:
        updated = await execute_query(
            """
            UPDATE notifications
            SET delivery_status = %s, updated_at = %s
            WHERE id = %s
            """,
            (status.value, datetime.now(UTC), parse_uuid(notification_id)),
        )
        return updated > 0

    @classmethod
    async def get(cls, notification_id: str) -> NotificationRecord | None:
        uid = parse_uuid(notification_id)
        if uid is None:
            return None
        row = await fetch_one(
            f"SELECT {cls.SELECT_COLUMNS} FROM notifications WHERE id = %s",
            (uid,),
        )
        return cls._row_to_record(row) if row else None

    @classmethod
    async def list_for_user(
        cls,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
        unread_only: bool = False,
        notification_type: NotificationType | None = None,
    ) -> tuple[list[NotificationRecord], int, int]:
        """
        Returns:
            (records newest first, total matching, unread count for the user)
        """
        uid = parse_uuid(user_id)
        if uid is None:
            return [], 0, 0

        conditions = ["user_id = %s"]
        params: list[Any] = [uid]
        if unread_only:
            conditions.append("is_read = false")
        if notification_type:
            conditions.append("type = %s")
            params.append(notification_type.value)
        where = " AND ".join(conditions)

        rows = await fetch_all(
            f"""
            SELECT {cls.SELECT_COLUMNS} FROM notifications
            WHERE {where}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
            """,
            (*params, limit, offset),
        )
        total = await fetch_val(f"SELECT COUNT(*) FROM notifications WHERE {where}", tuple(params))
        unread = await fetch_val(
            "SELECT COUNT(*) FROM notifications WHERE user_id = %s AND is_read = false",
            (uid,),
        )
        return [cls._row_to_record(r) for r in rows], int(total or 0), int(unread or 0)

    @classmethod
    async def mark_read(cls, user_id: str, notification_ids: list[str] | None = None) -> int:
        """
        Mark the user's unread notifications as read (all of them when ids is None).

        Returns:
            Number of rows that changed. Already-read rows are left untouched.
        """
        uid = parse_uuid(user_id)
        if uid is None:
            return 0

        now = datetime.now(UTC)
        query = """
            UPDATE notifications
            SET is_read = true, read_at = %s, updated_at = %s
            WHERE user_id = %s AND is_read = false
        """
        params: list[Any] = [now, now, uid]

        if notification_ids is not None:
            ids = [i for i in (parse_uuid(n) for n in notification_ids) if i is not None]
            if not ids:
                return 0
            query += " AND id = ANY(%s)"
            params.append(ids)

        updated = await execute_query(query, tuple(params))
        logger.info("Notifications marked read", user_id=user_id, updated=updated)
        return updated

    @classmethod
    async def history(
        cls,
        notification_type: NotificationType | None = None,
        delivery_status: DeliveryStatus | None = None,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[NotificationRecord], int]:
        """Admin view across all users."""
        conditions = ["true"]
        params: list[Any] = []
        if notification_type:
            conditions.append("type = %s")
            params.append(notification_type.value)
        if delivery_status:
            conditions.append("delivery_status = %s")
            params.append(delivery_status.value)
        if search:
            conditions.append("(title ILIKE %s OR body ILIKE %s)")
            pattern = f"%{search}%"
            params.extend([pattern, pattern])
        where = " AND ".join(conditions)

        rows = await fetch_all(
            f"""
            SELECT {cls.SELECT_COLUMNS} FROM notifications
            WHERE {where}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
            """,
            (*params, limit, offset),
        )
        total = await fetch_val(f"SELECT COUNT(*) FROM notifications WHERE {where}", tuple(params))
        return [cls._row_to_record(r) for r in rows], int(total or 0)
