"""
User record access for notification targeting and presence.

Users are owned by the account service; this layer only reads contact
details and preferences and writes the push token, the preference flags
and the online flag.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.notification_domain import (
    NotificationPreferences,
    NotificationTarget,
    UserType,
)

logger = get_logger(__name__)


def parse_uuid(value: Any) -> UUID | None:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


class UserRepository:
    """Raw SQL helpers over the users table."""

    SELECT_COLUMNS = """
        id, user_type, full_name, email_address, fcm_token,
        notification_preferences, account_status, is_online
    """

    @classmethod
    def _row_to_target(cls, row: dict | None) -> NotificationTarget | None:
        if not row:
            return None

        return NotificationTarget(
            user_id=str(row["id"]),
            user_type=UserType(row["user_type"]),
            full_name=row.get("full_name"),
            push_token=row.get("fcm_token"),
            email_address=row.get("email_address"),
            preferences=NotificationPreferences.model_validate(row.get("notification_preferences") or {}),
        )

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def get_target(cls, user_id: str) -> NotificationTarget | None:
        uid = parse_uuid(user_id)
        if uid is None:
            return None

        row = await fetch_one(
            f"SELECT {cls.SELECT_COLUMNS} FROM users WHERE id = %s",
            (uid,),
        )
        return cls._row_to_target(row)

    @classmethod
    async def get_full_name(cls, user_id: str) -> str | None:
        target = await cls.get_target(user_id)
        return target.full_name if target else None

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def get_preferences(cls, user_id: str) -> NotificationPreferences:
        """Stored preferences, all-enabled when the user has none (or does not exist)."""
        uid = parse_uuid(user_id)
        if uid is None:
            return NotificationPreferences()

        row = await fetch_one(
            "SELECT notification_preferences FROM users WHERE id = %s",
            (uid,),
        )
        stored = row.get("notification_preferences") if row else None
        return NotificationPreferences.model_validate(stored or {})

    @classmethod
    async def update_preferences(
        cls, user_id: str, updates: dict[str, bool]
    ) -> NotificationPreferences | None:
        """Merge `updates` into the stored flags. Returns None if the user is unknown."""
        uid = parse_uuid(user_id)
        if uid is None:
            return None

        row = await fetch_one(
            """
            UPDATE users
            SET notification_preferences = COALESCE(notification_preferences, '{}'::jsonb) || %s,
                updated_at = %s
            WHERE id = %s
            RETURNING notification_preferences
            """,
            (Jsonb(updates), datetime.now(UTC), uid),
        )
        if not row:
            return None

        logger.info("Notification preferences updated", user_id=user_id, fields=sorted(updates))
        return NotificationPreferences.model_validate(row["notification_preferences"] or {})

    @classmethod
    async def register_push_token(cls, user_id: str, token: str) -> bool:
        uid = parse_uuid(user_id)
        if uid is None:
            return False

        now = datetime.now(UTC)
        updated = await execute_query(
            """
            UPDATE users
            SET fcm_token = %s, fcm_token_updated_at = %s, updated_at = %s
            WHERE id = %s
            """,
            (token, now, now, uid),
        )
        return updated > 0

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def set_online(cls, user_id: str, is_online: bool) -> None:
        uid = parse_uuid(user_id)
        if uid is None:
            return

        now = datetime.now(UTC)
        await execute_query(
            "UPDATE users SET is_online = %s, last_seen = %s, updated_at = %s WHERE id = %s",
            (is_online, now, now, uid),
        )

    @classmethod
    async def list_targets(
        cls,
        user_ids: list[str] | None = None,
        user_type: str | None = None,
        preference_flag: str | None = None,
    ) -> list[NotificationTarget]:
        """
        Active users matching the filters.

        Args:
            user_ids: Restrict to these ids
            user_type: customer | astrologer | administrator (None = everyone)
            preference_flag: Skip users who explicitly turned this flag off
        """
        conditions = ["account_status = 'active'"]
        params: list[Any] = []

        if user_ids is not None:
            uuids = [uid for uid in (parse_uuid(u) for u in user_ids) if uid is not None]
            if not uuids:
                return []
            conditions.append("id = ANY(%s)")
            params.append(uuids)

        if user_type:
            conditions.append("user_type = %s")
            params.append(user_type)

        if preference_flag:
            conditions.append("COALESCE((notification_preferences->>%s)::boolean, true)")
            params.append(preference_flag)

        rows = await fetch_all(
            f"SELECT {cls.SELECT_COLUMNS} FROM users WHERE {' AND '.join(conditions)}",
            tuple(params),
        )
        return [cls._row_to_target(row) for row in rows]
