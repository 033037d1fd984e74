"""
Chat and call session persistence for the realtime hub.

Counter columns are bumped with `col = col + 1` in SQL, never read-modify-write.
A chat message and its session counter update commit in one transaction.
"""

from datetime import UTC, datetime
from decimal import Decimal

from psycopg import sql

from app.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger
from app.models.domain.realtime_domain import (
    CUSTOMER_SENDER_TYPES,
    CallBilling,
    CallSessionRow,
    CallStatus,
    ChatMessage,
    ChatSessionRow,
)
from app.repositories.user_repository import parse_uuid

logger = get_logger(__name__)


def _unread_column_for_receiver(sender_type: str) -> str:
    # A customer's message is unread for the astrologer, and vice versa
    return "astrologer_unread_count" if sender_type in CUSTOMER_SENDER_TYPES else "user_unread_count"


class SessionRepository:
    """Raw SQL helpers over chat_sessions, chat_messages and call_sessions."""

    # --- chat -------------------------------------------------------------

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def get_chat_session(cls, session_id: str) -> ChatSessionRow | None:
        sid = parse_uuid(session_id)
        if sid is None:
            return None

        row = await fetch_one(
            "SELECT id, user_id, astrologer_id FROM chat_sessions WHERE id = %s",
            (sid,),
        )
        if not row:
            return None
        return ChatSessionRow(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            astrologer_id=str(row["astrologer_id"]),
        )

    @classmethod
    async def add_message(
        cls,
        session_id: str,
        sender_id: str,
        sender_name: str | None,
        sender_type: str,
        message_type: str,
        content: str,
        image_url: str | None,
    ) -> ChatMessage:
        """Insert the message and bump the receiver's unread counter atomically."""
        now = datetime.now(UTC)
        sid = parse_uuid(session_id)
        read_by_user = sender_type in CUSTOMER_SENDER_TYPES
        read_by_astrologer = sender_type == "astrologer"
        unread_column = _unread_column_for_receiver(sender_type)

        async with db_pool.transaction() as conn:
            inserted = await fetch_one(
                """
                INSERT INTO chat_messages (
                    session_id, sender_id, sender_name, sender_type, message_type,
                    content, image_url, read_by_user, read_by_astrologer,
                    timestamp, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    sid,
                    parse_uuid(sender_id),
                    sender_name,
                    sender_type,
                    message_type,
                    content,
                    image_url,
                    read_by_user,
                    read_by_astrologer,
                    now,
                    now,
                ),
                connection=conn,
            )
            await execute_query(
                sql.SQL(
                    """
                    UPDATE chat_sessions
                    SET last_message = %s, last_message_time = %s, updated_at = %s,
                        {col} = {col} + 1
                    WHERE id = %s
                    """
                ).format(col=sql.Identifier(unread_column)),
                (content or "[Image]", now, now, sid),
                connection=conn,
            )

        return ChatMessage(
            id=str(inserted["id"]),
            session_id=session_id,
            sender_id=sender_id,
            sender_name=sender_name,
            sender_type=sender_type,
            message_type=message_type,
            content=content,
            image_url=image_url,
            read_by_user=read_by_user,
            read_by_astrologer=read_by_astrologer,
            timestamp=now,
        )

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def recent_messages(cls, session_id: str, limit: int = 50) -> list[ChatMessage]:
        """The newest `limit` messages of a session, returned oldest first."""
        sid = parse_uuid(session_id)
        if sid is None:
            return []

        rows = await fetch_all(
            """
            SELECT id, session_id, sender_id, sender_name, sender_type, message_type,
                   content, image_url, read_by_user, read_by_astrologer, timestamp
            FROM chat_messages
            WHERE session_id = %s
            ORDER BY timestamp DESC
            LIMIT %s
            """,
            (sid, limit),
        )
        return [
            ChatMessage(
                id=str(row["id"]),
                session_id=str(row["session_id"]),
                sender_id=str(row["sender_id"]),
                sender_name=row.get("sender_name"),
                sender_type=row["sender_type"],
                message_type=row.get("message_type") or "text",
                content=row.get("content") or "",
                image_url=row.get("image_url"),
                read_by_user=bool(row.get("read_by_user")),
                read_by_astrologer=bool(row.get("read_by_astrologer")),
                timestamp=row["timestamp"],
            )
            for row in reversed(rows)
        ]

    @classmethod
    async def mark_messages_read(
        cls, session_id: str, message_ids: list[str], reader_is_customer: bool
    ) -> int:
        """Flag messages read for the reader and reset the reader's unread counter."""
        sid = parse_uuid(session_id)
        ids = [m for m in (parse_uuid(i) for i in message_ids) if m is not None]
        read_column = "read_by_user" if reader_is_customer else "read_by_astrologer"
        unread_column = "user_unread_count" if reader_is_customer else "astrologer_unread_count"

        async with db_pool.transaction() as conn:
            updated = 0
            if ids:
                updated = await execute_query(
                    sql.SQL(
                        "UPDATE chat_messages SET {col} = true WHERE session_id = %s AND id = ANY(%s)"
                    ).format(col=sql.Identifier(read_column)),
                    (sid, ids),
                    connection=conn,
                )

            await execute_query(
                sql.SQL("UPDATE chat_sessions SET {col} = 0, updated_at = %s WHERE id = %s").format(
                    col=sql.Identifier(unread_column)
                ),
                (datetime.now(UTC), sid),
                connection=conn,
            )
            return updated

    # --- calls ------------------------------------------------------------

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def get_call_session(cls, session_id: str) -> CallSessionRow | None:
        sid = parse_uuid(session_id)
        if sid is None:
            return None

        row = await fetch_one(
            """
            SELECT id, user_id, astrologer_id, status, rate_per_minute
            FROM call_sessions WHERE id = %s
            """,
            (sid,),
        )
        if not row:
            return None
        return CallSessionRow(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            astrologer_id=str(row["astrologer_id"]),
            status=row.get("status"),
            rate_per_minute=Decimal(str(row.get("rate_per_minute") or 0)),
        )

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def update_call_status(
        cls,
        session_id: str,
        status: CallStatus,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> None:
        assignments = [sql.SQL("status = %s"), sql.SQL("updated_at = %s")]
        params: list = [status.value, datetime.now(UTC)]
        if start_time is not None:
            assignments.append(sql.SQL("start_time = %s"))
            params.append(start_time)
        if end_time is not None:
            assignments.append(sql.SQL("end_time = %s"))
            params.append(end_time)
        params.append(parse_uuid(session_id))

        await execute_query(
            sql.SQL("UPDATE call_sessions SET {assignments} WHERE id = %s").format(
                assignments=sql.SQL(", ").join(assignments)
            ),
            tuple(params),
        )

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def complete_call(cls, session_id: str, end_time: datetime, billing: CallBilling) -> None:
        await execute_query(
            """
            UPDATE call_sessions
            SET status = %s, end_time = %s, duration_minutes = %s, total_amount = %s,
                updated_at = %s
            WHERE id = %s
            """,
            (
                CallStatus.COMPLETED.value,
                end_time,
                billing.duration_minutes,
                billing.total_amount,
                datetime.now(UTC),
                parse_uuid(session_id),
            ),
        )
        logger.info(
            "Call session completed",
            session_id=session_id,
            duration_minutes=billing.duration_minutes,
            total_amount=str(billing.total_amount),
        )
