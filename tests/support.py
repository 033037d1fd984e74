"""Fakes and constants shared by the unit and integration tests."""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import jwt

from app.config import settings
from app.models.domain.notification_domain import (
    DeliveryStatus,
    NotificationPreferences,
    NotificationRecord,
    NotificationTarget,
    NotificationType,
    UserType,
)
from app.models.domain.realtime_domain import (
    CallSessionRow,
    ChatMessage,
    ChatSessionRow,
)

CUSTOMER_ID = "11111111-1111-1111-1111-111111111111"
ASTROLOGER_ID = "22222222-2222-2222-2222-222222222222"
CHAT_SESSION_ID = "33333333-3333-3333-3333-333333333333"
CALL_SESSION_ID = "44444444-4444-4444-4444-444444444444"


def make_token(user_id: str, user_type: str = "customer", expires_in: int = 3600) -> str:
    now = datetime.now(UTC)
    return jwt.encode(
        {"userId": user_id, "user_type": user_type, "iat": now, "exp": now + timedelta(seconds=expires_in)},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


class FakeClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def events(self) -> list[str]:
        return [frame["event"] for frame in self.sent]

    def last(self, event: str) -> dict | None:
        for frame in reversed(self.sent):
            if frame["event"] == event:
                return frame["data"]
        return None


class FakeUserRepository:
    def __init__(self):
        self.targets: dict[str, NotificationTarget] = {}
        self.online_calls: list[tuple[str, bool]] = []
        self.list_targets_calls: list[dict] = []

    def add(self, user_id: str, user_type: UserType = UserType.CUSTOMER, **fields) -> NotificationTarget:
        target = NotificationTarget(user_id=user_id, user_type=user_type, **fields)
        self.targets[user_id] = target
        return target

    async def get_target(self, user_id: str) -> NotificationTarget | None:
        return self.targets.get(user_id)

    async def get_full_name(self, user_id: str) -> str | None:
        target = self.targets.get(user_id)
        return target.full_name if target else None

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        target = self.targets.get(user_id)
        return (target.preferences if target else None) or NotificationPreferences()

    async def set_online(self, user_id: str, is_online: bool) -> None:
        self.online_calls.append((user_id, is_online))

    async def update_preferences(self, user_id: str, updates: dict[str, bool]):
        target = self.targets.get(user_id)
        if target is None:
            return None
        merged = (target.preferences or NotificationPreferences()).model_copy(update=updates)
        self.targets[user_id] = target.model_copy(update={"preferences": merged})
        return merged

    async def register_push_token(self, user_id: str, token: str) -> bool:
        target = self.targets.get(user_id)
        if target is None:
            return False
        self.targets[user_id] = target.model_copy(update={"push_token": token})
        return True

    async def list_targets(self, user_ids=None, user_type=None, preference_flag=None):
        self.list_targets_calls.append(
            {"user_ids": user_ids, "user_type": user_type, "preference_flag": preference_flag}
        )
        targets = list(self.targets.values())
        if user_ids is not None:
            targets = [t for t in targets if t.user_id in user_ids]
        if user_type:
            targets = [t for t in targets if t.user_type.value == user_type]
        if preference_flag:
            targets = [
                t for t in targets if getattr(t.preferences or NotificationPreferences(), preference_flag)
            ]
        return targets


class FakeNotificationRepository:
    def __init__(self):
        self.records: dict[str, NotificationRecord] = {}
        self.status_updates: list[tuple[str, DeliveryStatus]] = []
        self.fail_create = False

    def seed(self, user_id: str, title: str = "Payment Successful!", **fields) -> NotificationRecord:
        now = datetime.now(UTC)
        values = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "user_type": UserType.CUSTOMER,
            "type": NotificationType.PAYMENT_SUCCESS,
            "title": title,
            "body": "Your payment of ₹500 has been processed successfully.",
            "created_at": now,
            "updated_at": now,
        }
        values.update(fields)
        record = NotificationRecord(**values)
        self.records[record.id] = record
        return record

    async def create(self, target, notification, data) -> NotificationRecord:
        if self.fail_create:
            raise RuntimeError("database unavailable")
        now = datetime.now(UTC)
        record = NotificationRecord(
            id=str(uuid.uuid4()),
            user_id=target.user_id,
            user_type=target.user_type,
            type=notification.type,
            title=notification.title,
            body=notification.body,
            data=data,
            priority=notification.priority,
            channels=notification.resolved_channels(),
            created_at=now,
            updated_at=now,
        )
        self.records[record.id] = record
        return record

    async def update_delivery_status(self, notification_id: str, status: DeliveryStatus) -> bool:
        self.status_updates.append((notification_id, status))
        record = self.records.get(notification_id)
        if record is None:
            return False
        self.records[notification_id] = record.model_copy(update={"delivery_status": status})
        return True

    async def mark_read(self, user_id: str, notification_ids: list[str] | None = None) -> int:
        now = datetime.now(UTC)
        updated = 0
        for record_id, record in list(self.records.items()):
            if record.user_id != user_id or record.is_read:
                continue
            if notification_ids is not None and record_id not in notification_ids:
                continue
            self.records[record_id] = record.model_copy(update={"is_read": True, "read_at": now})
            updated += 1
        return updated

    async def list_for_user(self, user_id, limit=20, offset=0, unread_only=False, notification_type=None):
        records = [r for r in self.records.values() if r.user_id == user_id]
        unread = sum(1 for r in records if not r.is_read)
        if unread_only:
            records = [r for r in records if not r.is_read]
        if notification_type:
            records = [r for r in records if r.type == notification_type]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[offset : offset + limit], len(records), unread

    async def history(self, notification_type=None, delivery_status=None, search=None, limit=50, offset=0):
        records = list(self.records.values())
        if notification_type:
            records = [r for r in records if r.type == notification_type]
        if delivery_status:
            records = [r for r in records if r.delivery_status == delivery_status]
        if search:
            records = [r for r in records if search.lower() in (r.title + r.body).lower()]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[offset : offset + limit], len(records)


class FakeSessionRepository:
    def __init__(self):
        self.chat_sessions: dict[str, ChatSessionRow] = {}
        self.call_sessions: dict[str, CallSessionRow] = {}
        self.messages: list[ChatMessage] = []
        self.read_marks: list[tuple[str, list[str], bool]] = []
        self.status_updates: list[tuple[str, str, dict]] = []
        self.completed: list[tuple[str, datetime, object]] = []

    async def get_chat_session(self, session_id: str) -> ChatSessionRow | None:
        return self.chat_sessions.get(session_id)

    async def add_message(self, session_id, sender_id, sender_name, sender_type, message_type, content, image_url):
        message = ChatMessage(
            id=str(uuid.uuid4()),
            session_id=session_id,
            sender_id=sender_id,
            sender_name=sender_name,
            sender_type=sender_type,
            message_type=message_type,
            content=content,
            image_url=image_url,
            read_by_user=sender_type == "user",
            read_by_astrologer=sender_type == "astrologer",
            timestamp=datetime.now(UTC),
        )
        self.messages.append(message)
        return message

    async def recent_messages(self, session_id: str, limit: int = 50) -> list[ChatMessage]:
        return [m for m in self.messages if m.session_id == session_id][-limit:]

    async def mark_messages_read(self, session_id, message_ids, reader_is_customer) -> int:
        self.read_marks.append((session_id, message_ids, reader_is_customer))
        return len(message_ids)

    async def get_call_session(self, session_id: str) -> CallSessionRow | None:
        return self.call_sessions.get(session_id)

    async def update_call_status(self, session_id, status, start_time=None, end_time=None) -> None:
        self.status_updates.append(
            (session_id, getattr(status, "value", status), {"start_time": start_time, "end_time": end_time})
        )

    async def complete_call(self, session_id, end_time, billing) -> None:
        self.completed.append((session_id, end_time, billing))


class FakeTriggers:
    def __init__(self):
        self.on_chat_message = AsyncMock(return_value=True)
        self.on_incoming_call = AsyncMock(return_value=True)


class FakeAudit:
    def __init__(self):
        self.log_call_billed = AsyncMock(return_value=True)

