"""
Domain models for the realtime hub.

Plain dataclasses: the registries serialize them to/from JSON when backed
by Redis, and the repositories build them from database rows.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class CallStatus(str, Enum):
    RINGING = "ringing"
    ACTIVE = "active"
    COMPLETED = "completed"
    REJECTED = "rejected"


TERMINAL_CALL_STATUSES = frozenset({CallStatus.COMPLETED, CallStatus.REJECTED})

# Chat/socket roles. "user" is what the mobile apps send for customers.
CUSTOMER_SENDER_TYPES = frozenset({"user", "customer"})


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(slots=True)
class CallSession:
    """In-flight call tracked by the ActiveCallRegistry (ringing or active)."""

    session_id: str
    user_id: str
    astrologer_id: str
    status: CallStatus
    caller_id: str | None = None
    call_type: str = "voice"
    initiated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    start_time: datetime | None = None

    def participants(self) -> tuple[str, str]:
        return (self.user_id, self.astrologer_id)

    def other_participant(self, user_id: str) -> str | None:
        if user_id == self.user_id:
            return self.astrologer_id
        if user_id == self.astrologer_id:
            return self.user_id
        return None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["initiated_at"] = self.initiated_at.isoformat()
        data["start_time"] = self.start_time.isoformat() if self.start_time else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CallSession":
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            astrologer_id=data["astrologer_id"],
            status=CallStatus(data["status"]),
            caller_id=data.get("caller_id"),
            call_type=data.get("call_type") or "voice",
            initiated_at=_parse_dt(data.get("initiated_at")) or datetime.now(UTC),
            start_time=_parse_dt(data.get("start_time")),
        )


@dataclass(slots=True)
class ConnectedUser:
    """Maps one physical socket to a logical user."""

    socket_id: str
    user_id: str
    user_type: str
    is_online: bool = True
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["connected_at"] = self.connected_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConnectedUser":
        return cls(
            socket_id=data["socket_id"],
            user_id=data["user_id"],
            user_type=data["user_type"],
            is_online=data.get("is_online", True),
            connected_at=_parse_dt(data.get("connected_at")) or datetime.now(UTC),
        )


@dataclass(slots=True)
class ChatSessionRow:
    id: str
    user_id: str
    astrologer_id: str

    def other_participant(self, user_id: str) -> str | None:
        if user_id == self.user_id:
            return self.astrologer_id
        if user_id == self.astrologer_id:
            return self.user_id
        return None


@dataclass(slots=True)
class CallSessionRow:
    id: str
    user_id: str
    astrologer_id: str
    status: str | None
    rate_per_minute: Decimal


@dataclass(slots=True)
class ChatMessage:
    id: str
    session_id: str
    sender_id: str
    sender_name: str | None
    sender_type: str
    message_type: str
    content: str
    image_url: str | None
    read_by_user: bool
    read_by_astrologer: bool
    timestamp: datetime


@dataclass(slots=True, frozen=True)
class CallBilling:
    duration_minutes: int
    total_amount: Decimal
