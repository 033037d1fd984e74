from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NotificationType(str, Enum):
    CHAT_MESSAGE = "chat_message"
    CALL_REQUEST = "call_request"
    CALL_ACCEPTED = "call_accepted"
    CALL_REJECTED = "call_rejected"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    ORDER_PLACED = "order_placed"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    ASTROLOGER_APPROVED = "astrologer_approved"
    ASTROLOGER_REJECTED = "astrologer_rejected"
    WALLET_RECHARGED = "wallet_recharged"
    WITHDRAWAL_PROCESSED = "withdrawal_processed"
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"
    SYSTEM_MAINTENANCE = "system_maintenance"
    PROMOTIONAL = "promotional"


class NotificationChannel(str, Enum):
    PUSH = "push"
    EMAIL = "email"
    IN_APP = "in_app"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class UserType(str, Enum):
    CUSTOMER = "customer"
    ASTROLOGER = "astrologer"
    ADMINISTRATOR = "administrator"


DEFAULT_CHANNELS = (NotificationChannel.PUSH, NotificationChannel.EMAIL)

# Notification type -> preference flag that gates it
CATEGORY_PREFERENCE: dict[NotificationType, str] = {
    NotificationType.CHAT_MESSAGE: "chat_notifications",
    NotificationType.SESSION_STARTED: "chat_notifications",
    NotificationType.SESSION_ENDED: "chat_notifications",
    NotificationType.CALL_REQUEST: "call_notifications",
    NotificationType.CALL_ACCEPTED: "call_notifications",
    NotificationType.CALL_REJECTED: "call_notifications",
    NotificationType.PAYMENT_SUCCESS: "payment_notifications",
    NotificationType.PAYMENT_FAILED: "payment_notifications",
    NotificationType.WALLET_RECHARGED: "payment_notifications",
    NotificationType.WITHDRAWAL_PROCESSED: "payment_notifications",
    NotificationType.ORDER_PLACED: "order_notifications",
    NotificationType.ORDER_SHIPPED: "order_notifications",
    NotificationType.ORDER_DELIVERED: "order_notifications",
    NotificationType.PROMOTIONAL: "promotional_notifications",
    NotificationType.SYSTEM_MAINTENANCE: "system_notifications",
    NotificationType.ASTROLOGER_APPROVED: "system_notifications",
    NotificationType.ASTROLOGER_REJECTED: "system_notifications",
}


class NotificationPreferences(BaseModel):
    """Per-user delivery switches. Every flag defaults to enabled."""

    model_config = ConfigDict(extra="ignore")

    push_enabled: bool = True
    email_enabled: bool = True
    chat_notifications: bool = True
    call_notifications: bool = True
    payment_notifications: bool = True
    order_notifications: bool = True
    promotional_notifications: bool = True
    system_notifications: bool = True

    def allows_type(self, notification_type: NotificationType) -> bool:
        flag = CATEGORY_PREFERENCE.get(notification_type)
        # Unmapped types are never blocked
        return True if flag is None else getattr(self, flag)

    def allows_channel(self, channel: NotificationChannel) -> bool:
        if channel == NotificationChannel.PUSH:
            return self.push_enabled
        if channel == NotificationChannel.EMAIL:
            return self.email_enabled
        return True


PREFERENCE_FIELDS = tuple(NotificationPreferences.model_fields)


class NotificationTarget(BaseModel):
    """Recipient resolved from a user record for one dispatch call."""

    user_id: str
    user_type: UserType
    full_name: str | None = None
    push_token: str | None = None
    email_address: str | None = None
    preferences: NotificationPreferences | None = None


class Notification(BaseModel):
    """What to send. `channels=None` means push + email."""

    type: NotificationType
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    image_url: str | None = None
    action_url: str | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    channels: list[NotificationChannel] | None = None
    scheduled_at: datetime | None = None

    def resolved_channels(self) -> list[NotificationChannel]:
        """Requested channels in order, each at most once."""
        return list(dict.fromkeys(self.channels)) if self.channels else list(DEFAULT_CHANNELS)


class NotificationRecord(BaseModel):
    """Row of the notifications table."""

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    user_type: UserType
    type: NotificationType
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    image_url: str | None = None
    action_url: str | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    channels: list[NotificationChannel] = Field(default_factory=list)
    is_read: bool = False
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    scheduled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    read_at: datetime | None = None
