"""
Typed `data` payloads for notifications, keyed by NotificationType.

Each known type has a model with the fields clients rely on; extra keys are
kept so senders can attach more context without a schema change. Types
without a model (and unknown extras) pass through as an opaque dict.

Wire keys are camelCase (the mobile apps read `senderId`, `orderNumber`...).
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.models.domain.notification_domain import NotificationType


class NotificationPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)

    def to_data(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ChatMessagePayload(NotificationPayload):
    sender_id: str
    sender_name: str | None = None
    session_id: str | None = None
    message_id: str | None = None


class CallRequestPayload(NotificationPayload):
    caller_id: str
    caller_name: str | None = None
    call_type: str = "voice"
    session_id: str | None = None


class CallResponsePayload(NotificationPayload):
    session_id: str
    responder_id: str | None = None
    responder_name: str | None = None


class PaymentPayload(NotificationPayload):
    amount: Decimal
    transaction_id: str | None = None
    reason: str | None = None


class WalletRechargePayload(NotificationPayload):
    amount: Decimal
    new_balance: Decimal
    recharged_at: datetime | None = None


class WithdrawalPayload(NotificationPayload):
    amount: Decimal
    status: str
    processed_at: datetime | None = None


class OrderPlacedPayload(NotificationPayload):
    order_number: str
    total_amount: Decimal
    order_id: str | None = None
    estimated_delivery: str = "3-5 business days"


class OrderShippedPayload(NotificationPayload):
    order_number: str
    tracking_number: str | None = None
    tracking_url: str | None = None


class OrderDeliveredPayload(NotificationPayload):
    order_number: str
    delivered_at: datetime | None = None


class AstrologerReviewPayload(NotificationPayload):
    astrologer_id: str
    next_steps: list[str] | None = None
    reason: str | None = None


class SessionPayload(NotificationPayload):
    session_id: str
    customer_id: str | None = None
    customer_name: str | None = None
    astrologer_id: str | None = None
    duration_minutes: int | None = None


class MaintenancePayload(NotificationPayload):
    scheduled_time: datetime | None = None
    is_system_notification: bool = True


class PromotionalPayload(NotificationPayload):
    campaign_id: str | None = None
    message: str | None = None


PAYLOAD_MODELS: dict[NotificationType, type[NotificationPayload]] = {
    NotificationType.CHAT_MESSAGE: ChatMessagePayload,
    NotificationType.CALL_REQUEST: CallRequestPayload,
    NotificationType.CALL_ACCEPTED: CallResponsePayload,
    NotificationType.CALL_REJECTED: CallResponsePayload,
    NotificationType.PAYMENT_SUCCESS: PaymentPayload,
    NotificationType.PAYMENT_FAILED: PaymentPayload,
    NotificationType.WALLET_RECHARGED: WalletRechargePayload,
    NotificationType.WITHDRAWAL_PROCESSED: WithdrawalPayload,
    NotificationType.ORDER_PLACED: OrderPlacedPayload,
    NotificationType.ORDER_SHIPPED: OrderShippedPayload,
    NotificationType.ORDER_DELIVERED: OrderDeliveredPayload,
    NotificationType.ASTROLOGER_APPROVED: AstrologerReviewPayload,
    NotificationType.ASTROLOGER_REJECTED: AstrologerReviewPayload,
    NotificationType.SESSION_STARTED: SessionPayload,
    NotificationType.SESSION_ENDED: SessionPayload,
    NotificationType.SYSTEM_MAINTENANCE: MaintenancePayload,
    NotificationType.PROMOTIONAL: PromotionalPayload,
}


def normalize_payload(
    notification_type: NotificationType, data: NotificationPayload | dict[str, Any] | None
) -> dict[str, Any]:
    """
    Validate `data` against the model for `notification_type` and return the wire dict.

    Raises:
        pydantic.ValidationError: data does not fit the known shape
    """
    if isinstance(data, NotificationPayload):
        return data.to_data()

    data = dict(data or {})
    model = PAYLOAD_MODELS.get(notification_type)
    if model is None:
        return data
    return model.model_validate(data).to_data()
