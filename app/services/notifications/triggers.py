"""
Event -> notification mapping.

One coroutine per application event. Each loads the recipient(s), builds
the notification and hands it to the dispatch service. Failures are logged
and reported as False / 0; an event source never sees an exception.
"""

from datetime import UTC, datetime
from decimal import Decimal

from app.infrastructure.observability.logging import get_logger
from app.models.domain.notification_domain import (
    Notification,
    NotificationChannel,
    NotificationPriority,
    NotificationTarget,
    NotificationType,
)
from app.repositories.user_repository import UserRepository
from app.services.notifications.notification_service import (
    NotificationService,
    notification_service,
)
from app.services.notifications.payloads import (
    AstrologerReviewPayload,
    CallRequestPayload,
    CallResponsePayload,
    ChatMessagePayload,
    MaintenancePayload,
    OrderDeliveredPayload,
    OrderPlacedPayload,
    OrderShippedPayload,
    PaymentPayload,
    PromotionalPayload,
    SessionPayload,
    WalletRechargePayload,
    WithdrawalPayload,
)

logger = get_logger(__name__)

CHAT_PREVIEW_LENGTH = 50


def preview_message(message: str) -> str:
    if len(message) > CHAT_PREVIEW_LENGTH:
        return message[:CHAT_PREVIEW_LENGTH] + "..."
    return message


class NotificationTriggers:
    def __init__(self, service: NotificationService = notification_service, users=UserRepository):
        self.service = service
        self.users = users

    async def _send(self, event: str, user_id: str, notification: Notification) -> bool:
        try:
            target = await self.users.get_target(user_id)
            if target is None:
                logger.warning("Notification recipient not found", trigger=event, user_id=user_id)
                return False

            sent = await self.service.send_to_user(target, notification)
            logger.info("Notification trigger fired", trigger=event, user_id=user_id, sent=sent)
            return sent

        except Exception as e:
            logger.error("Notification trigger failed", trigger=event, user_id=user_id, error=str(e))
            return False

    async def _broadcast(
        self, event: str, targets: list[NotificationTarget], notification: Notification
    ) -> int:
        success_count = await self.service.send_bulk_notifications(targets, notification)
        logger.info(
            "Bulk notification trigger fired",
            trigger=event,
            succeeded=success_count,
            target_count=len(targets),
        )
        return success_count

    async def _full_name(self, user_id: str) -> str | None:
        try:
            return await self.users.get_full_name(user_id)
        except Exception as e:
            logger.warning("Could not load user name", user_id=user_id, error=str(e))
            return None

    # --- chat -------------------------------------------------------------

    async def on_chat_message(
        self, sender_id: str, receiver_id: str, message: str, session_id: str | None = None
    ) -> bool:
        sender_name = await self._full_name(sender_id) or "Someone"
        return await self._send(
            "chat_message",
            receiver_id,
            Notification(
                type=NotificationType.CHAT_MESSAGE,
                title=f"New message from {sender_name}",
                body=preview_message(message),
                data=ChatMessagePayload(
                    sender_id=sender_id, sender_name=sender_name, session_id=session_id
                ).to_data(),
                priority=NotificationPriority.HIGH,
                channels=[NotificationChannel.PUSH],
            ),
        )

    async def on_chat_session_started(
        self, session_id: str, customer_id: str, astrologer_id: str
    ) -> bool:
        customer_name = await self._full_name(customer_id)
        return await self._send(
            "session_started",
            astrologer_id,
            Notification(
                type=NotificationType.SESSION_STARTED,
                title="New Chat Session! 💬",
                body=f"{customer_name or 'A customer'} has started a chat session with you.",
                data=SessionPayload(
                    session_id=session_id,
                    customer_id=customer_id,
                    customer_name=customer_name,
                ).to_data(),
            ),
        )

    async def on_chat_session_ended(
        self,
        session_id: str,
        customer_id: str,
        astrologer_id: str,
        duration_minutes: int | None = None,
    ) -> bool:
        astrologer_name = await self._full_name(astrologer_id)
        return await self._send(
            "session_ended",
            customer_id,
            Notification(
                type=NotificationType.SESSION_ENDED,
                title="Chat Session Ended",
                body=f"Your chat session with {astrologer_name or 'your astrologer'} has ended.",
                data=SessionPayload(
                    session_id=session_id,
                    astrologer_id=astrologer_id,
                    duration_minutes=duration_minutes,
                ).to_data(),
            ),
        )

    # --- calls ------------------------------------------------------------

    async def on_incoming_call(
        self, caller_id: str, receiver_id: str, call_type: str, session_id: str | None = None
    ) -> bool:
        """Always urgent and push-only: the phone must ring even when the app is backgrounded."""
        caller_name = await self._full_name(caller_id) or "Someone"
        return await self._send(
            "incoming_call",
            receiver_id,
            Notification(
                type=NotificationType.CALL_REQUEST,
                title=f"Incoming {call_type} call 📞",
                body=f"{caller_name} is calling you",
                data=CallRequestPayload(
                    caller_id=caller_id,
                    caller_name=caller_name,
                    call_type=call_type,
                    session_id=session_id,
                ).to_data(),
                priority=NotificationPriority.URGENT,
                channels=[NotificationChannel.PUSH],
            ),
        )

    async def on_call_accepted(self, session_id: str, caller_id: str, responder_id: str) -> bool:
        responder_name = await self._full_name(responder_id)
        return await self._send(
            "call_accepted",
            caller_id,
            Notification(
                type=NotificationType.CALL_ACCEPTED,
                title="Call Accepted",
                body=f"{responder_name or 'The other party'} accepted your call.",
                data=CallResponsePayload(
                    session_id=session_id,
                    responder_id=responder_id,
                    responder_name=responder_name,
                ).to_data(),
                priority=NotificationPriority.HIGH,
                channels=[NotificationChannel.PUSH],
            ),
        )

    async def on_call_rejected(self, session_id: str, caller_id: str, responder_id: str) -> bool:
        responder_name = await self._full_name(responder_id)
        return await self._send(
            "call_rejected",
            caller_id,
            Notification(
                type=NotificationType.CALL_REJECTED,
                title="Call Declined",
                body=f"{responder_name or 'The other party'} is unavailable right now.",
                data=CallResponsePayload(
                    session_id=session_id,
                    responder_id=responder_id,
                    responder_name=responder_name,
                ).to_data(),
                priority=NotificationPriority.HIGH,
                channels=[NotificationChannel.PUSH],
            ),
        )

    # --- payments ---------------------------------------------------------

    async def on_payment_success(self, user_id: str, amount: Decimal, transaction_id: str) -> bool:
        return await self._send(
            "payment_success",
            user_id,
            Notification(
                type=NotificationType.PAYMENT_SUCCESS,
                title="Payment Successful!",
                body=f"Your payment of ₹{amount} has been processed successfully.",
                data=PaymentPayload(amount=amount, transaction_id=transaction_id).to_data(),
                priority=NotificationPriority.HIGH,
            ),
        )

    async def on_payment_failed(
        self, user_id: str, amount: Decimal, transaction_id: str | None = None, reason: str | None = None
    ) -> bool:
        return await self._send(
            "payment_failed",
            user_id,
            Notification(
                type=NotificationType.PAYMENT_FAILED,
                title="Payment Failed",
                body=f"Your payment of ₹{amount} could not be processed. No money was deducted.",
                data=PaymentPayload(
                    amount=amount, transaction_id=transaction_id, reason=reason
                ).to_data(),
                priority=NotificationPriority.HIGH,
            ),
        )

    async def on_wallet_recharged(self, user_id: str, amount: Decimal, new_balance: Decimal) -> bool:
        return await self._send(
            "wallet_recharged",
            user_id,
            Notification(
                type=NotificationType.WALLET_RECHARGED,
                title="Wallet Recharged! 💰",
                body=f"₹{amount} has been added to your wallet. New balance: ₹{new_balance}",
                data=WalletRechargePayload(
                    amount=amount, new_balance=new_balance, recharged_at=datetime.now(UTC)
                ).to_data(),
            ),
        )

    async def on_withdrawal_processed(self, astrologer_id: str, amount: Decimal, status: str) -> bool:
        if status == "approved":
            title = "Withdrawal Approved! ✅"
            body = f"Your withdrawal request of ₹{amount} has been approved and processed."
        else:
            title = "Withdrawal Update"
            body = f"Your withdrawal request of ₹{amount} has been {status}."

        return await self._send(
            "withdrawal_processed",
            astrologer_id,
            Notification(
                type=NotificationType.WITHDRAWAL_PROCESSED,
                title=title,
                body=body,
                data=WithdrawalPayload(
                    amount=amount, status=status, processed_at=datetime.now(UTC)
                ).to_data(),
            ),
        )

    # --- orders -----------------------------------------------------------

    async def on_order_placed(
        self, user_id: str, order_number: str, total_amount: Decimal, order_id: str | None = None
    ) -> bool:
        return await self._send(
            "order_placed",
            user_id,
            Notification(
                type=NotificationType.ORDER_PLACED,
                title="Order Confirmed! 📦",
                body=f"Your order {order_number} for ₹{total_amount} has been placed successfully.",
                data=OrderPlacedPayload(
                    order_number=order_number, total_amount=total_amount, order_id=order_id
                ).to_data(),
            ),
        )

    async def on_order_shipped(
        self,
        user_id: str,
        order_number: str,
        tracking_number: str | None = None,
        tracking_url: str | None = None,
    ) -> bool:
        return await self._send(
            "order_shipped",
            user_id,
            Notification(
                type=NotificationType.ORDER_SHIPPED,
                title="Order Shipped! 🚚",
                body=f"Your order {order_number} has been shipped and is on its way!",
                data=OrderShippedPayload(
                    order_number=order_number,
                    tracking_number=tracking_number,
                    tracking_url=tracking_url,
                ).to_data(),
                action_url=tracking_url,
            ),
        )

    async def on_order_delivered(self, user_id: str, order_number: str) -> bool:
        return await self._send(
            "order_delivered",
            user_id,
            Notification(
                type=NotificationType.ORDER_DELIVERED,
                title="Order Delivered! 🎁",
                body=f"Your order {order_number} has been delivered. Enjoy!",
                data=OrderDeliveredPayload(
                    order_number=order_number, delivered_at=datetime.now(UTC)
                ).to_data(),
            ),
        )

    # --- astrologer applications -----------------------------------------

    async def on_astrologer_approved(self, astrologer_id: str) -> bool:
        return await self._send(
            "astrologer_approved",
            astrologer_id,
            Notification(
                type=NotificationType.ASTROLOGER_APPROVED,
                title="Welcome to TrueAstroTalk! 🎉",
                body=(
                    "Congratulations! Your astrologer application has been approved. "
                    "You can now start offering consultations."
                ),
                data=AstrologerReviewPayload(
                    astrologer_id=astrologer_id,
                    next_steps=["Complete profile setup", "Set consultation rates", "Go online"],
                ).to_data(),
            ),
        )

    async def on_astrologer_rejected(self, astrologer_id: str, reason: str | None = None) -> bool:
        return await self._send(
            "astrologer_rejected",
            astrologer_id,
            Notification(
                type=NotificationType.ASTROLOGER_REJECTED,
                title="Application Update",
                body="Your astrologer application needs review. Please check your email for details.",
                data=AstrologerReviewPayload(
                    astrologer_id=astrologer_id,
                    reason=reason or "Please review your application details",
                ).to_data(),
            ),
        )

    # --- broadcasts -------------------------------------------------------

    async def send_promotional_notification(
        self, target_user_type: str, title: str, body: str, data: dict | None = None
    ) -> int:
        """
        Args:
            target_user_type: customer | astrologer | all
        """
        try:
            targets = await self.users.list_targets(
                user_type=None if target_user_type == "all" else target_user_type,
                preference_flag="promotional_notifications",
            )
            return await self._broadcast(
                "promotional",
                targets,
                Notification(
                    type=NotificationType.PROMOTIONAL,
                    title=title,
                    body=body,
                    data=PromotionalPayload.model_validate(data or {}).to_data(),
                ),
            )
        except Exception as e:
            logger.error("Promotional notification failed", error=str(e))
            return 0

    async def send_maintenance_notification(
        self, title: str, body: str, scheduled_time: datetime | None = None
    ) -> int:
        try:
            targets = await self.users.list_targets(preference_flag="system_notifications")
            return await self._broadcast(
                "system_maintenance",
                targets,
                Notification(
                    type=NotificationType.SYSTEM_MAINTENANCE,
                    title=title,
                    body=body,
                    data=MaintenancePayload(scheduled_time=scheduled_time).to_data(),
                    scheduled_at=scheduled_time,
                ),
            )
        except Exception as e:
            logger.error("Maintenance notification failed", error=str(e))
            return 0


# Global instance
notification_triggers = NotificationTriggers()
