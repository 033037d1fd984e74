from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.models.domain.notification_domain import (
    NotificationChannel,
    NotificationPreferences,
    NotificationPriority,
    NotificationType,
    UserType,
)
from app.services.notifications.triggers import NotificationTriggers, preview_message
from tests.support import ASTROLOGER_ID, CUSTOMER_ID


@pytest.fixture
def service():
    service = MagicMock()
    service.send_to_user = AsyncMock(return_value=True)
    service.send_bulk_notifications = AsyncMock(side_effect=lambda targets, notification: len(targets))
    return service


@pytest.fixture
def triggers(service, fake_users):
    return NotificationTriggers(service=service, users=fake_users)


def sent_notification(service):
    target, notification = service.send_to_user.await_args.args
    return target, notification


def test_preview_message_truncates_long_text():
    assert preview_message("short") == "short"
    assert preview_message("x" * 60) == "x" * 50 + "..."
    assert preview_message("y" * 50) == "y" * 50


@pytest.mark.asyncio
async def test_chat_message_is_high_priority_push_only(triggers, service):
    sent = await triggers.on_chat_message(CUSTOMER_ID, ASTROLOGER_ID, "a" * 80, session_id="s-1")

    assert sent is True
    target, notification = sent_notification(service)
    assert target.user_id == ASTROLOGER_ID
    assert notification.type == NotificationType.CHAT_MESSAGE
    assert notification.title == "New message from Asha Rao"
    assert notification.body == "a" * 50 + "..."
    assert notification.priority == NotificationPriority.HIGH
    assert notification.channels == [NotificationChannel.PUSH]
    assert notification.data == {"senderId": CUSTOMER_ID, "senderName": "Asha Rao", "sessionId": "s-1"}


@pytest.mark.asyncio
async def test_incoming_call_is_urgent_push_only(triggers, service):
    await triggers.on_incoming_call(ASTROLOGER_ID, CUSTOMER_ID, "video", session_id="s-2")

    target, notification = sent_notification(service)
    assert target.user_id == CUSTOMER_ID
    assert notification.type == NotificationType.CALL_REQUEST
    assert notification.priority == NotificationPriority.URGENT
    assert notification.channels == [NotificationChannel.PUSH]
    assert notification.title == "Incoming video call 📞"
    assert notification.body == "Guru Dev is calling you"


@pytest.mark.asyncio
async def test_unknown_sender_falls_back_to_someone(triggers, service):
    await triggers.on_chat_message("unknown-user", ASTROLOGER_ID, "hi")

    _, notification = sent_notification(service)
    assert notification.title == "New message from Someone"


@pytest.mark.asyncio
async def test_missing_recipient_returns_false(triggers, service):
    assert await triggers.on_payment_success("nobody", Decimal("10"), "txn") is False
    service.send_to_user.assert_not_awaited()


@pytest.mark.asyncio
async def test_dispatch_error_returns_false(triggers, service):
    service.send_to_user.side_effect = RuntimeError("boom")

    assert await triggers.on_order_delivered(CUSTOMER_ID, "ORD-1") is False


@pytest.mark.asyncio
async def test_payment_success_uses_default_channels(triggers, service):
    await triggers.on_payment_success(CUSTOMER_ID, Decimal("500"), "txn_1")

    _, notification = sent_notification(service)
    assert notification.channels is None
    assert notification.priority == NotificationPriority.HIGH
    assert notification.data == {"amount": "500", "transactionId": "txn_1"}


@pytest.mark.asyncio
async def test_withdrawal_titles(triggers, service):
    await triggers.on_withdrawal_processed(ASTROLOGER_ID, Decimal("1500"), "approved")
    _, approved = sent_notification(service)

    await triggers.on_withdrawal_processed(ASTROLOGER_ID, Decimal("1500"), "rejected")
    _, rejected = sent_notification(service)

    assert approved.title == "Withdrawal Approved! ✅"
    assert rejected.title == "Withdrawal Update"
    assert "rejected" in rejected.body


@pytest.mark.asyncio
async def test_order_shipped_links_tracking(triggers, service):
    await triggers.on_order_shipped(CUSTOMER_ID, "ORD-7", "TRK1", "https://track.example.com/TRK1")

    _, notification = sent_notification(service)
    assert notification.action_url == "https://track.example.com/TRK1"
    assert notification.data["trackingNumber"] == "TRK1"


@pytest.mark.asyncio
async def test_session_started_notifies_astrologer(triggers, service):
    await triggers.on_chat_session_started("s-9", CUSTOMER_ID, ASTROLOGER_ID)

    target, notification = sent_notification(service)
    assert target.user_id == ASTROLOGER_ID
    assert "Asha Rao" in notification.body


@pytest.mark.asyncio
async def test_promotional_broadcast_respects_opt_out(triggers, service, fake_users):
    fake_users.add(
        "66666666-6666-6666-6666-666666666666",
        UserType.CUSTOMER,
        preferences=NotificationPreferences(promotional_notifications=False),
    )

    count = await triggers.send_promotional_notification("customer", "Diwali offer", "50% off")

    assert count == 1
    assert fake_users.list_targets_calls[-1] == {
        "user_ids": None,
        "user_type": "customer",
        "preference_flag": "promotional_notifications",
    }
    _, notification = service.send_bulk_notifications.await_args.args
    assert notification.type == NotificationType.PROMOTIONAL


@pytest.mark.asyncio
async def test_promotional_broadcast_to_all(triggers, fake_users):
    assert await triggers.send_promotional_notification("all", "Hello", "Everyone") == 2
    assert fake_users.list_targets_calls[-1]["user_type"] is None


@pytest.mark.asyncio
async def test_maintenance_notification_targets_everyone(triggers, service, fake_users):
    count = await triggers.send_maintenance_notification("Maintenance", "Down at 2am")

    assert count == 2
    assert fake_users.list_targets_calls[-1]["preference_flag"] == "system_notifications"


@pytest.mark.asyncio
async def test_call_accepted_tells_the_caller(triggers, service):
    await triggers.on_call_accepted("s-3", CUSTOMER_ID, ASTROLOGER_ID)

    target, notification = sent_notification(service)
    assert target.user_id == CUSTOMER_ID
    assert notification.type == NotificationType.CALL_ACCEPTED
    assert notification.body == "Guru Dev accepted your call."
    assert notification.priority == NotificationPriority.HIGH
    assert notification.channels == [NotificationChannel.PUSH]
    assert notification.data == {"sessionId": "s-3", "responderId": ASTROLOGER_ID, "responderName": "Guru Dev"}


@pytest.mark.asyncio
async def test_call_rejected_tells_the_caller(triggers, service):
    await triggers.on_call_rejected("s-4", ASTROLOGER_ID, CUSTOMER_ID)

    target, notification = sent_notification(service)
    assert target.user_id == ASTROLOGER_ID
    assert notification.type == NotificationType.CALL_REJECTED
    assert notification.title == "Call Declined"
    assert notification.priority == NotificationPriority.HIGH
    assert notification.channels == [NotificationChannel.PUSH]


@pytest.mark.asyncio
async def test_order_placed_uses_default_channels(triggers, service):
    await triggers.on_order_placed(CUSTOMER_ID, "ORD-9", Decimal("1299.00"), order_id="o-9")

    target, notification = sent_notification(service)
    assert target.user_id == CUSTOMER_ID
    assert notification.type == NotificationType.ORDER_PLACED
    assert notification.body == "Your order ORD-9 for ₹1299.00 has been placed successfully."
    assert notification.priority == NotificationPriority.NORMAL
    assert notification.channels is None
    assert notification.resolved_channels() == [NotificationChannel.PUSH, NotificationChannel.EMAIL]
    assert notification.data["orderNumber"] == "ORD-9"
    assert notification.data["estimatedDelivery"] == "3-5 business days"
