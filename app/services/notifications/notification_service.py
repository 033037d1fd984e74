"""
Notification dispatch: store, gate on preferences, fan out to channels.

Pipeline for one recipient:
1. Insert a `pending` record (the record exists even if every channel fails)
2. Resolve preferences (all enabled when none are stored)
3. Attempt each requested channel concurrently, each bounded by
   NOTIFICATION_PROVIDER_TIMEOUT_SECONDS; a channel runs only when both its
   global switch and the notification's category are enabled
4. Set the record's delivery status by id: delivered if any channel
   succeeded, failed otherwise

Provider and storage errors are logged and count as that channel's failure;
callers only ever see a bool (or a count for bulk sends).
"""

import asyncio

from pydantic import ValidationError

from app.config import settings
from app.infrastructure.observability.logging import get_logger, log_delivery
from app.models.domain.notification_domain import (
    DeliveryStatus,
    Notification,
    NotificationChannel,
    NotificationPreferences,
    NotificationRecord,
    NotificationTarget,
)
from app.repositories.notification_repository import NotificationRepository
from app.repositories.user_repository import UserRepository
from app.services.notifications.email_provider import SendGridEmailProvider
from app.services.notifications.payloads import normalize_payload
from app.services.notifications.push_provider import FcmPushProvider

logger = get_logger(__name__)


class NotificationService:
    def __init__(
        self,
        repository=NotificationRepository,
        users=UserRepository,
        push_provider: FcmPushProvider | None = None,
        email_provider: SendGridEmailProvider | None = None,
        timeout_seconds: float | None = None,
    ):
        self.repository = repository
        self.users = users
        self.push_provider = push_provider or FcmPushProvider()
        self.email_provider = email_provider or SendGridEmailProvider()
        self.timeout_seconds = timeout_seconds or settings.NOTIFICATION_PROVIDER_TIMEOUT_SECONDS

    async def send_to_user(self, target: NotificationTarget, notification: Notification) -> bool:
        """
        Deliver one notification to one user.

        Returns:
            True iff at least one channel succeeded. Never raises.
        """
        try:
            return await self._send_to_user(target, notification)
        except Exception as e:
            logger.error(
                "Notification dispatch failed",
                user_id=target.user_id,
                notification_type=notification.type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def _send_to_user(self, target: NotificationTarget, notification: Notification) -> bool:
        notification = notification.model_copy(
            update={"data": self._normalize_data(notification)}
        )
        channels = notification.resolved_channels()

        logger.info(
            "Sending notification",
            user_id=target.user_id,
            notification_type=notification.type.value,
            channels=[c.value for c in channels],
        )

        record = await self._store(target, notification)
        preferences = await self._resolve_preferences(target)

        results = await asyncio.gather(
            *(
                self._attempt_channel(channel, target, notification, preferences, record)
                for channel in channels
            )
        )
        success_count = sum(1 for ok in results if ok)

        if record is not None:
            status = DeliveryStatus.DELIVERED if success_count > 0 else DeliveryStatus.FAILED
            await self._update_status(record, status)

        log_delivery(target.user_id, notification.type.value, success_count, len(channels))
        return success_count > 0

    async def send_bulk_notifications(
        self, targets: list[NotificationTarget], notification: Notification
    ) -> int:
        """
        Send to every target concurrently; one target's failure never affects another.

        Returns:
            Number of targets for which at least one channel succeeded.
        """
        if not targets:
            return 0

        logger.info(
            "Sending bulk notification",
            notification_type=notification.type.value,
            target_count=len(targets),
        )

        results = await asyncio.gather(
            *(self.send_to_user(target, notification) for target in targets),
            return_exceptions=True,
        )
        success_count = sum(1 for r in results if r is True)

        logger.info(
            "Bulk notification complete",
            notification_type=notification.type.value,
            succeeded=success_count,
            target_count=len(targets),
        )
        return success_count

    def _normalize_data(self, notification: Notification) -> dict:
        try:
            return normalize_payload(notification.type, notification.data)
        except ValidationError as e:
            logger.warning(
                "Notification data does not match its type, sending as-is",
                notification_type=notification.type.value,
                error_count=e.error_count(),
            )
            return dict(notification.data)

    async def _store(
        self, target: NotificationTarget, notification: Notification
    ) -> NotificationRecord | None:
        try:
            return await self.repository.create(target, notification, notification.data)
        except Exception as e:
            # Storage failure must not block delivery
            logger.error(
                "Failed to store notification record",
                user_id=target.user_id,
                notification_type=notification.type.value,
                error=str(e),
            )
            return None

    async def _resolve_preferences(self, target: NotificationTarget) -> NotificationPreferences:
        if target.preferences is not None:
            return target.preferences
        try:
            return await self.users.get_preferences(target.user_id)
        except Exception as e:
            logger.warning(
                "Could not load notification preferences, using defaults",
                user_id=target.user_id,
                error=str(e),
            )
            return NotificationPreferences()

    async def _update_status(self, record: NotificationRecord, status: DeliveryStatus) -> None:
        try:
            await self.repository.update_delivery_status(record.id, status)
        except Exception as e:
            logger.error(
                "Failed to update notification delivery status",
                notification_id=record.id,
                status=status.value,
                error=str(e),
            )

    async def _attempt_channel(
        self,
        channel: NotificationChannel,
        target: NotificationTarget,
        notification: Notification,
        preferences: NotificationPreferences,
        record: NotificationRecord | None,
    ) -> bool:
        if not preferences.allows_channel(channel):
            logger.debug("Channel disabled by user", user_id=target.user_id, channel=channel.value)
            return False

        if not preferences.allows_type(notification.type):
            logger.info(
                "Notification category disabled by user",
                user_id=target.user_id,
                notification_type=notification.type.value,
                channel=channel.value,
            )
            return False

        try:
            if channel == NotificationChannel.PUSH:
                return await asyncio.wait_for(
                    self._send_push(target, notification), timeout=self.timeout_seconds
                )
            if channel == NotificationChannel.EMAIL:
                return await asyncio.wait_for(
                    self._send_email(target, notification), timeout=self.timeout_seconds
                )
            # In-app delivery is the stored record itself
            return record is not None

        except TimeoutError:
            logger.error(
                "Notification channel timed out",
                user_id=target.user_id,
                channel=channel.value,
                timeout_seconds=self.timeout_seconds,
            )
            return False
        except Exception as e:
            logger.error(
                "Notification channel failed",
                user_id=target.user_id,
                channel=channel.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def _send_push(self, target: NotificationTarget, notification: Notification) -> bool:
        if not target.push_token or not self.push_provider.is_configured():
            logger.debug(
                "Push skipped: provider not configured or no token",
                user_id=target.user_id,
            )
            return False

        await self.push_provider.send(target, notification)
        return True

    async def _send_email(self, target: NotificationTarget, notification: Notification) -> bool:
        if not target.email_address or not self.email_provider.is_configured():
            logger.debug(
                "Email skipped: provider not configured or no address",
                user_id=target.user_id,
            )
            return False

        await self.email_provider.send(target, notification)
        return True


# Global instance
notification_service = NotificationService()
