"""
Firebase Cloud Messaging (HTTP v1) push provider.

Authenticates with the service-account key from settings: a short-lived
RS256 assertion is exchanged at Google's token endpoint for an OAuth2
access token, cached until shortly before it expires.
"""

import asyncio
import json
import time
from typing import Any

import httpx
import jwt

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.notification_domain import (
    Notification,
    NotificationPriority,
    NotificationTarget,
    NotificationType,
)

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 2
BACKOFF_BASE = 0.5  # 0.5, 1.0 seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
TOKEN_REFRESH_MARGIN = 60  # seconds

_CHANNEL_IDS: dict[NotificationType, str] = {
    NotificationType.CHAT_MESSAGE: "chat_channel",
    NotificationType.SESSION_STARTED: "chat_channel",
    NotificationType.SESSION_ENDED: "chat_channel",
    NotificationType.CALL_REQUEST: "calls_channel",
    NotificationType.CALL_ACCEPTED: "calls_channel",
    NotificationType.CALL_REJECTED: "calls_channel",
    NotificationType.PAYMENT_SUCCESS: "payments_channel",
    NotificationType.PAYMENT_FAILED: "payments_channel",
    NotificationType.WALLET_RECHARGED: "payments_channel",
    NotificationType.WITHDRAWAL_PROCESSED: "payments_channel",
    NotificationType.ORDER_PLACED: "orders_channel",
    NotificationType.ORDER_SHIPPED: "orders_channel",
    NotificationType.ORDER_DELIVERED: "orders_channel",
    NotificationType.PROMOTIONAL: "promotional_channel",
}

_ANDROID_NOTIFICATION_PRIORITY: dict[NotificationPriority, str] = {
    NotificationPriority.URGENT: "max",
    NotificationPriority.HIGH: "high",
    NotificationPriority.NORMAL: "default",
    NotificationPriority.LOW: "low",
}


class PushProviderError(Exception):
    """Push send failed (auth, transport or provider rejection)."""

    def __init__(self, message: str, status_code: int | None = None, response_data: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data or {}


def notification_channel_id(notification_type: NotificationType) -> str:
    return _CHANNEL_IDS.get(notification_type, "default_channel")


def android_message_priority(priority: NotificationPriority) -> str:
    return "high" if priority in (NotificationPriority.HIGH, NotificationPriority.URGENT) else "normal"


def android_notification_priority(priority: NotificationPriority) -> str:
    return _ANDROID_NOTIFICATION_PRIORITY.get(priority, "default")


def to_fcm_data(data: dict[str, Any]) -> dict[str, str]:
    """FCM only accepts string values in `data`."""
    result: dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, bool):
            result[key] = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            result[key] = json.dumps(value, default=str)
        else:
            result[key] = str(value)
    return result


def build_fcm_message(target: NotificationTarget, notification: Notification) -> dict[str, Any]:
    """FCM v1 `message` body for one device token."""
    android_priority = android_notification_priority(notification.priority)

    message_notification = {"title": notification.title, "body": notification.body}
    if notification.image_url:
        message_notification["image"] = notification.image_url

    return {
        "token": target.push_token,
        "notification": message_notification,
        "data": to_fcm_data(
            {
                "type": notification.type.value,
                "userId": target.user_id,
                **notification.data,
            }
        ),
        "android": {
            "priority": android_message_priority(notification.priority),
            "notification": {
                "channel_id": notification_channel_id(notification.type),
                "notification_priority": f"PRIORITY_{android_priority.upper()}",
                "default_sound": True,
                "default_vibrate_timings": True,
            },
        },
        "apns": {
            "payload": {
                "aps": {
                    "alert": {"title": notification.title, "body": notification.body},
                    "badge": 1,
                    "sound": "default",
                    "category": notification.type.value,
                }
            }
        },
    }


class FcmPushProvider:
    """Sends push notifications through FCM HTTP v1."""

    def __init__(
        self,
        project_id: str | None = None,
        client_email: str | None = None,
        private_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.project_id = project_id or settings.FIREBASE_PROJECT_ID
        self.client_email = client_email or settings.FIREBASE_CLIENT_EMAIL
        self.private_key = private_key or settings.firebase_private_key()
        self._transport = transport
        self._access_token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    def is_configured(self) -> bool:
        return bool(self.project_id and self.client_email and self.private_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport)

    def _build_assertion(self, now: int) -> str:
        claims = {
            "iss": self.client_email,
            "scope": FCM_SCOPE,
            "aud": GOOGLE_TOKEN_URL,
            "iat": now,
            "exp": now + 3600,
        }
        return jwt.encode(claims, self.private_key, algorithm="RS256")

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        async with self._token_lock:
            if self._access_token and time.time() < self._token_expires_at - TOKEN_REFRESH_MARGIN:
                return self._access_token

            now = int(time.time())
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                    "assertion": self._build_assertion(now),
                },
            )
            if response.status_code != 200:
                raise PushProviderError(
                    "FCM access token exchange failed",
                    status_code=response.status_code,
                    response_data=_safe_json(response),
                )

            payload = response.json()
            self._access_token = payload["access_token"]
            self._token_expires_at = now + int(payload.get("expires_in", 3600))
            logger.debug("FCM access token refreshed", expires_in=payload.get("expires_in"))
            return self._access_token

    async def send(self, target: NotificationTarget, notification: Notification) -> str:
        """
        Send one push message.

        Returns:
            FCM message name (projects/<id>/messages/<id>)

        Raises:
            PushProviderError: not configured, no token, or FCM rejected the message
        """
        if not self.is_configured():
            raise PushProviderError("FCM is not configured")
        if not target.push_token:
            raise PushProviderError("Target has no push token")

        body = {"message": build_fcm_message(target, notification)}
        url = FCM_SEND_URL.format(project_id=self.project_id)

        async with self._client() as client:
            access_token = await self._get_access_token(client)
            headers = {"Authorization": f"Bearer {access_token}"}

            for attempt in range(1, MAX_RETRIES + 2):
                try:
                    response = await client.post(url, json=body, headers=headers)
                except httpx.RequestError as exc:
                    if attempt > MAX_RETRIES:
                        raise PushProviderError(f"FCM request failed: {exc}") from exc
                    await self._backoff(attempt, error=str(exc))
                    continue

                if response.status_code in RETRY_STATUS_CODES and attempt <= MAX_RETRIES:
                    await self._backoff(attempt, status_code=response.status_code)
                    continue

                if response.status_code != 200:
                    raise PushProviderError(
                        "FCM rejected message",
                        status_code=response.status_code,
                        response_data=_safe_json(response),
                    )

                message_name = response.json().get("name", "")
                logger.info(
                    "Push notification sent",
                    user_id=target.user_id,
                    notification_type=notification.type.value,
                    message_name=message_name,
                )
                return message_name

        raise PushProviderError("FCM send failed after retries")

    async def _backoff(self, attempt: int, **context) -> None:
        wait_time = BACKOFF_BASE * (2 ** (attempt - 1))
        logger.warning("FCM transient failure, retrying", attempt=attempt, wait_time=wait_time, **context)
        await asyncio.sleep(wait_time)


def _safe_json(response: httpx.Response) -> dict:
    try:
        return response.json()
    except ValueError:
        return {"text": response.text[:200]}
