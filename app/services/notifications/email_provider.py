"""
SendGrid v3 email provider.
"""

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.notification_domain import Notification, NotificationTarget
from app.services.notifications.email_templates import render_email

logger = get_logger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"
REQUEST_TIMEOUT = 10  # seconds


class EmailProviderError(Exception):
    """Email send failed (transport or provider rejection)."""

    def __init__(self, message: str, status_code: int | None = None, response_text: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


def build_sendgrid_message(target: NotificationTarget, notification: Notification) -> dict:
    content = render_email(
        notification.type,
        notification.data,
        body=notification.body,
        action_url=notification.action_url,
    )

    return {
        "personalizations": [
            {
                "to": [{"email": target.email_address}],
                "custom_args": {
                    "user_id": target.user_id,
                    "notification_type": notification.type.value,
                },
            }
        ],
        "from": {"email": settings.FROM_EMAIL, "name": settings.FROM_NAME},
        "subject": content.subject,
        "content": [
            {"type": "text/plain", "value": content.text},
            {"type": "text/html", "value": content.html},
        ],
        "tracking_settings": {
            "click_tracking": {"enable": True},
            "open_tracking": {"enable": True},
        },
    }


class SendGridEmailProvider:
    def __init__(self, api_key: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.api_key = api_key or settings.SENDGRID_API_KEY
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, target: NotificationTarget, notification: Notification) -> None:
        """
        Raises:
            EmailProviderError: not configured, no address, or SendGrid rejected the mail
        """
        if not self.is_configured():
            raise EmailProviderError("SendGrid is not configured")
        if not target.email_address:
            raise EmailProviderError("Target has no email address")

        message = build_sendgrid_message(target, notification)

        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
            try:
                response = await client.post(
                    SENDGRID_SEND_URL,
                    json=message,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
            except httpx.RequestError as exc:
                raise EmailProviderError(f"SendGrid request failed: {exc}") from exc

        # SendGrid answers 202 Accepted on success
        if response.status_code not in (200, 202):
            raise EmailProviderError(
                "SendGrid rejected message",
                status_code=response.status_code,
                response_text=response.text[:200],
            )

        logger.info(
            "Email notification sent",
            user_id=target.user_id,
            notification_type=notification.type.value,
        )
