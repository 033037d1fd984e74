# app/models/api/notification_request.py
from typing import Any

from pydantic import AliasChoices, BaseModel, Field


class MarkReadRequest(BaseModel):
    """Body for PUT /api/notifications. Either ids or mark_all_read."""

    notification_ids: list[str] | None = None
    mark_all_read: bool = False


class FcmTokenRequest(BaseModel):
    """Body for POST /api/notifications/fcm-token."""

    fcm_token: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("fcm_token", "fcmToken"),
    )


class PreferencesUpdateRequest(BaseModel):
    """
    Body for PUT /api/notifications/preferences.

    Unknown keys and non-boolean values are dropped by the route, not rejected.
    """

    preferences: dict[str, Any] | None = None


class AdminSendRequest(BaseModel):
    """Body for POST /api/admin/notifications/send."""

    target_user_ids: list[str] | None = None
    target_user_type: str | None = Field(
        default=None, description="customer | astrologer | administrator | all"
    )
    notification: dict[str, Any] | None = None
