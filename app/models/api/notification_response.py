# app/models/api/notification_response.py
import math
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.models.domain.notification_domain import (
    DeliveryStatus,
    NotificationPreferences,
    NotificationPriority,
    NotificationRecord,
    NotificationType,
)


class NotificationItem(BaseModel):
    """One notification as the apps and the admin panel see it."""

    id: str
    user_id: str | None = None
    type: NotificationType
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    image_url: str | None = None
    action_url: str | None = None
    priority: NotificationPriority
    is_read: bool
    delivery_status: DeliveryStatus
    created_at: datetime
    updated_at: datetime
    read_at: datetime | None = None

    @classmethod
    def from_record(cls, record: NotificationRecord, include_user: bool = False) -> "NotificationItem":
        return cls(
            id=record.id,
            user_id=record.user_id if include_user else None,
            type=record.type,
            title=record.title,
            body=record.body,
            data=record.data,
            image_url=record.image_url,
            action_url=record.action_url,
            priority=record.priority,
            is_read=record.is_read,
            delivery_status=record.delivery_status,
            created_at=record.created_at,
            updated_at=record.updated_at,
            read_at=record.read_at,
        )


class Pagination(BaseModel):
    current_page: int
    per_page: int
    total_count: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, per_page: int, total_count: int) -> "Pagination":
        return cls(
            current_page=page,
            per_page=per_page,
            total_count=total_count,
            total_pages=math.ceil(total_count / per_page) if per_page else 0,
            has_next=page * per_page < total_count,
            has_prev=page > 1,
        )


class NotificationListData(BaseModel):
    notifications: list[NotificationItem]
    unread_count: int
    pagination: Pagination


class NotificationListResponse(BaseModel):
    """Response for GET /api/notifications"""

    success: bool = True
    data: NotificationListData


class MarkReadData(BaseModel):
    updated_count: int


class MarkReadResponse(BaseModel):
    """Response for PUT /api/notifications"""

    success: bool = True
    message: str
    data: MarkReadData


class SimpleResponse(BaseModel):
    success: bool = True
    message: str


class PreferencesData(BaseModel):
    preferences: NotificationPreferences


class PreferencesResponse(BaseModel):
    """Response for GET/PUT /api/notifications/preferences"""

    success: bool = True
    message: str | None = None
    data: PreferencesData


class AdminSendData(BaseModel):
    total_targets: int
    successful_deliveries: int
    failed_deliveries: int


class AdminSendResponse(BaseModel):
    """Response for POST /api/admin/notifications/send"""

    success: bool = True
    message: str
    data: AdminSendData


class NotificationHistoryData(BaseModel):
    notifications: list[NotificationItem]
    pagination: Pagination


class NotificationHistoryResponse(BaseModel):
    """Response for GET /api/admin/notifications/history"""

    success: bool = True
    data: NotificationHistoryData


class RateLimitStatusResponse(BaseModel):
    """Response for GET /api/admin/rate-limits/{key}"""

    key: str
    count: int
    window_start: datetime
    last_request: datetime


class RateLimitResetResponse(BaseModel):
    """Response for DELETE /api/admin/rate-limits/{key}"""

    success: bool = True
    key: str
    reset: bool
