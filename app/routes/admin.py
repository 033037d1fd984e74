"""
admin.py
--------
Purpose:
    Administrator-only operations for the notification and rate limit layers.

Usage:
    1. POST   /api/admin/notifications/send     - Send to ids or to a whole user type
    2. GET    /api/admin/notifications/history  - All notifications, filterable
    3. GET    /api/admin/rate-limits/{key}      - Inspect a limiter key without counting
    4. DELETE /api/admin/rate-limits/{key}      - Clear a key (and its violations)

Every write is recorded in the audit log.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import ValidationError

from app.auth.verify import admin_dependency, claims_user_id
from app.infrastructure.observability.logging import get_logger
from app.middleware.rate_limiter import rate_limiter
from app.models.api.notification_request import AdminSendRequest
from app.models.api.notification_response import (
    AdminSendData,
    AdminSendResponse,
    NotificationHistoryData,
    NotificationHistoryResponse,
    NotificationItem,
    Pagination,
    RateLimitResetResponse,
    RateLimitStatusResponse,
)
from app.models.domain.notification_domain import (
    DeliveryStatus,
    Notification,
    NotificationType,
    UserType,
)
from app.repositories.notification_repository import NotificationRepository
from app.repositories.user_repository import UserRepository
from app.services.notifications.notification_service import notification_service
from app.utils.audit_helpers import audit_data_modification

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = get_logger(__name__)

TARGET_USER_TYPES = {t.value for t in UserType} | {"all"}


def _bad_request(error: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": error, "message": message},
    )


def _build_notification(raw: dict | None) -> Notification:
    if not raw or not raw.get("type") or not raw.get("title") or not raw.get("body"):
        raise _bad_request(
            "MISSING_NOTIFICATION_DATA", "Notification type, title, and body are required"
        )

    try:
        NotificationType(raw["type"])
    except ValueError as e:
        raise _bad_request("INVALID_NOTIFICATION_TYPE", "Invalid notification type") from e

    try:
        return Notification.model_validate(raw)
    except ValidationError as e:
        raise _bad_request(
            "INVALID_NOTIFICATION_DATA", f"Invalid notification fields: {e.error_count()} error(s)"
        ) from e


@router.post("/notifications/send", response_model=AdminSendResponse)
async def send_notification(
    body: AdminSendRequest, request: Request, claims: dict = Depends(admin_dependency)
):
    """
    Raises:
        400: MISSING_NOTIFICATION_DATA / INVALID_NOTIFICATION_TYPE /
             MISSING_TARGET / NO_TARGET_USERS
    """
    notification = _build_notification(body.notification)

    if body.target_user_ids:
        targets = await UserRepository.list_targets(user_ids=body.target_user_ids)
    elif body.target_user_type:
        if body.target_user_type not in TARGET_USER_TYPES:
            raise _bad_request("INVALID_TARGET_USER_TYPE", "Unknown target user type")
        user_type = None if body.target_user_type == "all" else body.target_user_type
        targets = await UserRepository.list_targets(user_type=user_type)
    else:
        raise _bad_request("MISSING_TARGET", "Target user IDs or user type is required")

    if not targets:
        raise _bad_request("NO_TARGET_USERS", "No target users found")

    success_count = await notification_service.send_bulk_notifications(targets, notification)

    admin_id = claims_user_id(claims)
    logger.info(
        "Admin notification sent",
        admin_id=admin_id,
        notification_type=notification.type.value,
        succeeded=success_count,
        target_count=len(targets),
    )
    await audit_data_modification(
        conn=request,
        user_id=admin_id,
        action="notification_broadcast",
        resource_type="notification",
        resource_count=len(targets),
        changes={
            "type": notification.type.value,
            "title": notification.title,
            "target_user_type": body.target_user_type,
            "successful_deliveries": success_count,
        },
    )

    return AdminSendResponse(
        message="Notifications sent successfully",
        data=AdminSendData(
            total_targets=len(targets),
            successful_deliveries=success_count,
            failed_deliveries=len(targets) - success_count,
        ),
    )


@router.get("/notifications/history", response_model=NotificationHistoryResponse)
async def notification_history(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    type: NotificationType | None = None,
    status_filter: DeliveryStatus | None = Query(None, alias="status"),
    search: str | None = Query(None, max_length=200),
    claims: dict = Depends(admin_dependency),
):
    records, total = await NotificationRepository.history(
        notification_type=type,
        delivery_status=status_filter,
        search=search or None,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return NotificationHistoryResponse(
        data=NotificationHistoryData(
            notifications=[NotificationItem.from_record(r, include_user=True) for r in records],
            pagination=Pagination.build(page, limit, total),
        )
    )


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=UTC)


@router.get("/rate-limits/{key:path}", response_model=RateLimitStatusResponse)
async def rate_limit_status(key: str, claims: dict = Depends(admin_dependency)):
    record = await rate_limiter.get_status(key)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "RATE_LIMIT_NOT_FOUND", "message": "No rate limit record for key"},
        )

    return RateLimitStatusResponse(
        key=record.key,
        count=record.count,
        window_start=_from_ms(record.window_start_ms),
        last_request=_from_ms(record.last_request_ms),
    )


@router.delete("/rate-limits/{key:path}", response_model=RateLimitResetResponse)
async def reset_rate_limit(key: str, request: Request, claims: dict = Depends(admin_dependency)):
    reset = await rate_limiter.reset_limit(key)

    await audit_data_modification(
        conn=request,
        user_id=claims_user_id(claims),
        action="rate_limit_reset",
        resource_type="rate_limit",
        resource_id=key,
    )
    return RateLimitResetResponse(key=key, reset=reset)
