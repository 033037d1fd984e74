"""
notifications.py
----------------
Purpose:
    Notification inbox and settings for the signed-in user.

Usage:
    1. GET  /api/notifications              - Paginated inbox (unread_only, type filters)
    2. PUT  /api/notifications              - Mark ids (or everything) read
    3. POST /api/notifications/fcm-token    - Register the device push token
    4. GET  /api/notifications/preferences  - Current delivery switches
    5. PUT  /api/notifications/preferences  - Update any of the eight switches

All routes require `Authorization: Bearer <token>` and share the general
API rate limit.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.auth.verify import auth_dependency, claims_user_id
from app.infrastructure.observability.logging import get_logger
from app.middleware.rate_limit_dependencies import rate_limit
from app.middleware.rate_limiter import RATE_LIMIT_CONFIGS
from app.models.api.notification_request import (
    FcmTokenRequest,
    MarkReadRequest,
    PreferencesUpdateRequest,
)
from app.models.api.notification_response import (
    MarkReadData,
    MarkReadResponse,
    NotificationItem,
    NotificationListData,
    NotificationListResponse,
    Pagination,
    PreferencesData,
    PreferencesResponse,
    SimpleResponse,
)
from app.models.domain.notification_domain import (
    PREFERENCE_FIELDS,
    NotificationPreferences,
    NotificationType,
)
from app.repositories.notification_repository import NotificationRepository
from app.repositories.user_repository import UserRepository, parse_uuid

router = APIRouter(
    prefix="/api/notifications",
    tags=["notifications"],
    dependencies=[Depends(rate_limit("api", RATE_LIMIT_CONFIGS["api"]))],
)
logger = get_logger(__name__)

MIN_FCM_TOKEN_LENGTH = 20


def _bad_request(error: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": error, "message": message},
    )


def _user_not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": "USER_NOT_FOUND", "message": "User not found"},
    )


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    unread_only: bool = False,
    type: NotificationType | None = None,
    claims: dict = Depends(auth_dependency),
):
    user_id = claims_user_id(claims)
    records, total, unread = await NotificationRepository.list_for_user(
        user_id,
        limit=limit,
        offset=(page - 1) * limit,
        unread_only=unread_only,
        notification_type=type,
    )

    logger.info("Notifications listed", user_id=user_id, returned=len(records), total=total)
    return NotificationListResponse(
        data=NotificationListData(
            notifications=[NotificationItem.from_record(r) for r in records],
            unread_count=unread,
            pagination=Pagination.build(page, limit, total),
        )
    )


@router.put("", response_model=MarkReadResponse)
async def mark_read(body: MarkReadRequest, claims: dict = Depends(auth_dependency)):
    """
    Mark notifications read. Repeating the call is a no-op for rows that
    are already read, so `read_at` keeps its first value.

    Raises:
        400: INVALID_NOTIFICATION_IDS / MISSING_PARAMETERS
    """
    user_id = claims_user_id(claims)

    if body.notification_ids:
        valid_ids = [i for i in body.notification_ids if parse_uuid(i) is not None]
        if not valid_ids:
            raise _bad_request("INVALID_NOTIFICATION_IDS", "No valid notification IDs provided")
        updated = await NotificationRepository.mark_read(user_id, valid_ids)
        message = f"{updated} notification(s) marked as read"

    elif body.mark_all_read:
        updated = await NotificationRepository.mark_read(user_id)
        message = "All notifications marked as read"

    else:
        raise _bad_request(
            "MISSING_PARAMETERS", "Either notification_ids or mark_all_read parameter is required"
        )

    return MarkReadResponse(message=message, data=MarkReadData(updated_count=updated))


@router.post("/fcm-token", response_model=SimpleResponse)
async def register_fcm_token(body: FcmTokenRequest, claims: dict = Depends(auth_dependency)):
    user_id = claims_user_id(claims)
    token = body.fcm_token.strip()

    if len(token) < MIN_FCM_TOKEN_LENGTH:
        raise _bad_request("INVALID_FCM_TOKEN", "Valid FCM token is required")

    if not await UserRepository.register_push_token(user_id, token):
        raise _user_not_found()

    logger.info("Push token registered", user_id=user_id)
    return SimpleResponse(message="FCM token registered successfully")


@router.get("/preferences", response_model=PreferencesResponse)
async def get_preferences(claims: dict = Depends(auth_dependency)):
    user_id = claims_user_id(claims)
    target = await UserRepository.get_target(user_id)
    if target is None:
        raise _user_not_found()

    return PreferencesResponse(data=PreferencesData(preferences=target.preferences or NotificationPreferences()))


@router.put("/preferences", response_model=PreferencesResponse)
async def update_preferences(body: PreferencesUpdateRequest, claims: dict = Depends(auth_dependency)):
    """Only the eight known boolean switches are accepted; anything else is ignored."""
    if not isinstance(body.preferences, dict):
        raise _bad_request("INVALID_PREFERENCES", "Valid preferences object is required")

    updates = {
        key: value
        for key, value in body.preferences.items()
        if key in PREFERENCE_FIELDS and isinstance(value, bool)
    }
    if not updates:
        raise _bad_request("NO_VALID_PREFERENCES", "No valid preference fields provided")

    user_id = claims_user_id(claims)
    preferences = await UserRepository.update_preferences(user_id, updates)
    if preferences is None:
        raise _user_not_found()

    return PreferencesResponse(
        message="Notification preferences updated successfully",
        data=PreferencesData(preferences=preferences),
    )
