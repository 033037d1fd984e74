"""
verify.py
---------
Purpose:
    JWT verification for tokens issued by the login flow (HS256, shared secret).

Notes:
    - `decode_token` is transport-agnostic; the WebSocket handshake uses it directly.
    - `auth_dependency` / `admin_dependency` guard REST routes.
    - Claims carry the user id as `userId` (legacy) or `sub`, plus `user_type`.
"""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings

_security = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    """
    Decode and verify a bearer token.

    Raises:
        jwt.InvalidTokenError: bad signature, expired, malformed, or no user id
    """
    if not settings.JWT_SECRET:
        raise jwt.InvalidTokenError("JWT_SECRET is not configured")

    claims = jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[settings.JWT_ALGORITHM],
        options={"verify_exp": True},
    )
    if not claims_user_id(claims):
        raise jwt.InvalidTokenError("Token has no user id")
    return claims


def claims_user_id(claims: dict) -> str | None:
    user_id = claims.get("userId") or claims.get("sub")
    return str(user_id) if user_id else None


def claims_user_type(claims: dict) -> str | None:
    return claims.get("user_type") or claims.get("userType")


def verify_jwt(token: str) -> dict:
    try:
        return decode_token(token)
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "AUTHENTICATION_REQUIRED", "message": f"Invalid authentication token: {e}"},
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
) -> dict:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "AUTHENTICATION_REQUIRED", "message": "Bearer token required"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return verify_jwt(credentials.credentials)


def admin_dependency(claims: dict = Depends(auth_dependency)) -> dict:
    if claims_user_type(claims) != "administrator":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "ACCESS_DENIED", "message": "Administrator access required"},
        )
    return claims
