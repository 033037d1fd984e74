"""
realtime.py
-----------
Purpose:
    WebSocket entrypoint for the realtime hub.

    - The token is checked at handshake (`?token=` or `Authorization: Bearer`);
      a missing or invalid token closes the socket with 1008 before any
      frame is read.
    - Frames are JSON text `{"event": <name>, "data": {...}}` and are
      handled one at a time per socket.

Usage:
    ws://host/ws?token=<access_token>
    -> {"event": "authenticate", "data": {"userId": "...", "userType": "astrologer"}}
    -> {"event": "join_chat_session", "data": {"sessionId": "..."}}
    <- {"event": "chat_history", "data": {"sessionId": "...", "messages": [...]}}
"""

import json
import uuid

import jwt
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from app.auth.verify import claims_user_id, decode_token
from app.infrastructure.observability.logging import (
    bind_connection_context,
    clear_connection_context,
    get_logger,
)
from app.realtime.hub import RealtimeHub
from app.utils.audit_helpers import audit_security_event

router = APIRouter()
logger = get_logger(__name__)


def _handshake_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if token:
        return token

    authorization = websocket.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


async def _reject(websocket: WebSocket, reason: str) -> None:
    logger.warning("WebSocket handshake rejected", reason=reason)
    await audit_security_event(
        conn=websocket,
        event_type="socket_auth_rejected",
        severity="medium",
        description=f"WebSocket handshake rejected: {reason}",
    )
    await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=reason)


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
    token = _handshake_token(websocket)
    if not token:
        await _reject(websocket, "missing token")
        return

    try:
        claims = decode_token(token)
    except jwt.InvalidTokenError as e:
        await _reject(websocket, f"invalid token: {e}")
        return

    hub: RealtimeHub = websocket.app.state.realtime_hub
    socket_id = uuid.uuid4().hex

    await websocket.accept()
    bind_connection_context(socket_id, claims_user_id(claims))
    hub.connect(socket_id, websocket, claims)
    logger.info("WebSocket connected")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                frame = None

            if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                await hub.connections.send(
                    socket_id, "error", {"error": 'Frames must be {"event": str, "data": object}'}
                )
                continue

            await hub.handle_event(socket_id, frame["event"], frame.get("data"))

    except WebSocketDisconnect as e:
        logger.info("WebSocket disconnected", code=e.code)
    finally:
        await hub.disconnect(socket_id)
        clear_connection_context()
