"""
Realtime session hub: presence, chat relay, call signaling and billing.

Each inbound frame is dispatched to one handler. A handler either completes
(emitting to the relevant rooms) or raises HubError, which becomes a
`*_error` event sent to the invoking socket only.

Call state machine:
    ringing --answer--> active --end--> completed
    ringing --reject--> rejected
    ringing --end-----> completed (no billing)
Terminal states have no outgoing transitions; a finished call is removed
from the active-call registry. Transitions for one session are serialized
with a per-session lock so two sockets cannot answer and reject the same
ring concurrently.

The socket token is verified at handshake time (see routes/realtime.py);
`authenticate` must name the same user the token was issued to.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from fastapi import WebSocket

from app.auth.verify import claims_user_id, claims_user_type
from app.config import settings
from app.infrastructure.audit.audit_logger import audit_logger
from app.infrastructure.observability.logging import get_logger
from app.models.domain.realtime_domain import (
    CUSTOMER_SENDER_TYPES,
    CallBilling,
    CallSession,
    CallStatus,
    ChatMessage,
    ChatSessionRow,
    ConnectedUser,
)
from app.realtime.billing import compute_call_billing
from app.realtime.connection_manager import ASTROLOGERS_ROOM, ConnectionManager, chat_room, user_room
from app.realtime.registries import ActiveCallRegistry, PresenceRegistry
from app.repositories.session_repository import SessionRepository
from app.repositories.user_repository import UserRepository
from app.services.notifications.triggers import NotificationTriggers, notification_triggers

logger = get_logger(__name__)

CALL_EVENTS = frozenset({"initiate_call", "answer_call", "reject_call", "end_call"})
CHAT_SESSION_EVENTS = frozenset({"join_chat_session", "leave_chat_session"})
CHAT_HISTORY_LIMIT = 50
RELAY_EVENTS = frozenset(
    {"webrtc_offer", "webrtc_answer", "webrtc_ice_candidate", "webrtc_renegotiate"}
)

FAILURE_MESSAGES = {
    "authenticate": "Authentication failed",
    "join_chat_session": "Failed to join chat session",
    "leave_chat_session": "Failed to leave chat session",
    "send_message": "Failed to send message",
    "initiate_call": "Failed to initiate call",
    "answer_call": "Failed to answer call",
    "reject_call": "Failed to reject call",
    "end_call": "Failed to end call",
}


class HubError(Exception):
    """Client-facing failure of one socket event."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def error_event_for(event: str) -> str:
    if event == "authenticate":
        return "authentication_error"
    if event == "send_message":
        return "message_error"
    if event in CHAT_SESSION_EVENTS:
        return "chat_error"
    if event in CALL_EVENTS:
        return "call_error"
    return f"{event}_error"


def normalize_user_type(user_type: str | None) -> str | None:
    if user_type is None:
        return None
    user_type = str(user_type).strip().lower()
    return "customer" if user_type in CUSTOMER_SENDER_TYPES else user_type


def _message_payload(message: ChatMessage) -> dict:
    return {
        "id": message.id,
        "sessionId": message.session_id,
        "senderId": message.sender_id,
        "senderName": message.sender_name,
        "senderType": message.sender_type,
        "messageType": message.message_type,
        "content": message.content,
        "imageUrl": message.image_url,
        "timestamp": message.timestamp,
        "readByUser": message.read_by_user,
        "readByAstrologer": message.read_by_astrologer,
    }


@dataclass
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Coroutines holding or waiting on `lock`
    users: int = 0


def _require(data: dict, *fields: str) -> None:
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise HubError(f"Missing required fields: {', '.join(missing)}")


class RealtimeHub:
    def __init__(
        self,
        connections: ConnectionManager,
        presence: PresenceRegistry,
        calls: ActiveCallRegistry,
        sessions=SessionRepository,
        users=UserRepository,
        triggers: NotificationTriggers = notification_triggers,
        audit=audit_logger,
        clock: Callable[[], datetime] | None = None,
    ):
        self.connections = connections
        self.presence = presence
        self.calls = calls
        self.sessions = sessions
        self.users = users
        self.triggers = triggers
        self.audit = audit
        self._clock = clock or (lambda: datetime.now(UTC))

        self._claims: dict[str, dict] = {}
        self._call_locks: dict[str, _SessionLock] = {}

        self._handlers: dict[str, Callable[[str, dict], Awaitable[None]]] = {
            "authenticate": self.authenticate,
            "join_chat_session": self.join_chat_session,
            "leave_chat_session": self.leave_chat_session,
            "send_message": self.send_message,
            "mark_messages_read": self.mark_messages_read,
            "typing_start": self.relay_typing,
            "typing_stop": self.relay_typing,
            "initiate_call": self.initiate_call,
            "answer_call": self.answer_call,
            "reject_call": self.reject_call,
            "end_call": self.end_call,
            "get_online_status": self.get_online_status,
        }

    # --- connection lifecycle ---------------------------------------------

    def connect(self, socket_id: str, websocket: WebSocket, claims: dict) -> None:
        """Attach a socket whose handshake token has already been verified."""
        self.connections.register(socket_id, websocket)
        self._claims[socket_id] = claims

    async def disconnect(self, socket_id: str) -> None:
        """
        Drop the socket from presence and rooms.

        An astrologer's persisted online flag goes false once their last
        socket is gone. Calls the user was part of are left to the reaper.
        """
        self._claims.pop(socket_id, None)
        self.connections.unregister(socket_id)

        try:
            user = await self.presence.remove(socket_id)
        except Exception as e:
            logger.error("Failed to remove socket from presence", socket_id=socket_id, error=str(e))
            return

        if user is None:
            return

        logger.info("User disconnected", socket_id=socket_id, user_id=user.user_id)
        await self._persist_offline_if_gone(user)

    async def _persist_offline_if_gone(self, user: ConnectedUser) -> None:
        if user.user_type != "astrologer" or await self.presence.is_online(user.user_id):
            return
        try:
            await self.users.set_online(user.user_id, False)
        except Exception as e:
            logger.warning("Failed to persist astrologer offline flag", user_id=user.user_id, error=str(e))

    async def expire_stale_presence(self) -> int:
        """
        Drop presence entries whose owning process stopped heartbeating.

        Returns how many sockets were removed.
        """
        expired = await self.presence.sweep_expired(settings.PRESENCE_TTL_SECONDS)
        for user in expired:
            await self._persist_offline_if_gone(user)
        return len(expired)

    async def handle_event(self, socket_id: str, event: str, data: dict | None) -> None:
        """Run one inbound event; failures go back to this socket as `*_error`."""
        if event in RELAY_EVENTS:
            handler = self.relay_signaling
        else:
            handler = self._handlers.get(event)

        if handler is None:
            await self.connections.send(socket_id, "error", {"error": f"Unknown event: {event}"})
            return

        try:
            await handler(socket_id, data if isinstance(data, dict) else {}, event=event)
        except HubError as e:
            logger.info("Realtime event rejected", socket_id=socket_id, event_name=event, error=e.message)
            await self.connections.send(socket_id, error_event_for(event), {"error": e.message})
        except Exception as e:
            logger.error(
                "Realtime event failed",
                socket_id=socket_id,
                event_name=event,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.connections.send(
                socket_id,
                error_event_for(event),
                {"error": FAILURE_MESSAGES.get(event, "Request failed")},
            )

    async def _current_user(self, socket_id: str) -> ConnectedUser:
        user = await self.presence.get(socket_id)
        if user is None:
            raise HubError("Not authenticated")
        return user

    async def _emit_to_participants(self, user_id: str, astrologer_id: str, event: str, data: dict):
        await self.connections.emit_to_room(user_room(user_id), event, data)
        await self.connections.emit_to_room(user_room(astrologer_id), event, data)

    # --- presence ---------------------------------------------------------

    async def authenticate(self, socket_id: str, data: dict, event: str = "authenticate") -> None:
        _require(data, "userId", "userType")
        user_id = str(data["userId"])
        user_type = normalize_user_type(data["userType"])

        claims = self._claims.get(socket_id)
        if claims is None:
            raise HubError("Connection has no verified token")
        if claims_user_id(claims) != user_id:
            raise HubError("userId does not match the authenticated session")
        token_type = normalize_user_type(claims_user_type(claims))
        if token_type and token_type != user_type:
            raise HubError("userType does not match the authenticated session")

        await self.presence.add(
            ConnectedUser(socket_id=socket_id, user_id=user_id, user_type=user_type)
        )
        self.connections.join(socket_id, user_room(user_id))

        if user_type == "astrologer":
            self.connections.join(socket_id, ASTROLOGERS_ROOM)
            try:
                await self.users.set_online(user_id, True)
            except Exception as e:
                # Presence registry is the live truth; the flag is a convenience copy
                logger.warning("Failed to persist astrologer online flag", user_id=user_id, error=str(e))

        logger.info("User authenticated on socket", socket_id=socket_id, user_id=user_id, user_type=user_type)
        await self.connections.send(
            socket_id,
            "authenticated",
            {"success": True, "userId": user_id, "userType": data["userType"]},
        )

    async def get_online_status(self, socket_id: str, data: dict, event: str = "get_online_status"):
        await self._current_user(socket_id)
        user_ids = data.get("userIds")
        if not isinstance(user_ids, list):
            raise HubError("userIds must be a list")

        statuses = await self.presence.online_statuses([str(u) for u in user_ids])
        await self.connections.send(socket_id, "online_status", {"statuses": statuses})

    # --- chat -------------------------------------------------------------

    async def _participant_session(self, user: ConnectedUser, session_id: str) -> ChatSessionRow:
        session = await self.sessions.get_chat_session(session_id)
        if session is None:
            raise HubError("Session not found")
        if session.other_participant(user.user_id) is None:
            raise HubError("Not part of this session")
        return session

    async def join_chat_session(
        self, socket_id: str, data: dict, event: str = "join_chat_session"
    ) -> None:
        """Join the session's room and reply with its most recent messages, oldest first."""
        user = await self._current_user(socket_id)
        _require(data, "sessionId")
        session_id = str(data["sessionId"])
        await self._participant_session(user, session_id)

        messages = await self.sessions.recent_messages(session_id, limit=CHAT_HISTORY_LIMIT)
        self.connections.join(socket_id, chat_room(session_id))

        logger.info("User joined chat session", socket_id=socket_id, user_id=user.user_id, session_id=session_id)
        await self.connections.send(
            socket_id,
            "chat_history",
            {"sessionId": session_id, "messages": [_message_payload(m) for m in messages]},
        )

    async def leave_chat_session(
        self, socket_id: str, data: dict, event: str = "leave_chat_session"
    ) -> None:
        user = await self._current_user(socket_id)
        _require(data, "sessionId")
        session_id = str(data["sessionId"])
        self.connections.leave(socket_id, chat_room(session_id))
        logger.info("User left chat session", socket_id=socket_id, user_id=user.user_id, session_id=session_id)

    async def send_message(self, socket_id: str, data: dict, event: str = "send_message") -> None:
        """Persist, broadcast to both participants, then push to the receiver."""
        user = await self._current_user(socket_id)
        _require(data, "sessionId", "senderId")
        content = data.get("content") or ""
        image_url = data.get("imageUrl")
        if not content and not image_url:
            raise HubError("Message needs content or imageUrl")

        sender_id = str(data["senderId"])
        if sender_id != user.user_id:
            raise HubError("senderId does not match the authenticated user")

        session_id = str(data["sessionId"])
        session = await self.sessions.get_chat_session(session_id)
        if session is None:
            raise HubError("Session not found")

        receiver_id = session.other_participant(sender_id)
        if receiver_id is None:
            raise HubError("Sender is not part of this session")

        sender_type = "user" if sender_id == session.user_id else "astrologer"
        message = await self.sessions.add_message(
            session_id=session_id,
            sender_id=sender_id,
            sender_name=data.get("senderName"),
            sender_type=sender_type,
            message_type=data.get("messageType") or ("image" if image_url and not content else "text"),
            content=content,
            image_url=image_url,
        )

        await self._emit_to_participants(
            session.user_id, session.astrologer_id, "new_message", _message_payload(message)
        )

        # Push as well: the receiver's app may be backgrounded with no socket
        await self.triggers.on_chat_message(
            sender_id, receiver_id, content or "📷 Image", session_id=session_id
        )

    async def mark_messages_read(
        self, socket_id: str, data: dict, event: str = "mark_messages_read"
    ) -> None:
        user = await self._current_user(socket_id)
        _require(data, "sessionId")
        message_ids = data.get("messageIds") or []
        if not isinstance(message_ids, list):
            raise HubError("messageIds must be a list")

        session_id = str(data["sessionId"])
        session = await self.sessions.get_chat_session(session_id)
        if session is None:
            raise HubError("Session not found")

        other_id = session.other_participant(user.user_id)
        if other_id is None:
            raise HubError("Not part of this session")

        reader_is_customer = user.user_id == session.user_id
        await self.sessions.mark_messages_read(
            session_id, [str(m) for m in message_ids], reader_is_customer=reader_is_customer
        )
        await self.connections.emit_to_room(
            user_room(other_id),
            "messages_read",
            {
                "sessionId": session_id,
                "messageIds": message_ids,
                "readerId": user.user_id,
                "readBy": "user" if reader_is_customer else "astrologer",
            },
        )

    async def relay_typing(self, socket_id: str, data: dict, event: str = "typing_start") -> None:
        user = await self._current_user(socket_id)
        _require(data, "sessionId", "receiverId")
        await self.connections.emit_to_room(
            user_room(str(data["receiverId"])),
            event,
            {"sessionId": data["sessionId"], "userId": user.user_id, "userType": user.user_type},
        )

    # --- signaling --------------------------------------------------------

    async def relay_signaling(self, socket_id: str, data: dict, event: str = "webrtc_offer") -> None:
        """Pass-through to the named target; session membership is not checked."""
        user = await self._current_user(socket_id)
        target_user_id = data.get("targetUserId")
        if not target_user_id:
            logger.warning("Signaling frame without target dropped", socket_id=socket_id, event_name=event)
            return

        payload = {k: v for k, v in data.items() if k != "targetUserId"}
        payload["fromUserId"] = user.user_id
        await self.connections.emit_to_room(user_room(str(target_user_id)), event, payload)

    # --- calls ------------------------------------------------------------

    @asynccontextmanager
    async def _call_lock(self, session_id: str) -> AsyncIterator[None]:
        """
        Serialize transitions of one call session.

        The entry lives only while some coroutine holds or waits on it, so
        events for unknown sessions leave nothing behind.
        """
        entry = self._call_locks.get(session_id)
        if entry is None:
            entry = self._call_locks[session_id] = _SessionLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._call_locks[session_id]

    async def _ringing_call_for(self, user: ConnectedUser, session_id: str) -> CallSession:
        call = await self.calls.get(session_id)
        if call is None or call.status != CallStatus.RINGING:
            raise HubError("Call session not found")
        if call.other_participant(user.user_id) is None:
            raise HubError("Not part of this call")
        return call

    async def initiate_call(self, socket_id: str, data: dict, event: str = "initiate_call") -> None:
        user = await self._current_user(socket_id)
        _require(data, "sessionId", "callerId")
        session_id = str(data["sessionId"])
        caller_id = str(data["callerId"])
        call_type = data.get("callType") or "voice"

        if caller_id != user.user_id:
            raise HubError("callerId does not match the authenticated user")

        async with self._call_lock(session_id):
            if await self.calls.get(session_id) is not None:
                raise HubError("Call already in progress")

            row = await self.sessions.get_call_session(session_id)
            if row is None:
                raise HubError("Call session not found")

            call = CallSession(
                session_id=session_id,
                user_id=row.user_id,
                astrologer_id=row.astrologer_id,
                status=CallStatus.RINGING,
                caller_id=caller_id,
                call_type=call_type,
                initiated_at=self._clock(),
            )
            receiver_id = call.other_participant(caller_id)
            if receiver_id is None:
                raise HubError("Caller is not part of this session")

            await self.sessions.update_call_status(session_id, CallStatus.RINGING)
            await self.calls.put(call)

        logger.info("Call initiated", session_id=session_id, caller_id=caller_id, receiver_id=receiver_id)

        await self.connections.emit_to_room(
            user_room(receiver_id),
            "incoming_call",
            {
                "sessionId": session_id,
                "callerId": caller_id,
                "callerType": data.get("callerType") or user.user_type,
                "callType": call_type,
                "callerName": data.get("callerName"),
                "timestamp": call.initiated_at,
            },
        )
        await self.connections.send(socket_id, "call_initiated", {"sessionId": session_id, "status": "ringing"})

        # The phone must ring even when the receiver has no live socket
        await self.triggers.on_incoming_call(caller_id, receiver_id, call_type, session_id=session_id)

    async def answer_call(self, socket_id: str, data: dict, event: str = "answer_call") -> None:
        user = await self._current_user(socket_id)
        _require(data, "sessionId")
        session_id = str(data["sessionId"])

        async with self._call_lock(session_id):
            call = await self._ringing_call_for(user, session_id)
            started_at = self._clock()

            await self.sessions.update_call_status(session_id, CallStatus.ACTIVE, start_time=started_at)
            call.status = CallStatus.ACTIVE
            call.start_time = started_at
            await self.calls.put(call)

        logger.info("Call answered", session_id=session_id, answered_by=user.user_id)
        await self._emit_to_participants(
            call.user_id, call.astrologer_id, "call_answered", {"sessionId": session_id}
        )

    async def reject_call(self, socket_id: str, data: dict, event: str = "reject_call") -> None:
        user = await self._current_user(socket_id)
        _require(data, "sessionId")
        session_id = str(data["sessionId"])

        async with self._call_lock(session_id):
            call = await self._ringing_call_for(user, session_id)
            await self.sessions.update_call_status(
                session_id, CallStatus.REJECTED, end_time=self._clock()
            )
            await self.calls.remove(session_id)

        logger.info("Call rejected", session_id=session_id, rejected_by=user.user_id)
        await self._emit_to_participants(
            call.user_id, call.astrologer_id, "call_rejected", {"sessionId": session_id}
        )

    async def end_call(self, socket_id: str, data: dict, event: str = "end_call") -> None:
        user = await self._current_user(socket_id)
        _require(data, "sessionId")
        session_id = str(data["sessionId"])

        async with self._call_lock(session_id):
            call = await self.calls.get(session_id)
            if call is None:
                raise HubError("Call session not found")
            if call.other_participant(user.user_id) is None:
                raise HubError("Not part of this call")

            billing = await self._finish_call(call, self._clock())

        logger.info(
            "Call ended",
            session_id=session_id,
            ended_by=user.user_id,
            duration_minutes=billing.duration_minutes if billing else None,
        )

    async def _finish_call(self, call: CallSession, ended_at: datetime) -> CallBilling | None:
        """
        Complete a ringing or active call; bill it only if it was active.

        Caller must hold the session's call lock.
        """
        billing = None

        if call.status == CallStatus.ACTIVE and call.start_time is not None:
            row = await self.sessions.get_call_session(call.session_id)
            if row is None:
                logger.warning("Call session row missing at hangup, billing at zero rate", session_id=call.session_id)
            rate = row.rate_per_minute if row else Decimal("0")

            billing = compute_call_billing(call.start_time, ended_at, rate)
            await self.sessions.complete_call(call.session_id, ended_at, billing)
            await self.audit.log_call_billed(
                session_id=call.session_id,
                user_id=call.user_id,
                astrologer_id=call.astrologer_id,
                duration_minutes=billing.duration_minutes,
                total_amount=billing.total_amount,
                rate_per_minute=rate,
            )
        else:
            await self.sessions.update_call_status(
                call.session_id, CallStatus.COMPLETED, end_time=ended_at
            )

        await self.calls.remove(call.session_id)

        payload: dict = {"sessionId": call.session_id}
        if billing is not None:
            payload["durationMinutes"] = billing.duration_minutes
            payload["totalAmount"] = billing.total_amount
        await self._emit_to_participants(call.user_id, call.astrologer_id, "call_ended", payload)
        return billing

    # --- housekeeping -----------------------------------------------------

    async def reap_stale_calls(self, now: datetime | None = None) -> dict[str, int]:
        """
        Resolve calls nobody will finish.

        - ringing longer than CALL_RING_TIMEOUT_SECONDS -> rejected
        - active with both participants offline for
          CALL_DISCONNECT_GRACE_SECONDS -> completed, billed up to the moment
          the last participant dropped

        Presence entries older than PRESENCE_TTL_SECONDS are swept first.
        """
        now = now or self._clock()
        try:
            await self.expire_stale_presence()
        except Exception as e:
            logger.error("Failed to expire stale presence", error=str(e))

        ring_timeout = timedelta(seconds=settings.CALL_RING_TIMEOUT_SECONDS)
        grace = timedelta(seconds=settings.CALL_DISCONNECT_GRACE_SECONDS)
        counts = {"rejected": 0, "ended": 0}

        for snapshot in await self.calls.all():
            session_id = snapshot.session_id
            try:
                async with self._call_lock(session_id):
                    call = await self.calls.get(session_id)
                    if call is None:
                        continue

                    if call.status == CallStatus.RINGING and now - call.initiated_at > ring_timeout:
                        await self.sessions.update_call_status(session_id, CallStatus.REJECTED, end_time=now)
                        await self.calls.remove(session_id)
                        await self._emit_to_participants(
                            call.user_id,
                            call.astrologer_id,
                            "call_rejected",
                            {"sessionId": session_id, "reason": "timeout"},
                        )
                        counts["rejected"] += 1

                    elif call.status == CallStatus.ACTIVE:
                        dropped_at = await self._both_offline_since(call)
                        if dropped_at is not None and now - dropped_at >= grace:
                            await self._finish_call(call, dropped_at)
                            counts["ended"] += 1

            except Exception as e:
                logger.error("Failed to reap call", session_id=session_id, error=str(e))

        if counts["rejected"] or counts["ended"]:
            logger.info("Stale calls reaped", **counts)
        return counts

    async def _both_offline_since(self, call: CallSession) -> datetime | None:
        """When the last participant went offline, or None if anyone is still connected."""
        statuses = await self.presence.online_statuses(list(call.participants()))
        if any(statuses.values()):
            return None

        seen = [await self.presence.last_seen(uid) for uid in call.participants()]
        known = [ts for ts in seen if ts is not None]
        if known:
            return max(max(known), call.start_time or max(known))
        # Neither side ever registered here (e.g. after a restart)
        return call.start_time
