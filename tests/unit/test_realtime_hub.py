import asyncio
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from app.config import settings
from app.models.domain.realtime_domain import CallStatus, ConnectedUser
from app.realtime.connection_manager import ASTROLOGERS_ROOM, chat_room, user_room
from app.realtime.hub import error_event_for, normalize_user_type
from tests.support import ASTROLOGER_ID, CALL_SESSION_ID, CHAT_SESSION_ID, CUSTOMER_ID


@pytest.fixture
def authenticated(hub, connect_socket):
    """Customer and astrologer, each with one authenticated socket."""

    async def _setup():
        customer = connect_socket("cust-1", CUSTOMER_ID, "customer")
        astrologer = connect_socket("astro-1", ASTROLOGER_ID, "astrologer")
        await hub.handle_event("cust-1", "authenticate", {"userId": CUSTOMER_ID, "userType": "user"})
        await hub.handle_event(
            "astro-1", "authenticate", {"userId": ASTROLOGER_ID, "userType": "astrologer"}
        )
        customer.sent.clear()
        astrologer.sent.clear()
        return customer, astrologer

    return _setup


async def start_call(hub, clock):
    await hub.handle_event(
        "cust-1",
        "initiate_call",
        {"sessionId": CALL_SESSION_ID, "callerId": CUSTOMER_ID, "callType": "voice"},
    )
    await hub.handle_event("astro-1", "answer_call", {"sessionId": CALL_SESSION_ID})


def test_error_event_names():
    assert error_event_for("authenticate") == "authentication_error"
    assert error_event_for("send_message") == "message_error"
    assert error_event_for("join_chat_session") == "chat_error"
    assert error_event_for("answer_call") == "call_error"
    assert error_event_for("get_online_status") == "get_online_status_error"


def test_user_type_aliases():
    assert normalize_user_type("user") == "customer"
    assert normalize_user_type("Customer") == "customer"
    assert normalize_user_type("astrologer") == "astrologer"
    assert normalize_user_type(None) is None


# --- presence ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_authenticate_joins_user_room(hub, connect_socket):
    websocket = connect_socket("cust-1", CUSTOMER_ID, "customer")

    await hub.handle_event("cust-1", "authenticate", {"userId": CUSTOMER_ID, "userType": "user"})

    assert websocket.last("authenticated") == {"success": True, "userId": CUSTOMER_ID, "userType": "user"}
    assert hub.connections.rooms_of("cust-1") == {user_room(CUSTOMER_ID)}
    assert await hub.presence.is_online(CUSTOMER_ID) is True


@pytest.mark.asyncio
async def test_astrologer_authenticate_marks_online(hub, connect_socket, fake_users):
    connect_socket("astro-1", ASTROLOGER_ID, "astrologer")

    await hub.handle_event("astro-1", "authenticate", {"userId": ASTROLOGER_ID, "userType": "astrologer"})

    assert hub.connections.rooms_of("astro-1") == {user_room(ASTROLOGER_ID), ASTROLOGERS_ROOM}
    assert fake_users.online_calls == [(ASTROLOGER_ID, True)]


@pytest.mark.asyncio
async def test_authenticate_rejects_other_user_id(hub, connect_socket):
    websocket = connect_socket("cust-1", CUSTOMER_ID, "customer")

    await hub.handle_event("cust-1", "authenticate", {"userId": ASTROLOGER_ID, "userType": "astrologer"})

    assert websocket.last("authentication_error") == {
        "error": "userId does not match the authenticated session"
    }
    assert await hub.presence.get("cust-1") is None


@pytest.mark.asyncio
async def test_authenticate_rejects_other_user_type(hub, connect_socket):
    websocket = connect_socket("cust-1", CUSTOMER_ID, "customer")

    await hub.handle_event("cust-1", "authenticate", {"userId": CUSTOMER_ID, "userType": "astrologer"})

    assert websocket.last("authentication_error") == {
        "error": "userType does not match the authenticated session"
    }


@pytest.mark.asyncio
async def test_authenticate_requires_fields(hub, connect_socket):
    websocket = connect_socket("cust-1", CUSTOMER_ID, "customer")

    await hub.handle_event("cust-1", "authenticate", {"userId": CUSTOMER_ID})

    assert websocket.last("authentication_error") == {"error": "Missing required fields: userType"}


@pytest.mark.asyncio
async def test_events_before_authenticate_are_rejected(hub, connect_socket):
    websocket = connect_socket("cust-1", CUSTOMER_ID, "customer")

    await hub.handle_event(
        "cust-1", "send_message", {"sessionId": CHAT_SESSION_ID, "senderId": CUSTOMER_ID, "content": "hi"}
    )

    assert websocket.last("message_error") == {"error": "Not authenticated"}


@pytest.mark.asyncio
async def test_unknown_event(hub, connect_socket):
    websocket = connect_socket("cust-1", CUSTOMER_ID, "customer")

    await hub.handle_event("cust-1", "launch_rocket", {})

    assert websocket.last("error") == {"error": "Unknown event: launch_rocket"}


@pytest.mark.asyncio
async def test_online_status(hub, authenticated):
    customer, _ = await authenticated()

    await hub.handle_event("cust-1", "get_online_status", {"userIds": [ASTROLOGER_ID, "someone-else"]})

    assert customer.last("online_status") == {"statuses": {ASTROLOGER_ID: True, "someone-else": False}}


@pytest.mark.asyncio
async def test_astrologer_offline_only_after_last_socket(hub, connect_socket, fake_users):
    for socket_id in ("astro-1", "astro-2"):
        connect_socket(socket_id, ASTROLOGER_ID, "astrologer")
        await hub.handle_event(socket_id, "authenticate", {"userId": ASTROLOGER_ID, "userType": "astrologer"})
    fake_users.online_calls.clear()

    await hub.disconnect("astro-1")
    assert fake_users.online_calls == []
    assert await hub.presence.is_online(ASTROLOGER_ID) is True

    await hub.disconnect("astro-2")
    assert fake_users.online_calls == [(ASTROLOGER_ID, False)]
    assert hub.connections.room_members(ASTROLOGERS_ROOM) == set()


@pytest.mark.asyncio
async def test_disconnect_of_unauthenticated_socket(hub, connect_socket, fake_users):
    connect_socket("cust-1", CUSTOMER_ID, "customer")

    await hub.disconnect("cust-1")

    assert hub.connections.connection_count == 0
    assert fake_users.online_calls == []


# --- chat -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_message_reaches_both_participants(hub, authenticated, fake_sessions, fake_triggers):
    customer, astrologer = await authenticated()

    await hub.handle_event(
        "cust-1",
        "send_message",
        {"sessionId": CHAT_SESSION_ID, "senderId": CUSTOMER_ID, "senderName": "Asha", "content": "Namaste"},
    )

    (stored,) = fake_sessions.messages
    assert stored.sender_type == "user"
    assert stored.message_type == "text"

    for websocket in (customer, astrologer):
        message = websocket.last("new_message")
        assert message["id"] == stored.id
        assert message["content"] == "Namaste"
        assert message["senderType"] == "user"

    fake_triggers.on_chat_message.assert_awaited_once_with(
        CUSTOMER_ID, ASTROLOGER_ID, "Namaste", session_id=CHAT_SESSION_ID
    )


@pytest.mark.asyncio
async def test_sender_type_comes_from_session_position(hub, authenticated, fake_sessions):
    await authenticated()

    await hub.handle_event(
        "astro-1",
        "send_message",
        {"sessionId": CHAT_SESSION_ID, "senderId": ASTROLOGER_ID, "senderType": "user", "content": "Hello"},
    )

    assert fake_sessions.messages[0].sender_type == "astrologer"


@pytest.mark.asyncio
async def test_image_message_push_preview(hub, authenticated, fake_sessions, fake_triggers):
    await authenticated()

    await hub.handle_event(
        "cust-1",
        "send_message",
        {"sessionId": CHAT_SESSION_ID, "senderId": CUSTOMER_ID, "imageUrl": "https://cdn.example.com/p.jpg"},
    )

    assert fake_sessions.messages[0].message_type == "image"
    assert fake_triggers.on_chat_message.await_args.args[2] == "📷 Image"


@pytest.mark.asyncio
async def test_send_message_rejects_spoofed_sender(hub, authenticated, fake_sessions):
    customer, _ = await authenticated()

    await hub.handle_event(
        "cust-1",
        "send_message",
        {"sessionId": CHAT_SESSION_ID, "senderId": ASTROLOGER_ID, "content": "fake"},
    )

    assert customer.last("message_error") == {"error": "senderId does not match the authenticated user"}
    assert fake_sessions.messages == []


@pytest.mark.asyncio
async def test_send_message_unknown_session(hub, authenticated):
    customer, _ = await authenticated()

    await hub.handle_event(
        "cust-1", "send_message", {"sessionId": "missing", "senderId": CUSTOMER_ID, "content": "hi"}
    )

    assert customer.last("message_error") == {"error": "Session not found"}


@pytest.mark.asyncio
async def test_send_message_storage_failure_is_generic(hub, authenticated, fake_sessions, fake_triggers):
    customer, astrologer = await authenticated()
    fake_sessions.add_message = AsyncMock(side_effect=RuntimeError("connection reset"))

    await hub.handle_event(
        "cust-1", "send_message", {"sessionId": CHAT_SESSION_ID, "senderId": CUSTOMER_ID, "content": "hi"}
    )

    assert customer.last("message_error") == {"error": "Failed to send message"}
    assert astrologer.sent == []
    fake_triggers.on_chat_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_mark_messages_read_notifies_other_side(hub, authenticated, fake_sessions):
    customer, _ = await authenticated()

    await hub.handle_event(
        "astro-1", "mark_messages_read", {"sessionId": CHAT_SESSION_ID, "messageIds": ["m1", "m2"]}
    )

    assert fake_sessions.read_marks == [(CHAT_SESSION_ID, ["m1", "m2"], False)]
    assert customer.last("messages_read") == {
        "sessionId": CHAT_SESSION_ID,
        "messageIds": ["m1", "m2"],
        "readerId": ASTROLOGER_ID,
        "readBy": "astrologer",
    }


@pytest.mark.asyncio
async def test_typing_is_relayed_to_receiver(hub, authenticated):
    customer, astrologer = await authenticated()

    await hub.handle_event("cust-1", "typing_start", {"sessionId": CHAT_SESSION_ID, "receiverId": ASTROLOGER_ID})

    assert astrologer.last("typing_start") == {
        "sessionId": CHAT_SESSION_ID,
        "userId": CUSTOMER_ID,
        "userType": "customer",
    }
    assert customer.sent == []


@pytest.mark.asyncio
async def test_signaling_is_relayed_with_sender(hub, authenticated):
    _, astrologer = await authenticated()

    await hub.handle_event(
        "cust-1",
        "webrtc_offer",
        {"sessionId": CALL_SESSION_ID, "targetUserId": ASTROLOGER_ID, "offer": {"type": "offer", "sdp": "v=0"}},
    )

    assert astrologer.last("webrtc_offer") == {
        "sessionId": CALL_SESSION_ID,
        "offer": {"type": "offer", "sdp": "v=0"},
        "fromUserId": CUSTOMER_ID,
    }


@pytest.mark.asyncio
async def test_signaling_without_target_is_dropped(hub, authenticated):
    customer, astrologer = await authenticated()

    await hub.handle_event("cust-1", "webrtc_ice_candidate", {"candidate": {}})

    assert customer.sent == []
    assert astrologer.sent == []


# --- calls ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initiate_call_rings_receiver(hub, authenticated, fake_sessions, fake_triggers):
    customer, astrologer = await authenticated()

    await hub.handle_event(
        "cust-1",
        "initiate_call",
        {"sessionId": CALL_SESSION_ID, "callerId": CUSTOMER_ID, "callType": "video", "callerName": "Asha"},
    )

    incoming = astrologer.last("incoming_call")
    assert incoming["sessionId"] == CALL_SESSION_ID
    assert incoming["callerId"] == CUSTOMER_ID
    assert incoming["callType"] == "video"
    assert customer.last("call_initiated") == {"sessionId": CALL_SESSION_ID, "status": "ringing"}

    call = await hub.calls.get(CALL_SESSION_ID)
    assert call.status == CallStatus.RINGING
    assert fake_sessions.status_updates[-1][:2] == (CALL_SESSION_ID, "ringing")
    fake_triggers.on_incoming_call.assert_awaited_once_with(
        CUSTOMER_ID, ASTROLOGER_ID, "video", session_id=CALL_SESSION_ID
    )


@pytest.mark.asyncio
async def test_second_initiate_while_ringing(hub, authenticated):
    customer, _ = await authenticated()
    payload = {"sessionId": CALL_SESSION_ID, "callerId": CUSTOMER_ID}

    await hub.handle_event("cust-1", "initiate_call", payload)
    await hub.handle_event("cust-1", "initiate_call", payload)

    assert customer.last("call_error") == {"error": "Call already in progress"}


@pytest.mark.asyncio
async def test_initiate_unknown_session_then_valid_one(hub, authenticated):
    customer, _ = await authenticated()

    await hub.handle_event("cust-1", "initiate_call", {"sessionId": "missing", "callerId": CUSTOMER_ID})
    assert customer.last("call_error") == {"error": "Call session not found"}

    await hub.handle_event("cust-1", "initiate_call", {"sessionId": CALL_SESSION_ID, "callerId": CUSTOMER_ID})
    assert customer.last("call_initiated") is not None


@pytest.mark.asyncio
async def test_initiate_rejects_spoofed_caller(hub, authenticated):
    customer, _ = await authenticated()

    await hub.handle_event("cust-1", "initiate_call", {"sessionId": CALL_SESSION_ID, "callerId": ASTROLOGER_ID})

    assert customer.last("call_error") == {"error": "callerId does not match the authenticated user"}
    assert await hub.calls.get(CALL_SESSION_ID) is None


@pytest.mark.asyncio
async def test_answered_call_is_billed_on_hangup(hub, authenticated, clock, fake_sessions, fake_audit):
    customer, astrologer = await authenticated()
    started_at = clock.now
    await start_call(hub, clock)

    assert customer.last("call_answered") == {"sessionId": CALL_SESSION_ID}
    assert astrologer.last("call_answered") == {"sessionId": CALL_SESSION_ID}
    assert (await hub.calls.get(CALL_SESSION_ID)).start_time == started_at

    clock.advance(90)
    await hub.handle_event("cust-1", "end_call", {"sessionId": CALL_SESSION_ID})

    ended = astrologer.last("call_ended")
    assert ended["sessionId"] == CALL_SESSION_ID
    assert ended["durationMinutes"] == 2
    assert Decimal(str(ended["totalAmount"])) == Decimal("20.00")

    ((session_id, end_time, billing),) = fake_sessions.completed
    assert (session_id, end_time) == (CALL_SESSION_ID, clock.now)
    assert billing.total_amount == Decimal("20.00")
    fake_audit.log_call_billed.assert_awaited_once()
    assert await hub.calls.get(CALL_SESSION_ID) is None


@pytest.mark.asyncio
async def test_ringing_call_ended_without_billing(hub, authenticated, fake_sessions, fake_audit):
    customer, _ = await authenticated()
    await hub.handle_event("cust-1", "initiate_call", {"sessionId": CALL_SESSION_ID, "callerId": CUSTOMER_ID})

    await hub.handle_event("cust-1", "end_call", {"sessionId": CALL_SESSION_ID})

    assert customer.last("call_ended") == {"sessionId": CALL_SESSION_ID}
    assert fake_sessions.status_updates[-1][:2] == (CALL_SESSION_ID, "completed")
    assert fake_sessions.completed == []
    fake_audit.log_call_billed.assert_not_awaited()


@pytest.mark.asyncio
async def test_rejected_call_cannot_be_answered(hub, authenticated, fake_sessions):
    customer, astrologer = await authenticated()
    await hub.handle_event("cust-1", "initiate_call", {"sessionId": CALL_SESSION_ID, "callerId": CUSTOMER_ID})

    await hub.handle_event("astro-1", "reject_call", {"sessionId": CALL_SESSION_ID})
    assert customer.last("call_rejected") == {"sessionId": CALL_SESSION_ID}
    assert fake_sessions.status_updates[-1][:2] == (CALL_SESSION_ID, "rejected")

    await hub.handle_event("astro-1", "answer_call", {"sessionId": CALL_SESSION_ID})
    assert astrologer.last("call_error") == {"error": "Call session not found"}
    assert customer.last("call_answered") is None


@pytest.mark.asyncio
async def test_completed_call_cannot_be_ended_twice(hub, authenticated, clock, fake_sessions):
    customer, _ = await authenticated()
    await start_call(hub, clock)
    clock.advance(30)

    await hub.handle_event("cust-1", "end_call", {"sessionId": CALL_SESSION_ID})
    await hub.handle_event("astro-1", "end_call", {"sessionId": CALL_SESSION_ID})

    assert len(fake_sessions.completed) == 1


@pytest.mark.asyncio
async def test_active_call_cannot_be_rejected(hub, authenticated, clock):
    _, astrologer = await authenticated()
    await start_call(hub, clock)

    await hub.handle_event("astro-1", "reject_call", {"sessionId": CALL_SESSION_ID})

    assert astrologer.last("call_error") == {"error": "Call session not found"}
    assert (await hub.calls.get(CALL_SESSION_ID)).status == CallStatus.ACTIVE


@pytest.mark.asyncio
async def test_concurrent_answer_and_reject(hub, authenticated):
    customer, astrologer = await authenticated()
    await hub.handle_event("cust-1", "initiate_call", {"sessionId": CALL_SESSION_ID, "callerId": CUSTOMER_ID})

    await asyncio.gather(
        hub.handle_event("astro-1", "answer_call", {"sessionId": CALL_SESSION_ID}),
        hub.handle_event("astro-1", "reject_call", {"sessionId": CALL_SESSION_ID}),
    )

    outcomes = {event for event in customer.events() if event in ("call_answered", "call_rejected")}
    assert len(outcomes) == 1
    assert astrologer.last("call_error") == {"error": "Call session not found"}


@pytest.mark.asyncio
async def test_outsider_cannot_answer(hub, authenticated, connect_socket):
    await authenticated()
    outsider = connect_socket("other-1", "77777777-7777-7777-7777-777777777777", "astrologer")
    await hub.handle_event(
        "other-1", "authenticate", {"userId": "77777777-7777-7777-7777-777777777777", "userType": "astrologer"}
    )
    await hub.handle_event("cust-1", "initiate_call", {"sessionId": CALL_SESSION_ID, "callerId": CUSTOMER_ID})

    await hub.handle_event("other-1", "answer_call", {"sessionId": CALL_SESSION_ID})

    assert outsider.last("call_error") == {"error": "Not part of this call"}


# --- reaper -----------------------------------------------------------------


@pytest.mark.asyncio
async def test_reaper_rejects_unanswered_ring(hub, authenticated, clock, fake_sessions):
    customer, _ = await authenticated()
    await hub.handle_event("cust-1", "initiate_call", {"sessionId": CALL_SESSION_ID, "callerId": CUSTOMER_ID})

    clock.advance(30)
    assert await hub.reap_stale_calls() == {"rejected": 0, "ended": 0}

    clock.advance(31)
    assert await hub.reap_stale_calls() == {"rejected": 1, "ended": 0}
    assert customer.last("call_rejected") == {"sessionId": CALL_SESSION_ID, "reason": "timeout"}
    assert fake_sessions.status_updates[-1][:2] == (CALL_SESSION_ID, "rejected")
    assert await hub.calls.get(CALL_SESSION_ID) is None


@pytest.mark.asyncio
async def test_reaper_bills_abandoned_call_until_last_drop(hub, authenticated, clock, fake_sessions):
    await authenticated()
    started_at = clock.now
    await start_call(hub, clock)

    clock.advance(100)
    await hub.disconnect("cust-1")
    await hub.disconnect("astro-1")
    dropped_at = clock.now

    clock.advance(60)
    assert await hub.reap_stale_calls() == {"rejected": 0, "ended": 0}

    clock.advance(61)
    assert await hub.reap_stale_calls() == {"rejected": 0, "ended": 1}

    ((_, end_time, billing),) = fake_sessions.completed
    assert end_time == dropped_at
    assert billing.duration_minutes == 2
    assert (dropped_at - started_at).total_seconds() == 100


@pytest.mark.asyncio
async def test_reaper_keeps_call_while_someone_is_connected(hub, authenticated, clock, fake_sessions):
    await authenticated()
    await start_call(hub, clock)

    await hub.disconnect("cust-1")
    clock.advance(600)

    assert await hub.reap_stale_calls() == {"rejected": 0, "ended": 0}
    assert fake_sessions.completed == []


# --- chat session rooms -----------------------------------------------------


@pytest.mark.asyncio
async def test_join_chat_session_sends_history_oldest_first(hub, authenticated, fake_sessions):
    customer, _ = await authenticated()
    for text in ("first", "second"):
        await hub.handle_event(
            "cust-1", "send_message", {"sessionId": CHAT_SESSION_ID, "senderId": CUSTOMER_ID, "content": text}
        )
    customer.sent.clear()

    await hub.handle_event("cust-1", "join_chat_session", {"sessionId": CHAT_SESSION_ID})

    history = customer.last("chat_history")
    assert history["sessionId"] == CHAT_SESSION_ID
    assert [m["content"] for m in history["messages"]] == ["first", "second"]
    assert history["messages"][0]["id"] == fake_sessions.messages[0].id
    assert chat_room(CHAT_SESSION_ID) in hub.connections.rooms_of("cust-1")


@pytest.mark.asyncio
async def test_leave_chat_session_drops_room(hub, authenticated):
    await authenticated()
    await hub.handle_event("astro-1", "join_chat_session", {"sessionId": CHAT_SESSION_ID})

    await hub.handle_event("astro-1", "leave_chat_session", {"sessionId": CHAT_SESSION_ID})

    assert hub.connections.room_members(chat_room(CHAT_SESSION_ID)) == set()
    assert hub.connections.rooms_of("astro-1") == {user_room(ASTROLOGER_ID), ASTROLOGERS_ROOM}


@pytest.mark.asyncio
async def test_outsider_cannot_join_chat_session(hub, authenticated, connect_socket):
    await authenticated()
    outsider = connect_socket("other-1", "77777777-7777-7777-7777-777777777777", "astrologer")
    await hub.handle_event(
        "other-1", "authenticate", {"userId": "77777777-7777-7777-7777-777777777777", "userType": "astrologer"}
    )

    await hub.handle_event("other-1", "join_chat_session", {"sessionId": CHAT_SESSION_ID})

    assert outsider.last("chat_error") == {"error": "Not part of this session"}
    assert outsider.last("chat_history") is None
    assert hub.connections.room_members(chat_room(CHAT_SESSION_ID)) == set()


@pytest.mark.asyncio
async def test_join_chat_session_storage_failure(hub, authenticated, fake_sessions):
    customer, _ = await authenticated()
    fake_sessions.recent_messages = AsyncMock(side_effect=RuntimeError("connection reset"))

    await hub.handle_event("cust-1", "join_chat_session", {"sessionId": CHAT_SESSION_ID})

    assert customer.last("chat_error") == {"error": "Failed to join chat session"}


# --- call locks -------------------------------------------------------------


@pytest.mark.asyncio
async def test_failed_call_events_leave_no_locks(hub, authenticated):
    await authenticated()

    for _ in range(20):
        session_id = str(uuid.uuid4())
        await hub.handle_event("cust-1", "answer_call", {"sessionId": session_id})
        await hub.handle_event("cust-1", "reject_call", {"sessionId": session_id})
        await hub.handle_event("cust-1", "end_call", {"sessionId": session_id})
        await hub.handle_event("cust-1", "initiate_call", {"sessionId": session_id, "callerId": CUSTOMER_ID})

    assert hub._call_locks == {}


@pytest.mark.asyncio
async def test_call_lock_released_after_each_transition(hub, authenticated, clock):
    customer, _ = await authenticated()
    payload = {"sessionId": CALL_SESSION_ID, "callerId": CUSTOMER_ID}

    await hub.handle_event("cust-1", "initiate_call", payload)
    await hub.handle_event("cust-1", "initiate_call", payload)
    assert customer.last("call_error") == {"error": "Call already in progress"}
    assert hub._call_locks == {}

    await hub.handle_event("astro-1", "answer_call", {"sessionId": CALL_SESSION_ID})
    assert hub._call_locks == {}

    clock.advance(30)
    await hub.handle_event("cust-1", "end_call", {"sessionId": CALL_SESSION_ID})
    assert hub._call_locks == {}


@pytest.mark.asyncio
async def test_concurrent_initiates_ring_once(hub, authenticated, fake_sessions, fake_triggers):
    customer, astrologer = await authenticated()
    row = fake_sessions.call_sessions[CALL_SESSION_ID]

    async def slow_lookup(session_id):
        await asyncio.sleep(0)
        return row if session_id == CALL_SESSION_ID else None

    fake_sessions.get_call_session = slow_lookup
    payload = {"sessionId": CALL_SESSION_ID, "callerId": CUSTOMER_ID}

    await asyncio.gather(*(hub.handle_event("cust-1", "initiate_call", payload) for _ in range(3)))

    assert astrologer.events().count("incoming_call") == 1
    assert customer.events().count("call_error") == 2
    fake_triggers.on_incoming_call.assert_awaited_once()
    assert hub._call_locks == {}


# --- stale presence ---------------------------------------------------------


@pytest.mark.asyncio
async def test_expired_astrologer_presence_clears_online_flag(hub, fake_users):
    dead = ConnectedUser(socket_id="dead-1", user_id=ASTROLOGER_ID, user_type="astrologer")
    hub.presence.sweep_expired = AsyncMock(return_value=[dead])

    assert await hub.expire_stale_presence() == 1

    hub.presence.sweep_expired.assert_awaited_once_with(settings.PRESENCE_TTL_SECONDS)
    assert fake_users.online_calls == [(ASTROLOGER_ID, False)]


@pytest.mark.asyncio
async def test_reaper_still_runs_when_presence_sweep_fails(hub, authenticated, clock):
    await authenticated()
    await hub.handle_event("cust-1", "initiate_call", {"sessionId": CALL_SESSION_ID, "callerId": CUSTOMER_ID})
    hub.presence.sweep_expired = AsyncMock(side_effect=ConnectionError("redis down"))

    clock.advance(61)

    assert await hub.reap_stale_calls() == {"rejected": 1, "ended": 0}
