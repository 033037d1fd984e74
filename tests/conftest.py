import os

# Must be set before app modules build their singletons
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("REALTIME_REGISTRY_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret")

from decimal import Decimal

import pytest

from app.auth.verify import admin_dependency, auth_dependency
from app.models.domain.notification_domain import UserType
from app.models.domain.realtime_domain import CallSessionRow, ChatSessionRow
from app.realtime.connection_manager import ConnectionManager
from app.realtime.hub import RealtimeHub
from app.realtime.registries import InMemoryActiveCallRegistry, InMemoryPresenceRegistry
from tests.support import (
    ASTROLOGER_ID,
    CALL_SESSION_ID,
    CHAT_SESSION_ID,
    CUSTOMER_ID,
    FakeAudit,
    FakeClock,
    FakeNotificationRepository,
    FakeSessionRepository,
    FakeTriggers,
    FakeUserRepository,
    FakeWebSocket,
)


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": CUSTOMER_ID, "user_type": "customer"}

    return _override


@pytest.fixture
def admin_override():
    def _override():
        return {"sub": "99999999-9999-9999-9999-999999999999", "user_type": "administrator"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override, admin_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override
        app.dependency_overrides[admin_dependency] = admin_override

    return _apply


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_users():
    users = FakeUserRepository()
    users.add(CUSTOMER_ID, UserType.CUSTOMER, full_name="Asha Rao", push_token="c" * 40)
    users.add(ASTROLOGER_ID, UserType.ASTROLOGER, full_name="Guru Dev", push_token="a" * 40)
    return users


@pytest.fixture
def fake_notification_repo():
    return FakeNotificationRepository()


@pytest.fixture
def fake_sessions():
    sessions = FakeSessionRepository()
    sessions.chat_sessions[CHAT_SESSION_ID] = ChatSessionRow(
        id=CHAT_SESSION_ID, user_id=CUSTOMER_ID, astrologer_id=ASTROLOGER_ID
    )
    sessions.call_sessions[CALL_SESSION_ID] = CallSessionRow(
        id=CALL_SESSION_ID,
        user_id=CUSTOMER_ID,
        astrologer_id=ASTROLOGER_ID,
        status="pending",
        rate_per_minute=Decimal("10.00"),
    )
    return sessions


@pytest.fixture
def fake_triggers():
    return FakeTriggers()


@pytest.fixture
def fake_audit():
    return FakeAudit()


@pytest.fixture
def hub(fake_sessions, fake_users, fake_triggers, fake_audit, clock):
    return RealtimeHub(
        ConnectionManager(),
        InMemoryPresenceRegistry(clock=clock),
        InMemoryActiveCallRegistry(),
        sessions=fake_sessions,
        users=fake_users,
        triggers=fake_triggers,
        audit=fake_audit,
        clock=clock,
    )


@pytest.fixture
def connect_socket(hub):
    """Attach a fake socket carrying the given token claims; returns the socket."""

    def _connect(socket_id: str, user_id: str, user_type: str) -> FakeWebSocket:
        websocket = FakeWebSocket()
        hub.connect(socket_id, websocket, {"userId": user_id, "user_type": user_type})
        return websocket

    return _connect
