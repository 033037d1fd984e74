"""
Presence and active-call registries for the realtime hub.

Both are narrow async interfaces with two backings:
- in-memory maps for a single process (also used by the tests)
- Redis hashes/sets so several processes share one view of who is online
  and which calls are in flight

The hub receives them as constructor arguments; nothing else touches them.
Values are stored serialized in both backings so a caller never holds a
live reference into registry state.
"""

import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.realtime_domain import CallSession, ConnectedUser
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

PRESENCE_SOCKETS_KEY = "presence:sockets"
PRESENCE_LAST_SEEN_KEY = "presence:last_seen"
PRESENCE_USER_KEY_PREFIX = "presence:user:"
PRESENCE_HEARTBEAT_KEY = "presence:heartbeat"
ACTIVE_CALLS_KEY = "calls:active"


class PresenceRegistry(Protocol):
    async def add(self, user: ConnectedUser) -> None: ...

    async def remove(self, socket_id: str) -> ConnectedUser | None: ...

    async def get(self, socket_id: str) -> ConnectedUser | None: ...

    async def connections_for(self, user_id: str) -> list[str]: ...

    async def is_online(self, user_id: str) -> bool: ...

    async def online_statuses(self, user_ids: list[str]) -> dict[str, bool]: ...

    async def last_seen(self, user_id: str) -> datetime | None: ...

    async def heartbeat(self) -> int: ...

    async def sweep_expired(self, max_age_seconds: float) -> list[ConnectedUser]: ...


class ActiveCallRegistry(Protocol):
    async def get(self, session_id: str) -> CallSession | None: ...

    async def put(self, call: CallSession) -> None: ...

    async def remove(self, session_id: str) -> CallSession | None: ...

    async def all(self) -> list[CallSession]: ...


class InMemoryPresenceRegistry:
    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sockets: dict[str, dict] = {}
        self._user_sockets: dict[str, set[str]] = {}
        self._last_seen: dict[str, datetime] = {}

    async def add(self, user: ConnectedUser) -> None:
        self._sockets[user.socket_id] = user.to_dict()
        self._user_sockets.setdefault(user.user_id, set()).add(user.socket_id)

    async def remove(self, socket_id: str) -> ConnectedUser | None:
        data = self._sockets.pop(socket_id, None)
        if data is None:
            return None

        user = ConnectedUser.from_dict(data)
        remaining = self._user_sockets.get(user.user_id, set())
        remaining.discard(socket_id)
        if not remaining:
            self._user_sockets.pop(user.user_id, None)
            self._last_seen[user.user_id] = self._clock()
        return user

    async def get(self, socket_id: str) -> ConnectedUser | None:
        data = self._sockets.get(socket_id)
        return ConnectedUser.from_dict(data) if data else None

    async def connections_for(self, user_id: str) -> list[str]:
        return sorted(self._user_sockets.get(user_id, ()))

    async def is_online(self, user_id: str) -> bool:
        return bool(self._user_sockets.get(user_id))

    async def online_statuses(self, user_ids: list[str]) -> dict[str, bool]:
        return {uid: bool(self._user_sockets.get(uid)) for uid in user_ids}

    async def last_seen(self, user_id: str) -> datetime | None:
        return self._last_seen.get(user_id)

    # Sockets of this process are removed by their own receive loop
    async def heartbeat(self) -> int:
        return 0

    async def sweep_expired(self, max_age_seconds: float) -> list[ConnectedUser]:
        return []


class InMemoryActiveCallRegistry:
    def __init__(self):
        self._calls: dict[str, dict] = {}

    async def get(self, session_id: str) -> CallSession | None:
        data = self._calls.get(session_id)
        return CallSession.from_dict(data) if data else None

    async def put(self, call: CallSession) -> None:
        self._calls[call.session_id] = call.to_dict()

    async def remove(self, session_id: str) -> CallSession | None:
        data = self._calls.pop(session_id, None)
        return CallSession.from_dict(data) if data else None

    async def all(self) -> list[CallSession]:
        return [CallSession.from_dict(data) for data in self._calls.values()]


class _RedisBacked:
    def __init__(self, client_provider=None):
        # The shared client only exists after application startup
        self._client_provider = client_provider or (lambda: fast_redis.client)

    def _client(self):
        client = self._client_provider()
        if client is None:
            raise ConnectionError("Redis client not initialized")
        return client


class RedisPresenceRegistry(_RedisBacked):
    """
    presence:sockets      hash  socket_id -> ConnectedUser JSON
    presence:user:{id}    set   socket ids of that user
    presence:last_seen    hash  user_id -> ISO timestamp of last disconnect
    presence:heartbeat    zset  socket_id scored by its last heartbeat (epoch seconds)

    Each process refreshes the heartbeat of the sockets it holds. Sockets of
    a process that died stop being refreshed and are swept by
    `sweep_expired`, with last_seen set to their final heartbeat.
    """

    def __init__(self, client_provider=None, clock: Callable[[], datetime] | None = None):
        super().__init__(client_provider)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._local_sockets: set[str] = set()

    async def add(self, user: ConnectedUser) -> None:
        async with self._client().pipeline(transaction=True) as pipe:
            pipe.hset(PRESENCE_SOCKETS_KEY, user.socket_id, json.dumps(user.to_dict()))
            pipe.sadd(f"{PRESENCE_USER_KEY_PREFIX}{user.user_id}", user.socket_id)
            pipe.zadd(PRESENCE_HEARTBEAT_KEY, {user.socket_id: self._clock().timestamp()})
            await pipe.execute()
        self._local_sockets.add(user.socket_id)

    async def remove(self, socket_id: str, seen_at: datetime | None = None) -> ConnectedUser | None:
        self._local_sockets.discard(socket_id)
        client = self._client()
        raw = await client.hget(PRESENCE_SOCKETS_KEY, socket_id)
        if raw is None:
            return None

        user = ConnectedUser.from_dict(json.loads(raw))
        user_key = f"{PRESENCE_USER_KEY_PREFIX}{user.user_id}"

        async with client.pipeline(transaction=True) as pipe:
            pipe.hdel(PRESENCE_SOCKETS_KEY, socket_id)
            pipe.srem(user_key, socket_id)
            pipe.zrem(PRESENCE_HEARTBEAT_KEY, socket_id)
            pipe.scard(user_key)
            *_, remaining = await pipe.execute()

        if remaining == 0:
            await client.hset(PRESENCE_LAST_SEEN_KEY, user.user_id, (seen_at or self._clock()).isoformat())
        return user

    async def heartbeat(self) -> int:
        """Refresh this process's sockets; returns how many were refreshed."""
        if not self._local_sockets:
            return 0
        now = self._clock().timestamp()
        # xx: never resurrect an entry another process already swept
        await self._client().zadd(
            PRESENCE_HEARTBEAT_KEY, {sid: now for sid in self._local_sockets}, xx=True
        )
        return len(self._local_sockets)

    async def sweep_expired(self, max_age_seconds: float) -> list[ConnectedUser]:
        """Remove sockets whose heartbeat is older than `max_age_seconds`."""
        client = self._client()
        cutoff = self._clock().timestamp() - max_age_seconds
        expired = await client.zrangebyscore(PRESENCE_HEARTBEAT_KEY, "-inf", cutoff, withscores=True)
        if not expired:
            return []

        removed = []
        for socket_id, beat in expired:
            user = await self.remove(socket_id, seen_at=datetime.fromtimestamp(beat, UTC))
            if user is not None:
                removed.append(user)
        await client.zrem(PRESENCE_HEARTBEAT_KEY, *(socket_id for socket_id, _ in expired))

        logger.warning("Expired stale presence entries", expired=len(expired), users=len(removed))
        return removed

    async def get(self, socket_id: str) -> ConnectedUser | None:
        raw = await self._client().hget(PRESENCE_SOCKETS_KEY, socket_id)
        return ConnectedUser.from_dict(json.loads(raw)) if raw else None

    async def connections_for(self, user_id: str) -> list[str]:
        members = await self._client().smembers(f"{PRESENCE_USER_KEY_PREFIX}{user_id}")
        return sorted(members)

    async def is_online(self, user_id: str) -> bool:
        return await self._client().scard(f"{PRESENCE_USER_KEY_PREFIX}{user_id}") > 0

    async def online_statuses(self, user_ids: list[str]) -> dict[str, bool]:
        if not user_ids:
            return {}
        async with self._client().pipeline(transaction=False) as pipe:
            for uid in user_ids:
                pipe.scard(f"{PRESENCE_USER_KEY_PREFIX}{uid}")
            counts = await pipe.execute()
        return {uid: count > 0 for uid, count in zip(user_ids, counts, strict=True)}

    async def last_seen(self, user_id: str) -> datetime | None:
        raw = await self._client().hget(PRESENCE_LAST_SEEN_KEY, user_id)
        return datetime.fromisoformat(raw) if raw else None


class RedisActiveCallRegistry(_RedisBacked):
    """calls:active hash session_id -> CallSession JSON."""

    async def get(self, session_id: str) -> CallSession | None:
        raw = await self._client().hget(ACTIVE_CALLS_KEY, session_id)
        return CallSession.from_dict(json.loads(raw)) if raw else None

    async def put(self, call: CallSession) -> None:
        await self._client().hset(ACTIVE_CALLS_KEY, call.session_id, json.dumps(call.to_dict()))

    async def remove(self, session_id: str) -> CallSession | None:
        async with self._client().pipeline(transaction=True) as pipe:
            pipe.hget(ACTIVE_CALLS_KEY, session_id)
            pipe.hdel(ACTIVE_CALLS_KEY, session_id)
            raw, _ = await pipe.execute()
        return CallSession.from_dict(json.loads(raw)) if raw else None

    async def all(self) -> list[CallSession]:
        data = await self._client().hgetall(ACTIVE_CALLS_KEY)
        return [CallSession.from_dict(json.loads(raw)) for raw in data.values()]


def build_registries() -> tuple[PresenceRegistry, ActiveCallRegistry]:
    """Pick the backing named by REALTIME_REGISTRY_BACKEND."""
    backend = settings.REALTIME_REGISTRY_BACKEND.strip().lower()
    if backend == "redis":
        logger.info("Using Redis-backed realtime registries")
        return RedisPresenceRegistry(), RedisActiveCallRegistry()

    logger.info("Using in-memory realtime registries (single process only)")
    return InMemoryPresenceRegistry(), InMemoryActiveCallRegistry()
