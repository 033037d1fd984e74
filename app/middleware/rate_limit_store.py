"""
Rate limit storage backends.

Each backend exposes one atomic primitive, `hit()`: reset the window when
it has expired (or the key is new), otherwise increment the counter, and
return the resulting record. The limiter never does read-then-write on a
counter, so two concurrent requests can never both observe count=N.

Backends:
- RedisRateLimitStore: Lua script, one round trip, atomic on the server.
  Keys carry a PTTL covering their window, so Redis does the cleanup.
- InMemoryRateLimitStore: single-process fallback and test double. `hit()`
  never awaits, which makes it atomic under the event loop.
"""

from dataclasses import dataclass
from typing import Protocol

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

KEY_PREFIX = "ratelimit:"


@dataclass
class RateLimitRecord:
    """Counter state for one `identifier:fingerprint` key."""

    key: str
    count: int
    window_start_ms: int
    last_request_ms: int


class RateLimitStore(Protocol):
    async def hit(self, key: str, window_ms: int, now_ms: int) -> RateLimitRecord: ...

    async def get(self, key: str) -> RateLimitRecord | None: ...

    async def delete(self, key: str) -> bool: ...

    async def purge(self, cutoff_ms: int) -> int: ...


class RedisRateLimitStore:
    """Redis hash per key: count, window_start, last_request (epoch ms)."""

    # Returns {count, window_start}
    HIT_LUA_SCRIPT = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])
    local now_ms = tonumber(ARGV[2])

    local window_start = tonumber(redis.call('HGET', key, 'window_start'))
    local count

    if (not window_start) or (window_start < now_ms - window_ms) then
        -- New key or expired window: start over
        window_start = now_ms
        count = 1
        redis.call('HSET', key, 'count', 1, 'window_start', now_ms, 'last_request', now_ms)
    else
        count = redis.call('HINCRBY', key, 'count', 1)
        redis.call('HSET', key, 'last_request', now_ms)
    end

    -- Keep the key alive at least until its window closes
    local needed_ttl = window_start + window_ms - now_ms + 1
    if redis.call('PTTL', key) < needed_ttl then
        redis.call('PEXPIRE', key, needed_ttl)
    end

    return {count, window_start}
    """

    def __init__(self, client_provider=None):
        # Resolved lazily: the shared client is only connected after startup
        self._client_provider = client_provider or (lambda: fast_redis.client)

    def _client(self):
        client = self._client_provider()
        if client is None:
            raise ConnectionError("Redis client not initialized")
        return client

    async def hit(self, key: str, window_ms: int, now_ms: int) -> RateLimitRecord:
        result = await self._client().eval(
            self.HIT_LUA_SCRIPT,
            1,
            f"{KEY_PREFIX}{key}",
            window_ms,
            now_ms,
        )
        return RateLimitRecord(
            key=key,
            count=int(result[0]),
            window_start_ms=int(result[1]),
            last_request_ms=now_ms,
        )

    async def get(self, key: str) -> RateLimitRecord | None:
        data = await self._client().hgetall(f"{KEY_PREFIX}{key}")
        if not data:
            return None
        return RateLimitRecord(
            key=key,
            count=int(data.get("count", 0)),
            window_start_ms=int(data.get("window_start", 0)),
            last_request_ms=int(data.get("last_request", 0)),
        )

    async def delete(self, key: str) -> bool:
        return await self._client().delete(f"{KEY_PREFIX}{key}") > 0

    async def purge(self, cutoff_ms: int) -> int:
        # Expiry is handled by PTTL set in the hit script
        return 0


class InMemoryRateLimitStore:
    """Process-local store. Not shared across workers."""

    def __init__(self):
        self._records: dict[str, RateLimitRecord] = {}

    async def hit(self, key: str, window_ms: int, now_ms: int) -> RateLimitRecord:
        record = self._records.get(key)

        if record is None or record.window_start_ms < now_ms - window_ms:
            record = RateLimitRecord(
                key=key, count=1, window_start_ms=now_ms, last_request_ms=now_ms
            )
            self._records[key] = record
        else:
            record.count += 1
            record.last_request_ms = now_ms

        return RateLimitRecord(**vars(record))

    async def get(self, key: str) -> RateLimitRecord | None:
        record = self._records.get(key)
        return RateLimitRecord(**vars(record)) if record else None

    async def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    async def purge(self, cutoff_ms: int) -> int:
        expired = [k for k, r in self._records.items() if r.window_start_ms < cutoff_ms]
        for key in expired:
            del self._records[key]
        return len(expired)


def build_rate_limit_store() -> RateLimitStore:
    """Pick the backend named by RATE_LIMIT_BACKEND."""
    backend = settings.RATE_LIMIT_BACKEND.strip().lower()
    if backend == "memory":
        logger.warning("Using in-memory rate limit store (single process only)")
        return InMemoryRateLimitStore()
    return RedisRateLimitStore()
