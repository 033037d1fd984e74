"""
Rate Limiter - fixed-window request counting per client key.

Guards the auth-sensitive routes (login, registration, password reset) and
the general API surface.

Design:
- Fixed window keyed by `identifier:client_fingerprint`
- Atomic reset-or-increment delegated to the store (Redis Lua or in-memory)
- Fail-open: if the store errors, the request is allowed
- Progressive variant escalates through stricter tiers for repeat
  offenders, using a 24h violations counter next to the base key

Usage:
    from app.middleware.rate_limiter import RATE_LIMIT_CONFIGS, rate_limiter

    result = await rate_limiter.check_limit(
        "login", client_fingerprint(request), RATE_LIMIT_CONFIGS["login"]
    )
    if not result.allowed:
        raise HTTPException(429, detail="Rate limit exceeded")
"""

import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from app.infrastructure.observability.logging import get_logger
from app.middleware.rate_limit_store import (
    RateLimitRecord,
    RateLimitStore,
    build_rate_limit_store,
)

logger = get_logger(__name__)

VIOLATION_WINDOW_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max: int


@dataclass
class RateLimitResult:
    """Outcome of one limiter check."""

    allowed: bool
    remaining: int
    reset_time: datetime
    total: int
    limit: int
    level: int | None = None
    error: str | None = field(default=None, repr=False)

    def retry_after_seconds(self, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        return max(1, math.ceil((self.reset_time - now).total_seconds()))

    def to_info(self) -> dict:
        """Dict form stored on request.state for the headers middleware."""
        info = {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": int(self.reset_time.timestamp()),
            "retry_after": None if self.allowed else self.retry_after_seconds(),
        }
        if self.level is not None:
            info["level"] = self.level
        if self.error:
            info["error"] = self.error
        return info


def _minutes(n: int) -> int:
    return n * 60 * 1000


def _hours(n: int) -> int:
    return n * 60 * 60 * 1000


RATE_LIMIT_CONFIGS: dict[str, RateLimitConfig] = {
    "forgot_password": RateLimitConfig(window_ms=_minutes(15), max=3),
    "reset_password": RateLimitConfig(window_ms=_hours(1), max=10),
    "login": RateLimitConfig(window_ms=_minutes(15), max=10),
    "registration": RateLimitConfig(window_ms=_hours(1), max=5),
    "api": RateLimitConfig(window_ms=_minutes(1), max=100),
}

# Ordered looser -> stricter
PROGRESSIVE_FORGOT_PASSWORD_TIERS: list[RateLimitConfig] = [
    RateLimitConfig(window_ms=_minutes(15), max=3),
    RateLimitConfig(window_ms=_minutes(30), max=2),
    RateLimitConfig(window_ms=_hours(1), max=1),
    RateLimitConfig(window_ms=_hours(4), max=1),
]


def make_key(identifier: str, client_fingerprint: str) -> str:
    return f"{identifier}:{client_fingerprint}"


class RateLimiter:
    """
    Fixed-window limiter over a pluggable store.

    A window resets wholesale once `now - window_start > window_ms`, so a
    request at exactly `window_ms` after the first still counts against
    the old window.
    """

    def __init__(self, store: RateLimitStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock
        self._longest_window_ms = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _to_datetime(ms: int) -> datetime:
        return datetime.fromtimestamp(ms / 1000, tz=UTC)

    async def _purge_expired(self, now_ms: int) -> None:
        try:
            purged = await self.store.purge(now_ms - self._longest_window_ms)
            if purged:
                logger.debug("Purged expired rate limit records", count=purged)
        except Exception as e:
            logger.warning("Rate limit purge failed", error=str(e))

    async def check_limit(
        self,
        identifier: str,
        client_fingerprint: str,
        config: RateLimitConfig,
    ) -> RateLimitResult:
        """
        Count this request against `identifier:client_fingerprint`.

        Returns:
            RateLimitResult. `count == max` is still allowed; `max + 1` is not.
            On store failure the result is allowed with remaining=0, total=0.
        """
        key = make_key(identifier, client_fingerprint)
        now_ms = self._now_ms()
        self._longest_window_ms = max(self._longest_window_ms, config.window_ms)

        try:
            await self._purge_expired(now_ms)
            record = await self.store.hit(key, config.window_ms, now_ms)
        except Exception as e:
            logger.error(
                "Rate limiter store error, failing open",
                error=str(e),
                error_type=type(e).__name__,
                key=key,
            )
            return RateLimitResult(
                allowed=True,
                remaining=0,
                reset_time=self._to_datetime(now_ms + config.window_ms),
                total=0,
                limit=config.max,
                error="rate_limiter_error",
            )

        return self._result_from_record(record, config)

    def _result_from_record(self, record: RateLimitRecord, config: RateLimitConfig) -> RateLimitResult:
        return RateLimitResult(
            allowed=record.count <= config.max,
            remaining=max(0, config.max - record.count),
            reset_time=self._to_datetime(record.window_start_ms + config.window_ms),
            total=record.count,
            limit=config.max,
        )

    async def _violation_level(self, key: str, tier_count: int, now_ms: int) -> int:
        try:
            violations = await self.store.get(f"{key}:violations")
        except Exception as e:
            logger.warning("Could not read rate limit violations", key=key, error=str(e))
            return 0

        if not violations or violations.window_start_ms < now_ms - VIOLATION_WINDOW_MS:
            return 0
        return min(violations.count, tier_count - 1)

    async def check_progressive_limit(
        self,
        identifier: str,
        client_fingerprint: str,
        tiers: list[RateLimitConfig],
    ) -> RateLimitResult:
        """
        Check against the tier selected by the key's 24h violation count.

        Every denied request records one more violation, so the next check
        uses the next stricter tier, capped at the last one.
        """
        if not tiers:
            raise ValueError("At least one rate limit tier is required")

        key = make_key(identifier, client_fingerprint)
        now_ms = self._now_ms()
        self._longest_window_ms = max(self._longest_window_ms, VIOLATION_WINDOW_MS)

        level = await self._violation_level(key, len(tiers), now_ms)
        result = await self.check_limit(identifier, client_fingerprint, tiers[level])
        result.level = level

        if not result.allowed:
            try:
                await self.store.hit(f"{key}:violations", VIOLATION_WINDOW_MS, now_ms)
            except Exception as e:
                logger.warning("Could not record rate limit violation", key=key, error=str(e))

            logger.info(
                "Progressive rate limit violation",
                key=key,
                level=level,
                limit=result.limit,
            )

        return result

    async def get_status(self, key: str) -> RateLimitRecord | None:
        """Current record for a composite key, without counting a request."""
        return await self.store.get(key)

    async def reset_limit(self, key: str) -> bool:
        """Drop the counter and any violations for a composite key."""
        removed = await self.store.delete(key)
        removed_violations = await self.store.delete(f"{key}:violations")
        logger.info("Rate limit reset", key=key, removed=removed or removed_violations)
        return removed or removed_violations


# Global singleton
rate_limiter = RateLimiter(build_rate_limit_store())
