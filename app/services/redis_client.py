# app/services/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def redis_consumers() -> list[str]:
    """Subsystems configured to keep their state in Redis."""
    consumers = []
    if settings.RATE_LIMIT_BACKEND.strip().lower() == "redis":
        consumers.append("rate_limiter")
    if settings.REALTIME_REGISTRY_BACKEND.strip().lower() == "redis":
        consumers.append("realtime_registries")
    return consumers


class FastRedisClient:
    """
    Pooled async Redis client shared by the rate limit store and the
    realtime registries. Those read `client` lazily, so it is None until
    `initialize()` has run.
    """

    def __init__(self):
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._initialized = False

    @property
    def required(self) -> bool:
        return bool(redis_consumers())

    async def initialize(self):
        if self._initialized:
            return

        try:
            self.pool = ConnectionPool.from_url(
                settings.REDIS_URL,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            await self.client.ping()
            self._initialized = True
            logger.info(
                "Redis client initialized",
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                consumers=redis_consumers(),
            )

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            self.client = None
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        if not self._initialized:
            return
        try:
            await self.client.aclose()
            await self.pool.disconnect()
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))
        finally:
            self.client = None
            self.pool = None
            self._initialized = False

    async def ping(self) -> bool:
        if not self._initialized:
            return False
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False


# Global instance
fast_redis = FastRedisClient()
