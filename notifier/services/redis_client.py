# notifier/services/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from notifier.config import settings
from notifier.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Extend TTL only while the caller still owns the key
_COMPARE_AND_EXPIRE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""

# Delete only while the caller still owns the key
_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class FastRedisClient:
    """Pooled async Redis client used for the notification loop lease."""

    def __init__(self):
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", url_preview=settings.REDIS_URL[:30] + "...")

            self.pool = ConnectionPool.from_url(
                settings.REDIS_URL,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info(
                "Fast Redis client initialized successfully",
                max_connections=settings.REDIS_MAX_CONNECTIONS,
            )

        except Exception as e:
            logger.error("Failed to initialize fast Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Fast Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        """Ensure Redis is initialized, fallback if not"""
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        """Get value; raises on connection failure."""
        await self._ensure_initialized()
        try:
            result = await self.client.get(key)
            return result if result else None
        except redis.RedisError as e:
            logger.error("Redis GET failed", key=key[:30], error=str(e))
            raise

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        """Set value with optional TTL; raises on connection failure."""
        await self._ensure_initialized()
        try:
            if ttl_s:
                result = await self.client.setex(key, ttl_s, value)
            else:
                result = await self.client.set(key, value)
            return bool(result)
        except redis.RedisError as e:
            logger.error("Redis SET failed", key=key[:30], error=str(e))
            raise

    async def delete(self, key: str) -> bool:
        """Delete key; raises on connection failure."""
        await self._ensure_initialized()
        try:
            result = await self.client.delete(key)
            return result > 0
        except redis.RedisError as e:
            logger.error("Redis DELETE failed", key=key[:30], error=str(e))
            raise

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        """Atomically create key with a TTL; False if it already exists."""
        await self._ensure_initialized()
        try:
            result = await self.client.set(key, value, nx=True, px=ttl_ms)
            return bool(result)
        except redis.RedisError as e:
            logger.error("Redis SET NX failed", key=key[:30], error=str(e))
            raise

    async def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        """Refresh TTL only if the key still holds the expected value."""
        await self._ensure_initialized()
        try:
            result = await self.client.eval(_COMPARE_AND_EXPIRE, 1, key, expected, ttl_ms)
            return int(result) == 1
        except redis.RedisError as e:
            logger.error("Redis compare-and-expire failed", key=key[:30], error=str(e))
            raise

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete the key only if it still holds the expected value."""
        await self._ensure_initialized()
        try:
            result = await self.client.eval(_COMPARE_AND_DELETE, 1, key, expected)
            return int(result) == 1
        except redis.RedisError as e:
            logger.error("Redis compare-and-delete failed", key=key[:30], error=str(e))
            raise


# Global instance
fast_redis = FastRedisClient()
