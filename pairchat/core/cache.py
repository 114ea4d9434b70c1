"""
Redis cache management.
Provides connection pooling and helper functions for caching operations.
"""
import json
import logging
from typing import Any, Optional
from redis import asyncio as aioredis
from redis.exceptions import RedisError
from pairchat.config import settings

logger = logging.getLogger(__name__)


class RedisCache:
    """
    Redis cache manager with connection pooling.

    Every operation is a no-op when no Redis URL is configured or the
    connection could not be established, so callers never need to guard.
    """

    def __init__(self):
        """Initialize Redis connection pool."""
        self.redis: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if not settings.redis_url:
            logger.info("No Redis URL provided - running without Redis cache")
            self.redis = None
            return

        try:
            self.redis = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=50,
            )
            await self.redis.ping()
            logger.info("Connected to Redis")
        except (RedisError, OSError) as e:
            logger.warning(f"Could not connect to Redis, running without cache: {e}")
            self.redis = None

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None

    async def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value or None if not found
        """
        if not self.redis:
            return None

        value = await self.redis.get(key)
        if value:
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Set value in cache with optional TTL.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time to live in seconds

        Returns:
            True if successful
        """
        if not self.redis:
            return False

        if isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)

        if ttl:
            return await self.redis.setex(key, ttl, value)
        return await self.redis.set(key, value)

    async def delete(self, key: str) -> bool:
        if not self.redis:
            return False
        return bool(await self.redis.delete(key))


# Global cache instance
cache = RedisCache()


async def cache_profile(user_id: str, profile: dict) -> bool:
    """Cache a profile fetched from the platform."""
    return await cache.set(f"profile:{user_id}", profile, ttl=settings.cache_profile_ttl)


async def get_cached_profile(user_id: str) -> Optional[dict]:
    return await cache.get(f"profile:{user_id}")


async def remember_send(user_id: str, nonce: str, message_id: str) -> bool:
    """Record the message a client nonce produced so retries return it."""
    return await cache.set(f"send:{user_id}:{nonce}", message_id, ttl=settings.send_nonce_ttl)


async def get_sent_message_id(user_id: str, nonce: str) -> Optional[str]:
    value = await cache.get(f"send:{user_id}:{nonce}")
    return str(value) if value is not None else None
