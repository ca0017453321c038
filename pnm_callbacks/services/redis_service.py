"""
Redis Service

Provides the key-value operations the idempotency ledger needs when it is
backed by Redis.
"""

from typing import Any, Optional, Sequence

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from pnm_callbacks.config import settings
from pnm_callbacks.utils.exceptions import TransientStorageException
from pnm_callbacks.utils.logging_config import get_logger

logger = get_logger(__name__)


class RedisService:
    """Redis operations service"""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.redis_url
        self.redis_client: Optional[Redis] = None
        self._pool = None

    async def connect(self) -> None:
        """Establish connection to Redis"""
        try:
            self._pool = aioredis.ConnectionPool.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=10,
                socket_timeout=settings.ledger_timeout_seconds,
                socket_connect_timeout=settings.ledger_timeout_seconds,
            )
            self.redis_client = aioredis.Redis(connection_pool=self._pool)
            await self.redis_client.ping()
            logger.info("Successfully connected to Redis")
        except (RedisError, ValueError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise TransientStorageException(f"Redis connection failed: {e}")

    async def disconnect(self) -> None:
        """Close Redis connection"""
        if self.redis_client:
            await self.redis_client.aclose()
            if self._pool:
                await self._pool.disconnect()
            logger.info("Disconnected from Redis")

    async def get(self, key: str) -> Optional[str]:
        """
        Get value from Redis.

        Args:
            key: Redis key

        Returns:
            Stored value or None if not found
        """
        try:
            if not self.redis_client:
                raise TransientStorageException("Redis client not connected")

            return await self.redis_client.get(key)
        except RedisError as e:
            logger.error(f"Error getting key {key} from Redis: {e}")
            raise TransientStorageException(f"Failed to get key from Redis: {e}")

    async def run_script(
        self,
        script: str,
        keys: Sequence[str],
        args: Sequence[Any] = (),
    ) -> Any:
        """
        Run a Lua script atomically on the server (EVAL).

        Args:
            script: Lua source
            keys: Keys the script touches (KEYS)
            args: Script arguments (ARGV)

        Returns:
            The script's return value
        """
        try:
            if not self.redis_client:
                raise TransientStorageException("Redis client not connected")

            return await self.redis_client.eval(script, len(keys), *keys, *args)
        except RedisError as e:
            logger.error(f"Error running script on {list(keys)} in Redis: {e}")
            raise TransientStorageException(f"Failed to run script in Redis: {e}")

    async def set_if_present(
        self,
        key: str,
        value: str,
    ) -> bool:
        """
        Overwrite an existing key, keeping its TTL (SET XX KEEPTTL).

        Returns:
            True if the key existed and was updated
        """
        try:
            if not self.redis_client:
                raise TransientStorageException("Redis client not connected")

            updated = await self.redis_client.set(key, value, xx=True, keepttl=True)
            return bool(updated)
        except RedisError as e:
            logger.error(f"Error updating key {key} in Redis: {e}")
            raise TransientStorageException(f"Failed to update key in Redis: {e}")


# Global Redis service instance
redis_service = RedisService()
