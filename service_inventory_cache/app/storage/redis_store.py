"""
Redis-backed primary store for the inventory cache.
"""

from typing import Dict, Iterable, List, Optional

import redis.asyncio as redis

from shared.logging import get_logger
from shared.errors import StorageUnavailableError
from .base import KeyValueStore


class RedisBackingStore(KeyValueStore):
    """Primary store with a per-value size ceiling.

    The ceiling mirrors the constrained host store the cache was designed for;
    values larger than ``max_value_bytes`` are refused before they reach Redis.
    """

    name = "redis"

    def __init__(
        self,
        redis_url: str,
        *,
        max_value_bytes: Optional[int] = 4096,
        key_pattern: str = "*",
        connect_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.max_value_bytes = max_value_bytes
        self.key_pattern = key_pattern
        self.connect_timeout = connect_timeout
        self.logger = get_logger("inventory_cache.store.redis")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Connect and verify the connection with a PING."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.connect_timeout,
                socket_timeout=self.connect_timeout,
                retry_on_timeout=True,
                health_check_interval=30
            )

            await self.redis.ping()

            self.logger.info("Redis store started", url=self.redis_url)

        except Exception as e:
            self.logger.error("Failed to start Redis store", error=str(e))
            self.redis = None
            raise StorageUnavailableError("redis", str(e))

    async def stop(self):
        """Close the Redis connection."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis store stopped")

    async def is_available(self) -> bool:
        if self.redis is None:
            return False
        try:
            await self.redis.ping()
            return True
        except Exception as e:
            self.logger.warning("Redis availability check failed", error=str(e))
            return False

    async def get(self, key: str) -> Optional[str]:
        if self.redis is None:
            return None
        try:
            return await self.redis.get(key)
        except Exception as e:
            self.logger.warning("Redis get failed", key=key, error=str(e))
            return None

    async def get_many(self, keys: Iterable[str]) -> Dict[str, str]:
        keys = list(keys)
        if self.redis is None or not keys:
            return {}
        try:
            values = await self.redis.mget(keys)
        except Exception as e:
            self.logger.warning("Redis mget failed", keys_count=len(keys), error=str(e))
            return {}
        return {key: value for key, value in zip(keys, values) if value is not None}

    async def set(self, key: str, value: str) -> bool:
        if self.redis is None:
            return False
        if not self.fits(value):
            self.logger.warning(
                "Value exceeds store ceiling",
                key=key,
                size=len(value.encode("utf-8")),
                max_value_bytes=self.max_value_bytes
            )
            return False
        try:
            return bool(await self.redis.set(key, value))
        except Exception as e:
            self.logger.warning("Redis set failed", key=key, error=str(e))
            return False

    async def remove(self, key: str) -> bool:
        if self.redis is None:
            return False
        try:
            await self.redis.delete(key)
            return True
        except Exception as e:
            self.logger.warning("Redis delete failed", key=key, error=str(e))
            return False

    async def remove_many(self, keys: Iterable[str]) -> bool:
        keys = list(keys)
        if self.redis is None:
            return False
        if not keys:
            return True
        try:
            await self.redis.delete(*keys)
            return True
        except Exception as e:
            self.logger.warning("Redis bulk delete failed", keys_count=len(keys), error=str(e))
            return False

    async def list_keys(self) -> List[str]:
        if self.redis is None:
            return []
        try:
            return list(await self.redis.keys(self.key_pattern))
        except Exception as e:
            self.logger.warning("Redis key listing failed", error=str(e))
            return []
