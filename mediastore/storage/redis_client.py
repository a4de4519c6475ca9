"""Direct Redis transport for the key-value backend."""

import re
from collections.abc import Awaitable
from typing import TypeVar

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from mediastore.storage.errors import StorageError, TransientIOError
from mediastore.storage.kv import KeyValueClient

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SCAN_BATCH = 500


def _glob_escape(prefix: str) -> str:
    return re.sub(r"([*?\[\]\\])", r"\\\1", prefix)


class RedisClient(KeyValueClient):
    """KeyValueClient over redis.asyncio.

    Usage:
        async with KeyValueStorage(RedisClient("redis://localhost:6379")) as storage:
            await storage.check_user_exist("alice")
    """

    def __init__(self, url: str, client_name: str = "mediastore-redis"):
        """Initialize Redis client.

        Args:
            url: Redis connection URL
            client_name: Name reported to the server (CLIENT SETNAME)
        """
        self.url = url
        self.client_name = client_name
        self._redis: aioredis.Redis | None = None

    @property
    def redis(self) -> aioredis.Redis:
        """Get Redis connection, raise if not connected."""
        if self._redis is None:
            raise StorageError("RedisClient is not connected")
        return self._redis

    async def connect(self) -> None:
        self._redis = aioredis.from_url(
            self.url, decode_responses=True, client_name=self.client_name
        )
        await self._call(self._redis.ping())
        logger.info("redis_connected", client_name=self.client_name)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("redis_closed")

    async def _call(self, command: Awaitable[T]) -> T:
        try:
            return await command
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("redis_connection_error", error=str(e))
            raise TransientIOError(f"Redis unavailable: {e}") from e
        except RedisError as e:
            logger.error("redis_command_error", error=str(e))
            raise StorageError(f"Redis command failed: {e}") from e

    async def get(self, key: str) -> str | None:
        return await self._call(self.redis.get(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        await self._call(self.redis.set(key, value, ex=ttl))

    async def set_if_absent(self, key: str, value: str) -> bool:
        return bool(await self._call(self.redis.set(key, value, nx=True)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._call(self.redis.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self._call(self.redis.exists(key)))

    async def scan(self, prefix: str) -> list[str]:
        pattern = f"{_glob_escape(prefix)}*"
        try:
            return [key async for key in self.redis.scan_iter(match=pattern, count=SCAN_BATCH)]
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientIOError(f"Redis unavailable: {e}") from e
        except RedisError as e:
            raise StorageError(f"Redis scan failed: {e}") from e

    async def hget(self, key: str, field: str) -> str | None:
        return await self._call(self.redis.hget(key, field))

    async def hset(self, key: str, field: str, value: str) -> None:
        await self._call(self.redis.hset(key, field, value))

    async def hdel(self, key: str, field: str) -> None:
        await self._call(self.redis.hdel(key, field))

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._call(self.redis.hgetall(key))

    async def lpush(self, key: str, value: str) -> None:
        await self._call(self.redis.lpush(key, value))

    async def rpush(self, key: str, value: str) -> None:
        await self._call(self.redis.rpush(key, value))

    async def lrem(self, key: str, value: str) -> None:
        await self._call(self.redis.lrem(key, 0, value))

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        await self._call(self.redis.ltrim(key, start, stop))

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return await self._call(self.redis.lrange(key, start, stop))
