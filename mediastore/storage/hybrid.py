"""Hybrid storage: relational system of record plus key-value cache.

Users and admin config live in the relational store and are read through
cache-aside entries kept in the key-value store. Favorites, play records,
search history and skip configs live only in the key-value store.

Writes go to the relational store first; the affected cache entries are
deleted afterwards, never updated in place. Cache failures are logged and
absorbed so the relational store keeps serving.
"""

import asyncio
import json
import time
from collections.abc import Awaitable
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from mediastore.storage.base import Storage
from mediastore.storage.errors import ConstraintViolationError, StorageError
from mediastore.storage.kv import KeyValueStorage
from mediastore.storage.models import (
    AdminConfig,
    CacheStats,
    Favorite,
    PlayRecord,
    SkipConfig,
    UserInfo,
)

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

CACHE_PREFIX = "cache:"

# TTLs in seconds
EXISTENCE_TTL = 1800
DOCUMENT_TTL = 3600
LOGIN_TTL = 86400


def cache_key(entity: str, *parts: str) -> str:
    """Build a cache-aside key: cache:<entity>:<parts joined by ':'>."""
    return f"{CACHE_PREFIX}{entity}:{':'.join(parts)}"


class HybridStorage(Storage):
    """Relational store with a key-value cache and key-value side data.

    Usage:
        storage = HybridStorage(PostgresStorage(url), KeyValueStorage(RedisClient(redis_url)))
        async with storage:
            info = await storage.get_user_info("alice")
    """

    def __init__(self, relational: Storage, kv: KeyValueStorage, cache_ttl: int = DOCUMENT_TTL):
        """Initialize hybrid storage.

        Args:
            relational: System of record for users and admin config
            kv: Key-value store for side data and cache entries
            cache_ttl: Default TTL for cache entries without a specific one
        """
        self.relational = relational
        self.kv = kv
        # Users live in the relational store; record writes are checked here
        self.kv.check_user_refs = False
        self.cache_enabled = True
        self.cache_ttl = cache_ttl

    async def connect(self) -> None:
        await self.relational.connect()
        try:
            await self.kv.connect()
        except BaseException:
            await self.relational.close()
            raise
        logger.info("hybrid_storage_connected")

    async def close(self) -> None:
        try:
            await self.kv.close()
        finally:
            await self.relational.close()

    # =========================================================================
    # Cache helpers
    # =========================================================================

    async def _cache_get(self, key: str) -> Any | None:
        if not self.cache_enabled:
            return None
        try:
            cached = await self.kv.cache_get(key)
        except StorageError as e:
            logger.warning("cache_degraded", action="get", key=key, error=str(e))
            return None
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except ValueError as e:
            await self._discard(key, e)
            return None

    async def _cache_get_model(self, key: str, model: type[M]) -> M | None:
        cached = await self._cache_get(key)
        if cached is None:
            return None
        try:
            return model.model_validate(cached)
        except ValidationError as e:
            await self._discard(key, e)
            return None

    async def _discard(self, key: str, error: Exception) -> None:
        """Drop an undecodable entry so the next read repopulates it."""
        logger.warning("cache_degraded", action="decode", key=key, error=str(error))
        await self._invalidate(key)

    async def _cache_set(self, key: str, value: Any, ttl: int | None = None) -> None:
        if not self.cache_enabled:
            return
        try:
            await self.kv.cache_set(key, json.dumps(value), ttl or self.cache_ttl)
        except StorageError as e:
            logger.warning("cache_degraded", action="set", key=key, error=str(e))

    async def _invalidate(self, *keys: str) -> None:
        # Runs even while caching is disabled so re-enabling never serves stale data
        try:
            await self.kv.cache_delete_many(list(keys))
        except StorageError as e:
            logger.warning("cache_degraded", action="delete", keys=list(keys), error=str(e))

    # =========================================================================
    # Users (relational, cached)
    # =========================================================================

    async def register_user(self, username: str, password: str, email: str) -> None:
        await self.relational.register_user(username, password, email)
        await self._invalidate(
            cache_key("user", username),
            cache_key("user_exists", username),
            cache_key("users", "all"),
        )

    async def verify_user(self, username: str, password: str) -> bool:
        valid = await self.relational.verify_user(username, password)
        if valid:
            # Relational verify bumped last_login_at
            await self._invalidate(cache_key("userinfo", username))
            await self._cache_set(
                cache_key("login", username),
                {"login_time": int(time.time() * 1000)},
                LOGIN_TTL,
            )
        return valid

    async def check_user_exist(self, username: str) -> bool:
        key = cache_key("user_exists", username)
        if await self._cache_get(key):
            return True

        exists = await self.relational.check_user_exist(username)
        if exists:
            await self._cache_set(key, True, EXISTENCE_TTL)
        return exists

    async def check_email_exist(self, email: str) -> bool:
        # Uniqueness checks always hit the system of record
        return await self.relational.check_email_exist(email)

    async def change_password(self, username: str, new_password: str) -> None:
        await self.relational.change_password(username, new_password)
        await self._invalidate(cache_key("login", username))

    async def delete_user(self, username: str) -> None:
        """Delete from the relational store, drop caches, then side data."""
        await self.relational.delete_user(username)
        await self._invalidate(
            cache_key("user", username),
            cache_key("user_exists", username),
            cache_key("userinfo", username),
            cache_key("login", username),
            cache_key("users", "all"),
        )
        await self.kv.delete_user(username)

    async def get_all_users(self) -> list[str]:
        key = cache_key("users", "all")
        cached = await self._cache_get(key)
        if isinstance(cached, list):
            return cached

        users = await self.relational.get_all_users()
        await self._cache_set(key, users, EXISTENCE_TTL)
        return users

    # =========================================================================
    # Profile (relational, cached)
    # =========================================================================

    async def get_user_info(self, username: str) -> UserInfo | None:
        key = cache_key("userinfo", username)
        cached = await self._cache_get_model(key, UserInfo)
        if cached is not None:
            return cached

        info = await self.relational.get_user_info(username)
        if info is not None:
            await self._cache_set(key, info.model_dump(mode="json"), DOCUMENT_TTL)
        return info

    async def set_user_info(self, username: str, info: UserInfo) -> None:
        await self.relational.set_user_info(username, info)
        await self._invalidate(cache_key("userinfo", username))

    async def update_last_login(self, username: str) -> None:
        await self.relational.update_last_login(username)
        await self._invalidate(cache_key("userinfo", username))

    # =========================================================================
    # Admin config (relational, cached)
    # =========================================================================

    async def get_admin_config(self) -> AdminConfig | None:
        key = cache_key("admin", "config")
        cached = await self._cache_get_model(key, AdminConfig)
        if cached is not None:
            return cached

        config = await self.relational.get_admin_config()
        if config is not None:
            await self._cache_set(key, config.model_dump(mode="json"), DOCUMENT_TTL)
        return config

    async def set_admin_config(self, config: AdminConfig) -> None:
        await self.relational.set_admin_config(config)
        await self._invalidate(cache_key("admin", "config"))

    # =========================================================================
    # Key-value data
    # =========================================================================

    async def _require_user(self, username: str) -> None:
        if not await self.check_user_exist(username):
            raise ConstraintViolationError(f"Unknown user: {username}")

    async def get_favorite(self, username: str, key: str) -> Favorite | None:
        return await self.kv.get_favorite(username, key)

    async def set_favorite(self, username: str, key: str, favorite: Favorite) -> None:
        await self._require_user(username)
        await self.kv.set_favorite(username, key, favorite)

    async def delete_favorite(self, username: str, key: str) -> None:
        await self.kv.delete_favorite(username, key)

    async def get_all_favorites(self, username: str) -> dict[str, Favorite]:
        return await self.kv.get_all_favorites(username)

    async def get_play_record(self, username: str, key: str) -> PlayRecord | None:
        return await self.kv.get_play_record(username, key)

    async def set_play_record(self, username: str, key: str, record: PlayRecord) -> None:
        await self._require_user(username)
        await self.kv.set_play_record(username, key, record)

    async def delete_play_record(self, username: str, key: str) -> None:
        await self.kv.delete_play_record(username, key)

    async def get_all_play_records(self, username: str) -> dict[str, PlayRecord]:
        return await self.kv.get_all_play_records(username)

    async def get_skip_config(self, username: str, key: str) -> SkipConfig | None:
        return await self.kv.get_skip_config(username, key)

    async def set_skip_config(self, username: str, key: str, config: SkipConfig) -> None:
        await self._require_user(username)
        await self.kv.set_skip_config(username, key, config)

    async def delete_skip_config(self, username: str, key: str) -> None:
        await self.kv.delete_skip_config(username, key)

    async def get_all_skip_configs(self, username: str) -> dict[str, SkipConfig]:
        return await self.kv.get_all_skip_configs(username)

    async def get_search_history(self, username: str) -> list[str]:
        return await self.kv.get_search_history(username)

    async def add_search_history(self, username: str, keyword: str) -> None:
        await self._require_user(username)
        await self.kv.add_search_history(username, keyword)

    async def delete_search_history(self, username: str, keyword: str | None = None) -> None:
        await self.kv.delete_search_history(username, keyword)

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def clear_all_data(self) -> None:
        """Wipe both stores concurrently.

        A wipe that fails on one side leaves the other side wiped. The first
        error is re-raised; calling again completes the wipe.
        """
        sides: dict[str, Awaitable[None]] = {
            "relational": self.relational.clear_all_data(),
            "kv": self.kv.clear_all_data(),
        }
        results = await asyncio.gather(*sides.values(), return_exceptions=True)

        failures = [
            (side, result)
            for side, result in zip(sides, results, strict=True)
            if isinstance(result, BaseException)
        ]
        for side, error in failures:
            logger.error("hybrid_clear_failed", side=side, error=str(error))
        if failures:
            raise failures[0][1]
        logger.warning("hybrid_data_cleared")

    # =========================================================================
    # Cache administration
    # =========================================================================

    def set_cache_enabled(self, enabled: bool) -> None:
        self.cache_enabled = enabled
        logger.info("cache_enabled_changed", enabled=enabled)

    def set_cache_ttl(self, ttl: int) -> None:
        if ttl <= 0:
            raise ValueError("Cache TTL must be positive")
        self.cache_ttl = ttl
        logger.info("cache_ttl_changed", ttl=ttl)

    async def clear_user_cache(self, username: str) -> None:
        await self._invalidate(
            cache_key("user", username),
            cache_key("user_exists", username),
            cache_key("userinfo", username),
            cache_key("login", username),
        )
        logger.info("user_cache_cleared", username=username)

    async def clear_all_cache(self) -> int:
        """Delete every cache entry.

        Returns:
            Number of keys deleted (0 if the cache is unreachable)
        """
        try:
            keys = await self.kv.cache_keys(CACHE_PREFIX)
            await self.kv.cache_delete_many(keys)
        except StorageError as e:
            logger.warning("cache_degraded", action="clear_all", error=str(e))
            return 0
        logger.info("all_cache_cleared", keys=len(keys))
        return len(keys)

    async def get_cache_stats(self) -> CacheStats:
        try:
            total = await self.kv.cache_keys(CACHE_PREFIX)
            user = await self.kv.cache_keys(f"{CACHE_PREFIX}user")
            config = await self.kv.cache_keys(f"{CACHE_PREFIX}admin")
        except StorageError as e:
            logger.warning("cache_degraded", action="stats", error=str(e))
            return CacheStats()
        return CacheStats(
            total_keys=len(total),
            user_cache_keys=len(user),
            config_cache_keys=len(config),
        )
