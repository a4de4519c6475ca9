"""Storage backend selection and the process-wide storage instance.

Usage:
    storage = await get_storage()
    if await storage.check_user_exist("alice"):
        ...
    await close_storage()
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError

from mediastore.config import Settings, StorageTypeName, get_settings
from mediastore.storage.base import Storage
from mediastore.storage.errors import ConfigurationError
from mediastore.storage.hybrid import HybridStorage
from mediastore.storage.kv import KeyValueStorage
from mediastore.storage.models import HealthStatus
from mediastore.storage.postgres import PostgresStorage
from mediastore.storage.redis_client import RedisClient
from mediastore.storage.retry import RetryPolicy
from mediastore.storage.sqlite import SQLiteStorage
from mediastore.storage.upstash import UpstashClient

logger = structlog.get_logger(__name__)

# Environment variables each backend needs
REQUIRED_ENV_VARS: dict[str, list[str]] = {
    "upstash": ["UPSTASH_URL", "UPSTASH_TOKEN"],
    "postgres": ["DATABASE_URL"],
    "redis": ["REDIS_URL"],
    "hybrid": ["DATABASE_URL", "REDIS_URL"],
    "sqlite": [],
}


def load_settings() -> Settings:
    """Load the process-wide settings.

    Raises:
        ConfigurationError: If an environment variable holds an invalid value
    """
    try:
        return get_settings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid storage configuration: {e}") from e


def determine_storage_type(config: Settings) -> StorageTypeName:
    """Pick the backend for this configuration.

    An explicit storage_type wins. Otherwise the richest configured backend
    is chosen: Upstash, then hybrid (database plus Redis), then Postgres,
    then Redis, then the local SQLite file.
    """
    if config.storage_type:
        return config.storage_type
    if config.has_upstash:
        return "upstash"
    if config.has_database_url and config.has_redis:
        return "hybrid"
    if config.has_database_url:
        return "postgres"
    if config.has_redis:
        return "redis"
    return "sqlite"


def _require(value: Any, env_var: str, storage_type: str) -> None:
    if not value:
        raise ConfigurationError(f"{env_var} is required for {storage_type} storage")


def _postgres(config: Settings, retry_policy: RetryPolicy) -> PostgresStorage:
    _require(config.has_database_url, "DATABASE_URL", "postgres")
    return PostgresStorage(
        config.database_url.get_secret_value(),
        ssl=config.database_ssl,
        pool_size=config.database_pool_size,
        idle_timeout=config.database_idle_timeout,
        connect_timeout=config.database_connect_timeout,
        retry_policy=retry_policy,
    )


def _redis(config: Settings, retry_policy: RetryPolicy) -> KeyValueStorage:
    _require(config.has_redis, "REDIS_URL", "redis")
    client = RedisClient(config.redis_url.get_secret_value(), client_name=config.redis_client_name)
    return KeyValueStorage(client, retry_policy=retry_policy)


def build_storage(config: Settings) -> Storage:
    """Construct (without connecting) the backend selected by ``config``.

    Args:
        config: Storage settings

    Returns:
        Unconnected storage backend

    Raises:
        ConfigurationError: If the selected backend is missing parameters
    """
    storage_type = determine_storage_type(config)
    retry_policy = RetryPolicy(
        max_attempts=config.retry_attempts,
        base_delay=config.retry_base_delay,
    )

    if storage_type == "postgres":
        return _postgres(config, retry_policy)
    if storage_type == "redis":
        return _redis(config, retry_policy)
    if storage_type == "upstash":
        _require(config.has_upstash, "UPSTASH_URL and UPSTASH_TOKEN", "upstash")
        client = UpstashClient(config.upstash_url, config.upstash_token.get_secret_value())
        return KeyValueStorage(client, retry_policy=retry_policy)
    if storage_type == "hybrid":
        _require(config.has_database_url, "DATABASE_URL", "hybrid")
        _require(config.has_redis, "REDIS_URL", "hybrid")
        return HybridStorage(_postgres(config, retry_policy), _redis(config, retry_policy))
    return SQLiteStorage(config.sqlite_path, retry_policy=retry_policy)


class StorageResolver:
    """Lazily builds and connects exactly one storage backend.

    Concurrent callers of get() share one resolution. A failed resolution
    leaves the resolver empty, so the next call tries again from scratch.
    """

    def __init__(self, config: Settings | None = None):
        self._config = config
        self._storage: Storage | None = None
        self._storage_type: StorageTypeName | None = None
        self._lock = asyncio.Lock()

    @property
    def config(self) -> Settings:
        if self._config is None:
            self._config = load_settings()
        return self._config

    @property
    def storage_type(self) -> StorageTypeName:
        return self._storage_type or determine_storage_type(self.config)

    @property
    def is_resolved(self) -> bool:
        return self._storage is not None

    async def get(self) -> Storage:
        """Return the connected backend, resolving it on first use.

        Raises:
            ConfigurationError: If the selected backend is missing parameters
            TransientIOError: If the backend could not be reached
        """
        if self._storage is not None:
            return self._storage

        async with self._lock:
            if self._storage is not None:
                return self._storage

            storage_type = determine_storage_type(self.config)
            storage = build_storage(self.config)
            try:
                await storage.connect()
            except Exception as e:
                logger.error("storage_resolution_failed", storage_type=storage_type, error=str(e))
                await storage.close()
                raise

            self._storage = storage
            self._storage_type = storage_type
            logger.info("storage_resolved", storage_type=storage_type)
            return storage

    async def close(self) -> None:
        """Close the backend and return to the unresolved state."""
        async with self._lock:
            if self._storage is None:
                return
            storage, self._storage = self._storage, None
            self._storage_type = None
            await storage.close()
            logger.info("storage_closed")


# Process-wide resolver
_resolver = StorageResolver()


def get_resolver() -> StorageResolver:
    return _resolver


async def get_storage() -> Storage:
    """Get the process-wide storage backend."""
    return await _resolver.get()


async def close_storage() -> None:
    await _resolver.close()


def _configured_type(resolver: StorageResolver) -> str:
    try:
        return resolver.storage_type
    except ConfigurationError:
        return "unknown"


async def health_check(resolver: StorageResolver | None = None) -> HealthStatus:
    """Check the storage backend with a harmless read.

    Never raises; failures, invalid configuration included, are reported
    as an unhealthy status.
    """
    resolver = resolver or _resolver
    storage_type = _configured_type(resolver)
    details: dict[str, Any] = {
        "storage_type": storage_type,
        "timestamp": datetime.now(UTC).isoformat(),
    }

    try:
        storage = await resolver.get()
        sentinel = f"health_check_{int(datetime.now(UTC).timestamp() * 1000)}"
        details["test_operation"] = "check_user_exist"
        details["test_result"] = await storage.check_user_exist(sentinel)
    except Exception as e:
        logger.warning("storage_health_check_failed", storage_type=storage_type, error=str(e))
        details["error"] = str(e)
        return HealthStatus(status="unhealthy", storage_type=storage_type, details=details)

    return HealthStatus(status="healthy", storage_type=storage_type, details=details)


async def get_storage_stats(resolver: StorageResolver | None = None) -> dict[str, Any]:
    """Collect basic storage statistics.

    Returns:
        Dict with storage_type, timestamp, total_users, has_admin_config and,
        for hybrid storage, cache key counts. Errors are reported under "error".
    """
    resolver = resolver or _resolver
    stats: dict[str, Any] = {
        "storage_type": _configured_type(resolver),
        "timestamp": datetime.now(UTC).isoformat(),
    }

    try:
        storage = await resolver.get()
        stats["total_users"] = len(await storage.get_all_users())
        if isinstance(storage, HybridStorage):
            stats["cache"] = (await storage.get_cache_stats()).model_dump()
        stats["has_admin_config"] = await storage.get_admin_config() is not None
    except Exception as e:
        logger.warning("storage_stats_failed", error=str(e))
        stats["error"] = str(e)

    return stats


def check_environment(config: Settings | None = None) -> dict[str, Any]:
    """Check that the environment configures a usable backend.

    Args:
        config: Settings to check (defaults to the process-wide settings)

    Returns:
        Dict with is_valid, missing (env var names) and recommendations
    """
    if config is None:
        try:
            config = load_settings()
        except ConfigurationError as e:
            return {"is_valid": False, "missing": [], "recommendations": [str(e)]}

    present = {
        "DATABASE_URL": config.has_database_url,
        "REDIS_URL": config.has_redis,
        "UPSTASH_URL": bool(config.upstash_url),
        "UPSTASH_TOKEN": bool(config.upstash_token and config.upstash_token.get_secret_value()),
    }
    missing: list[str] = []
    recommendations: list[str] = []

    if config.storage_type:
        missing = [var for var in REQUIRED_ENV_VARS[config.storage_type] if not present[var]]
    elif not (config.has_upstash or config.has_database_url or config.has_redis):
        recommendations = [
            "No remote storage configured; using local SQLite. Set one of:",
            "- Upstash: UPSTASH_URL, UPSTASH_TOKEN",
            "- Hybrid: DATABASE_URL, REDIS_URL",
            "- PostgreSQL: DATABASE_URL",
            "- Redis: REDIS_URL",
        ]

    return {
        "is_valid": not missing,
        "missing": missing,
        "recommendations": recommendations,
    }
