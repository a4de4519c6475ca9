"""Storage backends for users, admin config and per-user media records.

This module provides relational (Postgres/SQLite), key-value (Redis/Upstash)
and hybrid storage behind one async contract, plus a process-wide resolver.
"""

from mediastore.storage.base import KeyValueCache, Storage
from mediastore.storage.credentials import Pbkdf2PasswordCodec, ScryptPasswordCodec
from mediastore.storage.errors import (
    ConfigurationError,
    ConstraintViolationError,
    StorageError,
    TransientIOError,
    UnsupportedOperationError,
)
from mediastore.storage.factory import (
    StorageResolver,
    build_storage,
    check_environment,
    close_storage,
    determine_storage_type,
    get_storage,
    get_storage_stats,
    health_check,
)
from mediastore.storage.hybrid import HybridStorage
from mediastore.storage.kv import KeyValueClient, KeyValueStorage
from mediastore.storage.manager import StorageManager, storage_manager
from mediastore.storage.models import (
    AdminConfig,
    CacheStats,
    Favorite,
    HealthStatus,
    PlayRecord,
    SkipConfig,
    UserInfo,
    record_key,
    split_record_key,
)
from mediastore.storage.postgres import PostgresStorage
from mediastore.storage.redis_client import RedisClient
from mediastore.storage.retry import RetryPolicy
from mediastore.storage.sqlite import SQLiteStorage
from mediastore.storage.upstash import UpstashClient

__all__ = [
    # Contract
    "Storage",
    "KeyValueCache",
    "KeyValueClient",
    # Backends
    "PostgresStorage",
    "SQLiteStorage",
    "KeyValueStorage",
    "RedisClient",
    "UpstashClient",
    "HybridStorage",
    # Factory functions
    "StorageResolver",
    "build_storage",
    "check_environment",
    "close_storage",
    "determine_storage_type",
    "get_storage",
    "get_storage_stats",
    "health_check",
    "StorageManager",
    "storage_manager",
    # Building blocks
    "Pbkdf2PasswordCodec",
    "ScryptPasswordCodec",
    "RetryPolicy",
    # Errors
    "StorageError",
    "ConfigurationError",
    "ConstraintViolationError",
    "TransientIOError",
    "UnsupportedOperationError",
    # Models
    "AdminConfig",
    "CacheStats",
    "Favorite",
    "HealthStatus",
    "PlayRecord",
    "SkipConfig",
    "UserInfo",
    "record_key",
    "split_record_key",
]
