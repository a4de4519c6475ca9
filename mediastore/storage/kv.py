"""Key-value storage backend.

KeyValueStorage implements the storage contract and the KeyValueCache
extension on top of a small set of Redis-style primitives (KeyValueClient).
RedisClient talks to Redis directly; UpstashClient sends the same commands
to a managed REST endpoint. Results are identical; only latency differs.

Key layout:
    u:<user>:pwd      password hash (existence marks a registered user)
    u:<user>:info     UserInfo JSON
    u:<user>:fav      hash of record key -> Favorite JSON
    u:<user>:pr       hash of record key -> PlayRecord JSON
    u:<user>:skip     hash of record key -> SkipConfig JSON
    u:<user>:sh       list of keywords, most recent first
    email:<email>     owning username
    users:all         list of usernames in registration order
    admin:config      AdminConfig JSON
    cache:...         cache-aside entries written by the hybrid backend
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

import structlog
from pydantic import BaseModel

from mediastore.storage.base import KeyValueCache, Storage
from mediastore.storage.credentials import ScryptPasswordCodec
from mediastore.storage.errors import ConstraintViolationError
from mediastore.storage.models import (
    SEARCH_HISTORY_LIMIT,
    AdminConfig,
    Favorite,
    PlayRecord,
    SkipConfig,
    UserInfo,
    split_record_key,
)
from mediastore.storage.retry import RetryPolicy

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

USERS_KEY = "users:all"
ADMIN_CONFIG_KEY = "admin:config"
NAMESPACES = ("u:", "email:", "users:", "admin:", "cache:")

# Per-user hash suffixes for keyed records
RECORD_SUFFIXES = {
    "favorite": "fav",
    "play_record": "pr",
    "skip_config": "skip",
}


def user_key(username: str, suffix: str) -> str:
    return f"u:{username}:{suffix}"


def email_key(email: str) -> str:
    return f"email:{email}"


# =============================================================================
# Client primitives
# =============================================================================


class KeyValueClient(ABC):
    """Redis-style primitives a key-value backend must provide.

    Implementations raise TransientIOError for connectivity failures and
    StorageError for anything else the backend rejects.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection and check the backend answers."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    async def get(self, key: str) -> str | None:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        pass

    @abstractmethod
    async def set_if_absent(self, key: str, value: str) -> bool:
        """SET NX. Returns True if the key was written."""
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def scan(self, prefix: str) -> list[str]:
        """All keys starting with prefix."""
        pass

    @abstractmethod
    async def hget(self, key: str, field: str) -> str | None:
        pass

    @abstractmethod
    async def hset(self, key: str, field: str, value: str) -> None:
        pass

    @abstractmethod
    async def hdel(self, key: str, field: str) -> None:
        pass

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]:
        pass

    @abstractmethod
    async def lpush(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def rpush(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def lrem(self, key: str, value: str) -> None:
        """Remove every occurrence of value."""
        pass

    @abstractmethod
    async def ltrim(self, key: str, start: int, stop: int) -> None:
        pass

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        pass


# =============================================================================
# Storage
# =============================================================================


class KeyValueStorage(Storage, KeyValueCache):
    """Storage contract over a KeyValueClient.

    Multi-key writes (registration, deletion) are not atomic across keys;
    each step is idempotent so a retried operation converges.

    Per-user record writes require a registered user unless
    ``check_user_refs`` is off, which is how the hybrid backend uses this
    store: there users live in the relational store and the hybrid layer
    checks them itself.
    """

    def __init__(
        self,
        client: KeyValueClient,
        retry_policy: RetryPolicy | None = None,
        codec: ScryptPasswordCodec | None = None,
        check_user_refs: bool = True,
    ):
        """Initialize key-value storage.

        Args:
            client: Backend primitives (RedisClient, UpstashClient)
            retry_policy: Policy for transient failures of contract operations
            codec: Password codec
            check_user_refs: Reject record writes for unregistered users
        """
        self._client = client
        self._retry = retry_policy or RetryPolicy()
        self._codec = codec or ScryptPasswordCodec()
        self.check_user_refs = check_user_refs

    @property
    def client(self) -> KeyValueClient:
        return self._client

    async def connect(self) -> None:
        await self._client.connect()
        logger.info("kv_storage_connected", client=type(self._client).__name__)

    async def close(self) -> None:
        await self._client.close()

    async def _run(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await self._retry.run(operation, name=name)

    async def _require_user(self, username: str) -> None:
        if self.check_user_refs and not await self._client.exists(user_key(username, "pwd")):
            raise ConstraintViolationError(f"Unknown user: {username}")

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def register_user(self, username: str, password: str, email: str) -> None:
        """Claim the username and email keys, then write the profile.

        The hash is computed once, so a retry that finds its own earlier
        claim treats it as success.
        """
        password_hash = await asyncio.to_thread(self._codec.hash, password)
        pwd_key = user_key(username, "pwd")

        async def register() -> None:
            if not await self._client.set_if_absent(pwd_key, password_hash):
                if await self._client.get(pwd_key) != password_hash:
                    raise ConstraintViolationError(f"Username already registered: {username}")

            if not await self._client.set_if_absent(email_key(email), username):
                if await self._client.get(email_key(email)) != username:
                    await self._client.delete(pwd_key)
                    raise ConstraintViolationError(f"Email already registered: {email}")

            if await self._client.get(user_key(username, "info")) is None:
                info = UserInfo(email=email, created_at=datetime.now(UTC))
                await self._client.set(user_key(username, "info"), info.model_dump_json())
            await self._client.lrem(USERS_KEY, username)
            await self._client.rpush(USERS_KEY, username)

        await self._run("register_user", register)
        logger.info("user_registered", username=username)

    async def verify_user(self, username: str, password: str) -> bool:
        stored = await self._run(
            "verify_user", lambda: self._client.get(user_key(username, "pwd"))
        )
        if stored is None:
            return False

        info = await self.get_user_info(username)
        if info is not None and not info.is_active:
            return False

        valid = await asyncio.to_thread(self._codec.verify, password, stored)
        if valid:
            await self.update_last_login(username)
        return valid

    async def check_user_exist(self, username: str) -> bool:
        return await self._run(
            "check_user_exist", lambda: self._client.exists(user_key(username, "pwd"))
        )

    async def check_email_exist(self, email: str) -> bool:
        return await self._run("check_email_exist", lambda: self._client.exists(email_key(email)))

    async def change_password(self, username: str, new_password: str) -> None:
        password_hash = await asyncio.to_thread(self._codec.hash, new_password)
        pwd_key = user_key(username, "pwd")

        async def change() -> None:
            if await self._client.exists(pwd_key):
                await self._client.set(pwd_key, password_hash)

        await self._run("change_password", change)
        logger.info("password_changed", username=username)

    async def delete_user(self, username: str) -> None:
        """Delete the user and every per-user key."""

        async def delete() -> None:
            info = await self._get_info(username)
            keys = [
                user_key(username, suffix)
                for suffix in ("pwd", "info", "sh", *RECORD_SUFFIXES.values())
            ]
            if info is not None and await self._client.get(email_key(info.email)) == username:
                keys.append(email_key(info.email))
            await self._client.delete(*keys)
            await self._client.lrem(USERS_KEY, username)

        await self._run("delete_user", delete)
        logger.info("user_deleted", username=username)

    async def get_all_users(self) -> list[str]:
        return await self._run("get_all_users", lambda: self._client.lrange(USERS_KEY, 0, -1))

    # -------------------------------------------------------------------------
    # Profile
    # -------------------------------------------------------------------------

    async def _get_info(self, username: str) -> UserInfo | None:
        data = await self._client.get(user_key(username, "info"))
        return UserInfo.model_validate_json(data) if data is not None else None

    async def get_user_info(self, username: str) -> UserInfo | None:
        return await self._run("get_user_info", lambda: self._get_info(username))

    async def set_user_info(self, username: str, info: UserInfo) -> None:
        """Update the user's email, moving the email ownership key."""

        async def update() -> None:
            current = await self._get_info(username)
            if current is None:
                return
            if info.email != current.email:
                if not await self._client.set_if_absent(email_key(info.email), username):
                    if await self._client.get(email_key(info.email)) != username:
                        raise ConstraintViolationError(f"Email already registered: {info.email}")
                await self._client.delete(email_key(current.email))
            updated = current.model_copy(update={"email": info.email})
            await self._client.set(user_key(username, "info"), updated.model_dump_json())

        await self._run("set_user_info", update)

    async def update_last_login(self, username: str) -> None:
        async def update() -> None:
            current = await self._get_info(username)
            if current is None:
                return
            updated = current.model_copy(update={"last_login_at": datetime.now(UTC)})
            await self._client.set(user_key(username, "info"), updated.model_dump_json())

        await self._run("update_last_login", update)

    # -------------------------------------------------------------------------
    # Admin config
    # -------------------------------------------------------------------------

    async def get_admin_config(self) -> AdminConfig | None:
        data = await self._run("get_admin_config", lambda: self._client.get(ADMIN_CONFIG_KEY))
        return AdminConfig.model_validate_json(data) if data is not None else None

    async def set_admin_config(self, config: AdminConfig) -> None:
        await self._run(
            "set_admin_config",
            lambda: self._client.set(ADMIN_CONFIG_KEY, config.model_dump_json()),
        )
        logger.info("admin_config_saved")

    # -------------------------------------------------------------------------
    # Keyed records
    # -------------------------------------------------------------------------

    async def _get_record(self, kind: str, username: str, key: str, model: type[M]) -> M | None:
        split_record_key(key)
        data = await self._run(
            f"get_{kind}",
            lambda: self._client.hget(user_key(username, RECORD_SUFFIXES[kind]), key),
        )
        return model.model_validate_json(data) if data is not None else None

    async def _get_all_records(self, kind: str, username: str, model: type[M]) -> dict[str, M]:
        data = await self._run(
            f"get_all_{kind}s",
            lambda: self._client.hgetall(user_key(username, RECORD_SUFFIXES[kind])),
        )
        return {key: model.model_validate_json(value) for key, value in data.items()}

    async def _set_record(self, kind: str, username: str, key: str, value: BaseModel) -> None:
        split_record_key(key)

        async def write() -> None:
            await self._require_user(username)
            await self._client.hset(
                user_key(username, RECORD_SUFFIXES[kind]), key, value.model_dump_json()
            )

        await self._run(f"set_{kind}", write)

    async def _delete_record(self, kind: str, username: str, key: str) -> None:
        split_record_key(key)
        await self._run(
            f"delete_{kind}",
            lambda: self._client.hdel(user_key(username, RECORD_SUFFIXES[kind]), key),
        )

    async def get_favorite(self, username: str, key: str) -> Favorite | None:
        return await self._get_record("favorite", username, key, Favorite)

    async def set_favorite(self, username: str, key: str, favorite: Favorite) -> None:
        await self._set_record("favorite", username, key, favorite)

    async def delete_favorite(self, username: str, key: str) -> None:
        await self._delete_record("favorite", username, key)

    async def get_all_favorites(self, username: str) -> dict[str, Favorite]:
        return await self._get_all_records("favorite", username, Favorite)

    async def get_play_record(self, username: str, key: str) -> PlayRecord | None:
        return await self._get_record("play_record", username, key, PlayRecord)

    async def set_play_record(self, username: str, key: str, record: PlayRecord) -> None:
        await self._set_record("play_record", username, key, record)

    async def delete_play_record(self, username: str, key: str) -> None:
        await self._delete_record("play_record", username, key)

    async def get_all_play_records(self, username: str) -> dict[str, PlayRecord]:
        return await self._get_all_records("play_record", username, PlayRecord)

    async def get_skip_config(self, username: str, key: str) -> SkipConfig | None:
        return await self._get_record("skip_config", username, key, SkipConfig)

    async def set_skip_config(self, username: str, key: str, config: SkipConfig) -> None:
        await self._set_record("skip_config", username, key, config)

    async def delete_skip_config(self, username: str, key: str) -> None:
        await self._delete_record("skip_config", username, key)

    async def get_all_skip_configs(self, username: str) -> dict[str, SkipConfig]:
        return await self._get_all_records("skip_config", username, SkipConfig)

    # -------------------------------------------------------------------------
    # Search history
    # -------------------------------------------------------------------------

    async def get_search_history(self, username: str) -> list[str]:
        return await self._run(
            "get_search_history",
            lambda: self._client.lrange(user_key(username, "sh"), 0, SEARCH_HISTORY_LIMIT - 1),
        )

    async def add_search_history(self, username: str, keyword: str) -> None:
        key = user_key(username, "sh")

        async def add() -> None:
            await self._require_user(username)
            await self._client.lrem(key, keyword)
            await self._client.lpush(key, keyword)
            await self._client.ltrim(key, 0, SEARCH_HISTORY_LIMIT - 1)

        await self._run("add_search_history", add)

    async def delete_search_history(self, username: str, keyword: str | None = None) -> None:
        key = user_key(username, "sh")
        if keyword:
            await self._run("delete_search_history", lambda: self._client.lrem(key, keyword))
        else:
            await self._run("delete_search_history", lambda: self._client.delete(key))

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def clear_all_data(self) -> None:
        """Delete every key under this store's namespaces."""

        async def wipe() -> int:
            deleted = 0
            for prefix in NAMESPACES:
                keys = await self._client.scan(prefix)
                if keys:
                    deleted += await self._client.delete(*keys)
            return deleted

        deleted = await self._run("clear_all_data", wipe)
        logger.warning("kv_data_cleared", keys=deleted)

    # -------------------------------------------------------------------------
    # KeyValueCache
    # -------------------------------------------------------------------------

    async def cache_get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def cache_set(self, key: str, value: str, ttl: int | None = None) -> None:
        await self._client.set(key, value, ttl)

    async def cache_delete(self, key: str) -> None:
        await self._client.delete(key)

    async def cache_keys(self, prefix: str) -> list[str]:
        return await self._client.scan(prefix)

    async def cache_delete_many(self, keys: list[str]) -> None:
        if keys:
            await self._client.delete(*keys)
