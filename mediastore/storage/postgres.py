"""PostgreSQL storage backend (asyncpg).

System of record for users and admin config, and in non-hybrid mode for
every other entity. Schema is created idempotently on connect.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import asyncpg
import structlog
from pydantic import BaseModel

from mediastore.storage.base import Storage
from mediastore.storage.credentials import Pbkdf2PasswordCodec
from mediastore.storage.errors import ConstraintViolationError, TransientIOError
from mediastore.storage.models import (
    RECORD_TABLES,
    SEARCH_HISTORY_LIMIT,
    TABLES_IN_DELETE_ORDER,
    AdminConfig,
    Favorite,
    PlayRecord,
    SkipConfig,
    UserInfo,
    record_key,
    split_record_key,
)
from mediastore.storage.retry import RetryPolicy

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.CannotConnectNowError,
    asyncpg.TooManyConnectionsError,
    OSError,
    asyncio.TimeoutError,
)

MIGRATIONS = [
    # Migration 1: Migration bookkeeping
    """
    CREATE TABLE IF NOT EXISTS _migrations (
        version INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    # Migration 2: Users table
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        username VARCHAR(255) UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        email VARCHAR(255) UNIQUE NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_login TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    );
    CREATE INDEX IF NOT EXISTS idx_users_username ON users(username);
    CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
    """,
    # Migration 3: Admin config table
    """
    CREATE TABLE IF NOT EXISTS admin_config (
        id SERIAL PRIMARY KEY,
        config_data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    # Migration 4: Favorites table
    """
    CREATE TABLE IF NOT EXISTS favorites (
        id SERIAL PRIMARY KEY,
        username VARCHAR(255) NOT NULL REFERENCES users(username) ON DELETE CASCADE,
        source VARCHAR(255) NOT NULL,
        item_id VARCHAR(255) NOT NULL,
        favorite_data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE(username, source, item_id)
    );
    CREATE INDEX IF NOT EXISTS idx_favorites_username ON favorites(username);
    """,
    # Migration 5: Play records table
    """
    CREATE TABLE IF NOT EXISTS play_records (
        id SERIAL PRIMARY KEY,
        username VARCHAR(255) NOT NULL REFERENCES users(username) ON DELETE CASCADE,
        source VARCHAR(255) NOT NULL,
        item_id VARCHAR(255) NOT NULL,
        record_data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE(username, source, item_id)
    );
    CREATE INDEX IF NOT EXISTS idx_play_records_username ON play_records(username);
    """,
    # Migration 6: Search history table
    """
    CREATE TABLE IF NOT EXISTS search_history (
        id SERIAL PRIMARY KEY,
        username VARCHAR(255) NOT NULL REFERENCES users(username) ON DELETE CASCADE,
        keyword VARCHAR(500) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE INDEX IF NOT EXISTS idx_search_history_username ON search_history(username);
    CREATE INDEX IF NOT EXISTS idx_search_history_created_at ON search_history(created_at DESC);
    """,
    # Migration 7: Skip configs table
    """
    CREATE TABLE IF NOT EXISTS skip_configs (
        id SERIAL PRIMARY KEY,
        username VARCHAR(255) NOT NULL REFERENCES users(username) ON DELETE CASCADE,
        source VARCHAR(255) NOT NULL,
        item_id VARCHAR(255) NOT NULL,
        skip_data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE(username, source, item_id)
    );
    CREATE INDEX IF NOT EXISTS idx_skip_configs_username ON skip_configs(username);
    """,
]


class PostgresStorage(Storage):
    """PostgreSQL-based storage with asyncpg."""

    def __init__(
        self,
        database_url: str,
        ssl: bool = False,
        pool_size: int = 20,
        idle_timeout: float = 30.0,
        connect_timeout: float = 360.0,
        retry_policy: RetryPolicy | None = None,
        codec: Pbkdf2PasswordCodec | None = None,
    ):
        """Initialize Postgres storage.

        Args:
            database_url: PostgreSQL connection URL
            ssl: Require SSL (certificate not verified, as managed hosts expect)
            pool_size: Maximum pooled connections
            idle_timeout: Seconds before an idle connection is closed
            connect_timeout: Seconds to wait when opening a connection
            retry_policy: Policy for transient failures
            codec: Password codec
        """
        self._database_url = database_url
        self._ssl = ssl
        self._pool_size = pool_size
        self._idle_timeout = idle_timeout
        self._connect_timeout = connect_timeout
        self._retry = retry_policy or RetryPolicy()
        self._codec = codec or Pbkdf2PasswordCodec()
        self._pool: Any = None

    async def connect(self) -> None:
        """Open connection pool and initialize schema."""
        if self._pool is not None:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self._database_url,
                min_size=1,
                max_size=self._pool_size,
                max_inactive_connection_lifetime=self._idle_timeout,
                timeout=self._connect_timeout,
                ssl="require" if self._ssl else None,
            )
        except TRANSIENT_ERRORS as e:
            logger.error("postgres_connect_failed", error=str(e))
            raise TransientIOError(f"PostgreSQL connection failed: {e}") from e

        try:
            await self._apply_migrations()
        except BaseException:
            await self.close()
            raise

        logger.info("postgres_connected", pool_size=self._pool_size)

    async def close(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.debug("postgres_disconnected")

    @property
    def pool(self) -> Any:
        """Get active connection pool."""
        if self._pool is None:
            raise RuntimeError("Database not connected. Use 'async with' or call connect()")
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        """Acquire a pooled connection and map driver errors.

        The connection goes back to the pool on every exit path,
        cancellation included.
        """
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except asyncpg.IntegrityConstraintViolationError as e:
            raise ConstraintViolationError(str(e)) from e
        except TRANSIENT_ERRORS as e:
            raise TransientIOError(str(e)) from e

    async def _run(self, name: str, operation: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``operation(conn)`` on a pooled connection under the retry policy."""

        async def attempt() -> T:
            async with self._connection() as conn:
                return await operation(conn)

        return await self._retry.run(attempt, name=name)

    async def _apply_migrations(self) -> None:
        """Apply schema migrations newer than the recorded version."""

        async def migrate(conn: Any) -> list[int]:
            # Migration 1 creates the bookkeeping table itself
            await conn.execute(MIGRATIONS[0])
            current_version = await conn.fetchval(
                "SELECT COALESCE(MAX(version), 0) FROM _migrations"
            )

            applied = []
            for version, sql in enumerate(MIGRATIONS, 1):
                if version <= current_version:
                    continue
                async with conn.transaction():
                    await conn.execute(sql)
                    await conn.execute(
                        "INSERT INTO _migrations (version, name) VALUES ($1, $2) "
                        "ON CONFLICT (version) DO NOTHING",
                        version,
                        f"migration_{version}",
                    )
                applied.append(version)
            return applied

        applied = await self._run("apply_migrations", migrate)
        logger.info("postgres_schema_ready", applied=applied, version=len(MIGRATIONS))

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def register_user(self, username: str, password: str, email: str) -> None:
        """Create a user.

        The hash is computed once, so a retry that finds its own earlier
        insert already committed reports success instead of a conflict.
        """
        password_hash = await asyncio.to_thread(self._codec.hash, password)

        async def insert(conn: Any) -> bool:
            user_id = await conn.fetchval(
                """
                INSERT INTO users (username, password_hash, email)
                VALUES ($1, $2, $3)
                ON CONFLICT DO NOTHING
                RETURNING id
                """,
                username,
                password_hash,
                email,
            )
            if user_id is not None:
                return True
            return await conn.fetchval(
                "SELECT EXISTS(SELECT 1 FROM users WHERE username = $1 AND email = $2 "
                "AND password_hash = $3)",
                username,
                email,
                password_hash,
            )

        if not await self._run("register_user", insert):
            raise ConstraintViolationError(f"Username or email already registered: {username}")
        logger.info("user_registered", username=username)

    async def verify_user(self, username: str, password: str) -> bool:
        """Verify credentials of an active user and record the login."""
        stored = await self._run(
            "verify_user",
            lambda conn: conn.fetchval(
                "SELECT password_hash FROM users WHERE username = $1 AND is_active = TRUE",
                username,
            ),
        )
        if stored is None:
            return False

        valid = await asyncio.to_thread(self._codec.verify, password, stored)
        if valid:
            await self.update_last_login(username)
        return valid

    async def check_user_exist(self, username: str) -> bool:
        return await self._run(
            "check_user_exist",
            lambda conn: conn.fetchval(
                "SELECT EXISTS(SELECT 1 FROM users WHERE username = $1)", username
            ),
        )

    async def check_email_exist(self, email: str) -> bool:
        return await self._run(
            "check_email_exist",
            lambda conn: conn.fetchval("SELECT EXISTS(SELECT 1 FROM users WHERE email = $1)", email),
        )

    async def change_password(self, username: str, new_password: str) -> None:
        password_hash = await asyncio.to_thread(self._codec.hash, new_password)
        await self._run(
            "change_password",
            lambda conn: conn.execute(
                "UPDATE users SET password_hash = $1, updated_at = NOW() WHERE username = $2",
                password_hash,
                username,
            ),
        )
        logger.info("password_changed", username=username)

    async def delete_user(self, username: str) -> None:
        """Delete user; foreign keys cascade to every per-user table."""
        result = await self._run(
            "delete_user",
            lambda conn: conn.execute("DELETE FROM users WHERE username = $1", username),
        )
        if result == "DELETE 1":
            logger.info("user_deleted", username=username)

    async def get_all_users(self) -> list[str]:
        rows = await self._run(
            "get_all_users",
            lambda conn: conn.fetch(
                "SELECT username FROM users WHERE is_active = TRUE ORDER BY created_at, id"
            ),
        )
        return [row["username"] for row in rows]

    # -------------------------------------------------------------------------
    # Profile
    # -------------------------------------------------------------------------

    async def get_user_info(self, username: str) -> UserInfo | None:
        row = await self._run(
            "get_user_info",
            lambda conn: conn.fetchrow(
                "SELECT email, created_at, last_login, is_active FROM users WHERE username = $1",
                username,
            ),
        )
        if row is None:
            return None
        return UserInfo(
            email=row["email"],
            created_at=row["created_at"],
            last_login_at=row["last_login"],
            is_active=row["is_active"],
        )

    async def set_user_info(self, username: str, info: UserInfo) -> None:
        await self._run(
            "set_user_info",
            lambda conn: conn.execute(
                "UPDATE users SET email = $1, updated_at = NOW() WHERE username = $2",
                info.email,
                username,
            ),
        )

    async def update_last_login(self, username: str) -> None:
        await self._run(
            "update_last_login",
            lambda conn: conn.execute(
                "UPDATE users SET last_login = NOW() WHERE username = $1", username
            ),
        )

    # -------------------------------------------------------------------------
    # Admin config
    # -------------------------------------------------------------------------

    async def get_admin_config(self) -> AdminConfig | None:
        data = await self._run(
            "get_admin_config",
            lambda conn: conn.fetchval(
                "SELECT config_data FROM admin_config ORDER BY id DESC LIMIT 1"
            ),
        )
        return AdminConfig.model_validate_json(data) if data is not None else None

    async def set_admin_config(self, config: AdminConfig) -> None:
        """Replace the config document in one transaction."""
        payload = config.model_dump_json()

        async def replace(conn: Any) -> None:
            async with conn.transaction():
                await conn.execute("DELETE FROM admin_config")
                await conn.execute(
                    "INSERT INTO admin_config (config_data) VALUES ($1::jsonb)", payload
                )

        await self._run("set_admin_config", replace)
        logger.info("admin_config_saved")

    # -------------------------------------------------------------------------
    # Keyed records
    # -------------------------------------------------------------------------

    async def _get_record(self, kind: str, username: str, key: str, model: type[M]) -> M | None:
        table, column = RECORD_TABLES[kind]
        source, item_id = split_record_key(key)
        data = await self._run(
            f"get_{kind}",
            lambda conn: conn.fetchval(
                f"SELECT {column} FROM {table} WHERE username = $1 AND source = $2 AND item_id = $3",
                username,
                source,
                item_id,
            ),
        )
        return model.model_validate_json(data) if data is not None else None

    async def _get_all_records(self, kind: str, username: str, model: type[M]) -> dict[str, M]:
        table, column = RECORD_TABLES[kind]
        rows = await self._run(
            f"get_all_{kind}s",
            lambda conn: conn.fetch(
                f"SELECT source, item_id, {column} FROM {table} WHERE username = $1",
                username,
            ),
        )
        return {
            record_key(row["source"], row["item_id"]): model.model_validate_json(row[column])
            for row in rows
        }

    async def _set_record(self, kind: str, username: str, key: str, value: BaseModel) -> None:
        table, column = RECORD_TABLES[kind]
        source, item_id = split_record_key(key)
        await self._run(
            f"set_{kind}",
            lambda conn: conn.execute(
                f"""
                INSERT INTO {table} (username, source, item_id, {column})
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (username, source, item_id)
                DO UPDATE SET {column} = EXCLUDED.{column}, updated_at = NOW()
                """,
                username,
                source,
                item_id,
                value.model_dump_json(),
            ),
        )

    async def _delete_record(self, kind: str, username: str, key: str) -> None:
        table, _ = RECORD_TABLES[kind]
        source, item_id = split_record_key(key)
        await self._run(
            f"delete_{kind}",
            lambda conn: conn.execute(
                f"DELETE FROM {table} WHERE username = $1 AND source = $2 AND item_id = $3",
                username,
                source,
                item_id,
            ),
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
        rows = await self._run(
            "get_search_history",
            lambda conn: conn.fetch(
                "SELECT keyword FROM search_history WHERE username = $1 "
                "ORDER BY created_at DESC, id DESC LIMIT $2",
                username,
                SEARCH_HISTORY_LIMIT,
            ),
        )
        return [row["keyword"] for row in rows]

    async def add_search_history(self, username: str, keyword: str) -> None:
        async def add(conn: Any) -> None:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM search_history WHERE username = $1 AND keyword = $2",
                    username,
                    keyword,
                )
                await conn.execute(
                    "INSERT INTO search_history (username, keyword) VALUES ($1, $2)",
                    username,
                    keyword,
                )
                await conn.execute(
                    """
                    DELETE FROM search_history
                    WHERE username = $1 AND id NOT IN (
                        SELECT id FROM search_history
                        WHERE username = $1
                        ORDER BY created_at DESC, id DESC
                        LIMIT $2
                    )
                    """,
                    username,
                    SEARCH_HISTORY_LIMIT,
                )

        await self._run("add_search_history", add)

    async def delete_search_history(self, username: str, keyword: str | None = None) -> None:
        if keyword:
            await self._run(
                "delete_search_history",
                lambda conn: conn.execute(
                    "DELETE FROM search_history WHERE username = $1 AND keyword = $2",
                    username,
                    keyword,
                ),
            )
        else:
            await self._run(
                "delete_search_history",
                lambda conn: conn.execute(
                    "DELETE FROM search_history WHERE username = $1", username
                ),
            )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def clear_all_data(self) -> None:
        """Delete every row and reset identity sequences in one transaction."""

        async def wipe(conn: Any) -> None:
            async with conn.transaction():
                for table in TABLES_IN_DELETE_ORDER:
                    await conn.execute(f"DELETE FROM {table}")
                for table in TABLES_IN_DELETE_ORDER:
                    await conn.execute(f"ALTER SEQUENCE {table}_id_seq RESTART WITH 1")

        await self._run("clear_all_data", wipe)
        logger.warning("postgres_data_cleared")
