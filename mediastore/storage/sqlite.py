"""SQLite storage backend (aiosqlite).

Development fallback with the same relational semantics as PostgresStorage:
foreign keys with cascade, upserts on the natural key, transactional wipe.
A single connection is shared, so access is serialised with a lock; every
operation runs as one transaction.
"""

import asyncio
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import aiosqlite
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

MIGRATIONS = [
    # Migration 1: Migration bookkeeping
    """
    CREATE TABLE IF NOT EXISTS _migrations (
        version INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        applied_at TEXT NOT NULL
    );
    """,
    # Migration 2: Users table
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        email TEXT UNIQUE NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_login TEXT,
        is_active INTEGER NOT NULL DEFAULT 1
    );
    CREATE INDEX IF NOT EXISTS idx_users_username ON users(username);
    CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
    """,
    # Migration 3: Admin config table
    """
    CREATE TABLE IF NOT EXISTS admin_config (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        config_data TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    # Migration 4: Favorites table
    """
    CREATE TABLE IF NOT EXISTS favorites (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL,
        source TEXT NOT NULL,
        item_id TEXT NOT NULL,
        favorite_data TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (username) REFERENCES users(username) ON DELETE CASCADE,
        UNIQUE(username, source, item_id)
    );
    CREATE INDEX IF NOT EXISTS idx_favorites_username ON favorites(username);
    """,
    # Migration 5: Play records table
    """
    CREATE TABLE IF NOT EXISTS play_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL,
        source TEXT NOT NULL,
        item_id TEXT NOT NULL,
        record_data TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (username) REFERENCES users(username) ON DELETE CASCADE,
        UNIQUE(username, source, item_id)
    );
    CREATE INDEX IF NOT EXISTS idx_play_records_username ON play_records(username);
    """,
    # Migration 6: Search history table
    """
    CREATE TABLE IF NOT EXISTS search_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL,
        keyword TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (username) REFERENCES users(username) ON DELETE CASCADE
    );
    CREATE INDEX IF NOT EXISTS idx_search_history_username ON search_history(username);
    CREATE INDEX IF NOT EXISTS idx_search_history_created_at ON search_history(created_at DESC);
    """,
    # Migration 7: Skip configs table
    """
    CREATE TABLE IF NOT EXISTS skip_configs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL,
        source TEXT NOT NULL,
        item_id TEXT NOT NULL,
        skip_data TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (username) REFERENCES users(username) ON DELETE CASCADE,
        UNIQUE(username, source, item_id)
    );
    CREATE INDEX IF NOT EXISTS idx_skip_configs_username ON skip_configs(username);
    """,
]


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


class SQLiteStorage(Storage):
    """SQLite-based storage."""

    def __init__(
        self,
        db_path: str | Path,
        retry_policy: RetryPolicy | None = None,
        codec: Pbkdf2PasswordCodec | None = None,
    ):
        """Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file
            retry_policy: Policy for transient failures (database locked)
            codec: Password codec
        """
        self._db_path = Path(db_path)
        self._retry = retry_policy or RetryPolicy()
        self._codec = codec or Pbkdf2PasswordCodec()
        self._db: Any = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open database connection and initialize schema."""
        if self._db is not None:
            return

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")

        await self._apply_migrations()
        logger.info("sqlite_connected", db_path=str(self._db_path))

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> Any:
        """Get active database connection."""
        if self._db is None:
            raise RuntimeError("Database not connected. Use 'async with' or call connect()")
        return self._db

    async def _apply_migrations(self) -> None:
        """Apply schema migrations newer than the recorded version."""
        # Migration 1 creates the bookkeeping table itself
        await self.db.executescript(MIGRATIONS[0])
        cursor = await self.db.execute("SELECT COALESCE(MAX(version), 0) FROM _migrations")
        current_version = (await cursor.fetchone())[0]

        for version, sql in enumerate(MIGRATIONS, 1):
            if version <= current_version:
                continue

            await self.db.executescript(sql)
            await self.db.execute(
                "INSERT OR IGNORE INTO _migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (version, f"migration_{version}", _now()),
            )
            await self.db.commit()
            logger.info("migration_applied", backend="sqlite", version=version)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        """Hold the connection for one transaction.

        Commits on success, rolls back on any error and maps driver errors.
        """
        async with self._lock:
            try:
                yield self.db
                await self.db.commit()
            except sqlite3.IntegrityError as e:
                await self.db.rollback()
                raise ConstraintViolationError(str(e)) from e
            except sqlite3.OperationalError as e:
                await self.db.rollback()
                message = str(e).lower()
                if "locked" in message or "busy" in message:
                    raise TransientIOError(str(e)) from e
                raise
            except BaseException:
                await self.db.rollback()
                raise

    async def _run(self, name: str, operation: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``operation(db)`` as one transaction under the retry policy."""

        async def attempt() -> T:
            async with self._connection() as db:
                return await operation(db)

        return await self._retry.run(attempt, name=name)

    @staticmethod
    async def _fetchone(db: Any, query: str, params: tuple[Any, ...] = ()) -> Any:
        cursor = await db.execute(query, params)
        return await cursor.fetchone()

    @staticmethod
    async def _fetchall(db: Any, query: str, params: tuple[Any, ...] = ()) -> list[Any]:
        cursor = await db.execute(query, params)
        return list(await cursor.fetchall())

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def register_user(self, username: str, password: str, email: str) -> None:
        """Create a user; a retry matching its own committed insert succeeds."""
        password_hash = await asyncio.to_thread(self._codec.hash, password)

        async def insert(db: Any) -> bool:
            now = _now()
            cursor = await db.execute(
                """
                INSERT INTO users (username, password_hash, email, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (username, password_hash, email, now, now),
            )
            if cursor.rowcount > 0:
                return True
            row = await self._fetchone(
                db,
                "SELECT 1 FROM users WHERE username = ? AND email = ? AND password_hash = ?",
                (username, email, password_hash),
            )
            return row is not None

        if not await self._run("register_user", insert):
            raise ConstraintViolationError(f"Username or email already registered: {username}")
        logger.info("user_registered", username=username)

    async def verify_user(self, username: str, password: str) -> bool:
        """Verify credentials of an active user and record the login."""
        row = await self._run(
            "verify_user",
            lambda db: self._fetchone(
                db,
                "SELECT password_hash FROM users WHERE username = ? AND is_active = 1",
                (username,),
            ),
        )
        if row is None:
            return False

        valid = await asyncio.to_thread(self._codec.verify, password, row["password_hash"])
        if valid:
            await self.update_last_login(username)
        return valid

    async def check_user_exist(self, username: str) -> bool:
        row = await self._run(
            "check_user_exist",
            lambda db: self._fetchone(db, "SELECT 1 FROM users WHERE username = ?", (username,)),
        )
        return row is not None

    async def check_email_exist(self, email: str) -> bool:
        row = await self._run(
            "check_email_exist",
            lambda db: self._fetchone(db, "SELECT 1 FROM users WHERE email = ?", (email,)),
        )
        return row is not None

    async def change_password(self, username: str, new_password: str) -> None:
        password_hash = await asyncio.to_thread(self._codec.hash, new_password)
        await self._run(
            "change_password",
            lambda db: db.execute(
                "UPDATE users SET password_hash = ?, updated_at = ? WHERE username = ?",
                (password_hash, _now(), username),
            ),
        )
        logger.info("password_changed", username=username)

    async def delete_user(self, username: str) -> None:
        """Delete user; foreign keys cascade to every per-user table."""
        cursor = await self._run(
            "delete_user",
            lambda db: db.execute("DELETE FROM users WHERE username = ?", (username,)),
        )
        if cursor.rowcount > 0:
            logger.info("user_deleted", username=username)

    async def get_all_users(self) -> list[str]:
        rows = await self._run(
            "get_all_users",
            lambda db: self._fetchall(
                db, "SELECT username FROM users WHERE is_active = 1 ORDER BY created_at, id"
            ),
        )
        return [row["username"] for row in rows]

    # -------------------------------------------------------------------------
    # Profile
    # -------------------------------------------------------------------------

    async def get_user_info(self, username: str) -> UserInfo | None:
        row = await self._run(
            "get_user_info",
            lambda db: self._fetchone(
                db,
                "SELECT email, created_at, last_login, is_active FROM users WHERE username = ?",
                (username,),
            ),
        )
        if row is None:
            return None
        return UserInfo(
            email=row["email"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_login_at=datetime.fromisoformat(row["last_login"]) if row["last_login"] else None,
            is_active=bool(row["is_active"]),
        )

    async def set_user_info(self, username: str, info: UserInfo) -> None:
        await self._run(
            "set_user_info",
            lambda db: db.execute(
                "UPDATE users SET email = ?, updated_at = ? WHERE username = ?",
                (info.email, _now(), username),
            ),
        )

    async def update_last_login(self, username: str) -> None:
        await self._run(
            "update_last_login",
            lambda db: db.execute(
                "UPDATE users SET last_login = ? WHERE username = ?", (_now(), username)
            ),
        )

    # -------------------------------------------------------------------------
    # Admin config
    # -------------------------------------------------------------------------

    async def get_admin_config(self) -> AdminConfig | None:
        row = await self._run(
            "get_admin_config",
            lambda db: self._fetchone(
                db, "SELECT config_data FROM admin_config ORDER BY id DESC LIMIT 1"
            ),
        )
        return AdminConfig.model_validate_json(row["config_data"]) if row else None

    async def set_admin_config(self, config: AdminConfig) -> None:
        payload = config.model_dump_json()

        async def replace(db: Any) -> None:
            now = _now()
            await db.execute("DELETE FROM admin_config")
            await db.execute(
                "INSERT INTO admin_config (config_data, created_at, updated_at) VALUES (?, ?, ?)",
                (payload, now, now),
            )

        await self._run("set_admin_config", replace)
        logger.info("admin_config_saved")

    # -------------------------------------------------------------------------
    # Keyed records
    # -------------------------------------------------------------------------

    async def _get_record(self, kind: str, username: str, key: str, model: type[M]) -> M | None:
        table, column = RECORD_TABLES[kind]
        source, item_id = split_record_key(key)
        row = await self._run(
            f"get_{kind}",
            lambda db: self._fetchone(
                db,
                f"SELECT {column} FROM {table} WHERE username = ? AND source = ? AND item_id = ?",
                (username, source, item_id),
            ),
        )
        return model.model_validate_json(row[column]) if row else None

    async def _get_all_records(self, kind: str, username: str, model: type[M]) -> dict[str, M]:
        table, column = RECORD_TABLES[kind]
        rows = await self._run(
            f"get_all_{kind}s",
            lambda db: self._fetchall(
                db,
                f"SELECT source, item_id, {column} FROM {table} WHERE username = ?",
                (username,),
            ),
        )
        return {
            record_key(row["source"], row["item_id"]): model.model_validate_json(row[column])
            for row in rows
        }

    async def _set_record(self, kind: str, username: str, key: str, value: BaseModel) -> None:
        table, column = RECORD_TABLES[kind]
        source, item_id = split_record_key(key)
        now = _now()
        await self._run(
            f"set_{kind}",
            lambda db: db.execute(
                f"""
                INSERT INTO {table} (username, source, item_id, {column}, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (username, source, item_id)
                DO UPDATE SET {column} = excluded.{column}, updated_at = excluded.updated_at
                """,
                (username, source, item_id, value.model_dump_json(), now, now),
            ),
        )

    async def _delete_record(self, kind: str, username: str, key: str) -> None:
        table, _ = RECORD_TABLES[kind]
        source, item_id = split_record_key(key)
        await self._run(
            f"delete_{kind}",
            lambda db: db.execute(
                f"DELETE FROM {table} WHERE username = ? AND source = ? AND item_id = ?",
                (username, source, item_id),
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
            lambda db: self._fetchall(
                db,
                "SELECT keyword FROM search_history WHERE username = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (username, SEARCH_HISTORY_LIMIT),
            ),
        )
        return [row["keyword"] for row in rows]

    async def add_search_history(self, username: str, keyword: str) -> None:
        async def add(db: Any) -> None:
            now = _now()
            await db.execute(
                "DELETE FROM search_history WHERE username = ? AND keyword = ?",
                (username, keyword),
            )
            await db.execute(
                "INSERT INTO search_history (username, keyword, created_at, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (username, keyword, now, now),
            )
            await db.execute(
                """
                DELETE FROM search_history
                WHERE username = ? AND id NOT IN (
                    SELECT id FROM search_history
                    WHERE username = ?
                    ORDER BY created_at DESC, id DESC
                    LIMIT ?
                )
                """,
                (username, username, SEARCH_HISTORY_LIMIT),
            )

        await self._run("add_search_history", add)

    async def delete_search_history(self, username: str, keyword: str | None = None) -> None:
        if keyword:
            await self._run(
                "delete_search_history",
                lambda db: db.execute(
                    "DELETE FROM search_history WHERE username = ? AND keyword = ?",
                    (username, keyword),
                ),
            )
        else:
            await self._run(
                "delete_search_history",
                lambda db: db.execute(
                    "DELETE FROM search_history WHERE username = ?", (username,)
                ),
            )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def clear_all_data(self) -> None:
        """Delete every row and reset AUTOINCREMENT counters in one transaction."""

        async def wipe(db: Any) -> None:
            for table in TABLES_IN_DELETE_ORDER:
                await db.execute(f"DELETE FROM {table}")
            await db.execute(
                f"DELETE FROM sqlite_sequence WHERE name IN "
                f"({', '.join('?' for _ in TABLES_IN_DELETE_ORDER)})",
                TABLES_IN_DELETE_ORDER,
            )

        await self._run("clear_all_data", wipe)
        logger.warning("sqlite_data_cleared")
