"""Tests for relational storage semantics on the SQLite backend.

Tests cover:
- User registration, verification and deletion
- Profile and admin config
- Keyed record upserts
- Search history bounds
- Cascade delete and full wipe
- Error mapping
"""

import asyncio
import sqlite3
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest

from mediastore.storage.errors import ConstraintViolationError, TransientIOError
from mediastore.storage.models import (
    SEARCH_HISTORY_LIMIT,
    AdminConfig,
    Favorite,
    PlayRecord,
    SkipConfig,
    UserInfo,
    record_key,
)
from mediastore.storage.retry import RetryPolicy
from mediastore.storage.sqlite import MIGRATIONS, SQLiteStorage

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
async def alice(sqlite_storage: SQLiteStorage) -> str:
    """Register a sample user."""
    await sqlite_storage.register_user("alice", "pw1", "a@x.io")
    return "alice"


def make_favorite(title: str = "Dune", save_time: int = 1_700_000_000_000) -> Favorite:
    return Favorite(
        title=title,
        source_name="Source One",
        cover="https://img.example/dune.jpg",
        year="2021",
        total_episodes=1,
        save_time=save_time,
        search_title=title,
    )


# =============================================================================
# Connection Tests
# =============================================================================


class TestConnection:
    """Tests for connection lifecycle and schema."""

    @pytest.mark.asyncio
    async def test_migrations_are_idempotent(self, temp_db_path, fast_retry):
        """Test connecting twice to the same file keeps data and schema."""
        async with SQLiteStorage(temp_db_path, retry_policy=fast_retry) as storage:
            await storage.register_user("alice", "pw1", "a@x.io")

        async with SQLiteStorage(temp_db_path, retry_policy=fast_retry) as storage:
            assert await storage.check_user_exist("alice") is True
            cursor = await storage.db.execute("SELECT COUNT(*) FROM _migrations")
            row = await cursor.fetchone()
            assert row[0] == len(MIGRATIONS)

    @pytest.mark.asyncio
    async def test_recorded_migrations_skipped(self, temp_db_path, fast_retry):
        """Test reconnecting applies nothing once every version is recorded."""
        async with SQLiteStorage(temp_db_path, retry_policy=fast_retry):
            pass

        with patch("mediastore.storage.sqlite.logger") as mock_logger:
            async with SQLiteStorage(temp_db_path, retry_policy=fast_retry):
                pass

        events = [call.args[0] for call in mock_logger.info.call_args_list]
        assert "migration_applied" not in events

    @pytest.mark.asyncio
    async def test_pending_migrations_applied(self, temp_db_path, fast_retry):
        async with SQLiteStorage(temp_db_path, retry_policy=fast_retry) as storage:
            await storage.db.execute(
                "DELETE FROM _migrations WHERE version = ?", (len(MIGRATIONS),)
            )
            await storage.db.commit()

        with patch("mediastore.storage.sqlite.logger") as mock_logger:
            async with SQLiteStorage(temp_db_path, retry_policy=fast_retry):
                pass

        mock_logger.info.assert_any_call(
            "migration_applied", backend="sqlite", version=len(MIGRATIONS)
        )

    @pytest.mark.asyncio
    async def test_creates_parent_directory(self, tmp_path, fast_retry):
        """Test the database directory is created on connect."""
        path = tmp_path / "nested" / "dir" / "store.db"

        async with SQLiteStorage(path, retry_policy=fast_retry):
            pass

        assert path.exists()

    @pytest.mark.asyncio
    async def test_db_requires_connection(self, temp_db_path):
        """Test using the storage before connect raises."""
        storage = SQLiteStorage(temp_db_path)

        with pytest.raises(RuntimeError):
            _ = storage.db


# =============================================================================
# User Tests
# =============================================================================


class TestUsers:
    """Tests for registration and credentials."""

    @pytest.mark.asyncio
    async def test_register_and_verify(self, sqlite_storage, alice):
        """Test the registered user verifies with the right password only."""
        assert await sqlite_storage.check_user_exist("alice") is True
        assert await sqlite_storage.check_email_exist("a@x.io") is True
        assert await sqlite_storage.verify_user("alice", "pw1") is True
        assert await sqlite_storage.verify_user("alice", "pw2") is False
        assert await sqlite_storage.verify_user("bob", "pw1") is False

    @pytest.mark.asyncio
    async def test_password_is_hashed(self, sqlite_storage, alice):
        """Test the stored password is a PBKDF2 record, never the plaintext."""
        cursor = await sqlite_storage.db.execute(
            "SELECT password_hash FROM users WHERE username = 'alice'"
        )
        row = await cursor.fetchone()

        assert row["password_hash"].startswith("pbkdf2$")
        assert "pw1" not in row["password_hash"]

    @pytest.mark.asyncio
    async def test_verify_updates_last_login(self, sqlite_storage, alice):
        """Test successful verification records the login time."""
        assert (await sqlite_storage.get_user_info("alice")).last_login_at is None

        await sqlite_storage.verify_user("alice", "pw1")

        assert (await sqlite_storage.get_user_info("alice")).last_login_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_username_rejected(self, sqlite_storage, alice):
        """Test a second registration of the same username fails."""
        with pytest.raises(ConstraintViolationError):
            await sqlite_storage.register_user("alice", "other", "other@x.io")

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected(self, sqlite_storage, alice):
        """Test a second registration with the same email fails."""
        with pytest.raises(ConstraintViolationError):
            await sqlite_storage.register_user("bob", "pw", "a@x.io")

        assert await sqlite_storage.check_user_exist("bob") is False

    @pytest.mark.asyncio
    async def test_register_retry_after_commit_succeeds(self, sqlite_storage):
        """Test a retried registration whose first attempt committed is not a conflict."""
        fixed_hash = "pbkdf2$100000$00ff$00ff"
        with patch.object(sqlite_storage._codec, "hash", return_value=fixed_hash):
            await sqlite_storage.register_user("alice", "pw1", "a@x.io")
            await sqlite_storage.register_user("alice", "pw1", "a@x.io")

        assert await sqlite_storage.get_all_users() == ["alice"]

    @pytest.mark.asyncio
    async def test_change_password(self, sqlite_storage, alice):
        await sqlite_storage.change_password("alice", "pw2")

        assert await sqlite_storage.verify_user("alice", "pw1") is False
        assert await sqlite_storage.verify_user("alice", "pw2") is True

    @pytest.mark.asyncio
    async def test_legacy_plaintext_password_verifies(self, sqlite_storage, alice):
        """Test rows written before hashing still verify."""
        await sqlite_storage.db.execute(
            "UPDATE users SET password_hash = 'legacy-pw' WHERE username = 'alice'"
        )
        await sqlite_storage.db.commit()

        assert await sqlite_storage.verify_user("alice", "legacy-pw") is True
        assert await sqlite_storage.verify_user("alice", "pw1") is False

    @pytest.mark.asyncio
    async def test_inactive_user(self, sqlite_storage, alice):
        """Test inactive users neither verify nor appear in the user list."""
        await sqlite_storage.db.execute("UPDATE users SET is_active = 0 WHERE username = 'alice'")
        await sqlite_storage.db.commit()

        assert await sqlite_storage.verify_user("alice", "pw1") is False
        assert await sqlite_storage.get_all_users() == []
        assert (await sqlite_storage.get_user_info("alice")).is_active is False

    @pytest.mark.asyncio
    async def test_get_all_users_in_registration_order(self, sqlite_storage):
        for name in ("carol", "alice", "bob"):
            await sqlite_storage.register_user(name, "pw", f"{name}@x.io")

        assert await sqlite_storage.get_all_users() == ["carol", "alice", "bob"]

    @pytest.mark.asyncio
    async def test_concurrent_registrations(self, sqlite_storage):
        """Test concurrent callers share the connection safely."""
        await asyncio.gather(
            *(sqlite_storage.register_user(f"user{i}", "pw", f"u{i}@x.io") for i in range(5))
        )

        assert sorted(await sqlite_storage.get_all_users()) == [f"user{i}" for i in range(5)]


# =============================================================================
# Profile Tests
# =============================================================================


class TestProfile:
    """Tests for user info."""

    @pytest.mark.asyncio
    async def test_get_user_info(self, sqlite_storage, alice):
        info = await sqlite_storage.get_user_info("alice")

        assert info.email == "a@x.io"
        assert info.is_active is True
        assert info.created_at is not None

    @pytest.mark.asyncio
    async def test_get_user_info_unknown(self, sqlite_storage):
        assert await sqlite_storage.get_user_info("nobody") is None

    @pytest.mark.asyncio
    async def test_set_user_info_changes_email(self, sqlite_storage, alice):
        info = await sqlite_storage.get_user_info("alice")

        await sqlite_storage.set_user_info("alice", info.model_copy(update={"email": "new@x.io"}))

        assert (await sqlite_storage.get_user_info("alice")).email == "new@x.io"
        assert await sqlite_storage.check_email_exist("a@x.io") is False

    @pytest.mark.asyncio
    async def test_set_user_info_email_taken(self, sqlite_storage, alice):
        """Test email uniqueness holds on profile updates."""
        await sqlite_storage.register_user("bob", "pw", "b@x.io")
        info = await sqlite_storage.get_user_info("bob")

        with pytest.raises(ConstraintViolationError):
            await sqlite_storage.set_user_info("bob", info.model_copy(update={"email": "a@x.io"}))


# =============================================================================
# Admin Config Tests
# =============================================================================


class TestAdminConfig:
    """Tests for the admin config document."""

    @pytest.mark.asyncio
    async def test_missing(self, sqlite_storage):
        assert await sqlite_storage.get_admin_config() is None

    @pytest.mark.asyncio
    async def test_replace(self, sqlite_storage):
        """Test saving twice keeps only the latest document."""
        await sqlite_storage.set_admin_config(AdminConfig(config_file="first"))
        await sqlite_storage.set_admin_config(
            AdminConfig(config_file="second", site_config={"site_name": "Media"})
        )

        config = await sqlite_storage.get_admin_config()
        assert config.config_file == "second"
        assert config.site_config == {"site_name": "Media"}

        cursor = await sqlite_storage.db.execute("SELECT COUNT(*) FROM admin_config")
        assert (await cursor.fetchone())[0] == 1

    @pytest.mark.asyncio
    async def test_unknown_keys_preserved(self, sqlite_storage):
        await sqlite_storage.set_admin_config(AdminConfig.model_validate({"theme": "dark"}))

        config = await sqlite_storage.get_admin_config()
        assert config.model_dump()["theme"] == "dark"


# =============================================================================
# Keyed Record Tests
# =============================================================================


class TestKeyedRecords:
    """Tests for favorites, play records and skip configs."""

    @pytest.mark.asyncio
    async def test_favorite_upsert(self, sqlite_storage, alice):
        """Test writing the same key twice keeps one row with the second value."""
        key = record_key("src1", "42")

        await sqlite_storage.set_favorite("alice", key, make_favorite(save_time=1))
        await sqlite_storage.set_favorite("alice", key, make_favorite(save_time=2))

        favorites = await sqlite_storage.get_all_favorites("alice")
        assert list(favorites) == ["src1+42"]
        assert favorites["src1+42"].save_time == 2

    @pytest.mark.asyncio
    async def test_favorite_get_and_delete(self, sqlite_storage, alice):
        await sqlite_storage.set_favorite("alice", "src1+42", make_favorite())

        assert (await sqlite_storage.get_favorite("alice", "src1+42")).title == "Dune"

        await sqlite_storage.delete_favorite("alice", "src1+42")

        assert await sqlite_storage.get_favorite("alice", "src1+42") is None

    @pytest.mark.asyncio
    async def test_play_record_round_trip(self, sqlite_storage, alice):
        record = PlayRecord(
            title="Show",
            index=3,
            total_episodes=10,
            play_time=120.5,
            total_time=2400,
            save_time=1_700_000_000_000,
        )

        await sqlite_storage.set_play_record("alice", "src2+7", record)

        assert await sqlite_storage.get_play_record("alice", "src2+7") == record
        assert await sqlite_storage.get_all_play_records("alice") == {"src2+7": record}

        await sqlite_storage.delete_play_record("alice", "src2+7")
        assert await sqlite_storage.get_all_play_records("alice") == {}

    @pytest.mark.asyncio
    async def test_skip_config_round_trip(self, sqlite_storage, alice):
        config = SkipConfig(enable=True, intro_time=90, outro_time=60)

        await sqlite_storage.set_skip_config("alice", "src1+42", config)

        assert await sqlite_storage.get_skip_config("alice", "src1+42") == config
        assert await sqlite_storage.get_all_skip_configs("alice") == {"src1+42": config}

        await sqlite_storage.delete_skip_config("alice", "src1+42")
        assert await sqlite_storage.get_skip_config("alice", "src1+42") is None

    @pytest.mark.asyncio
    async def test_records_are_per_user(self, sqlite_storage, alice):
        await sqlite_storage.register_user("bob", "pw", "b@x.io")
        await sqlite_storage.set_favorite("alice", "src1+42", make_favorite())

        assert await sqlite_storage.get_all_favorites("bob") == {}

    @pytest.mark.asyncio
    async def test_record_for_unknown_user_rejected(self, sqlite_storage):
        """Test per-user records must reference an existing user."""
        with pytest.raises(ConstraintViolationError):
            await sqlite_storage.set_favorite("ghost", "src1+42", make_favorite())

    @pytest.mark.asyncio
    async def test_invalid_key_rejected(self, sqlite_storage, alice):
        with pytest.raises(ValueError):
            await sqlite_storage.set_favorite("alice", "no-separator", make_favorite())


# =============================================================================
# Search History Tests
# =============================================================================


class TestSearchHistory:
    """Tests for bounded, deduplicated search history."""

    @pytest.mark.asyncio
    async def test_most_recent_first(self, sqlite_storage, alice):
        for keyword in ("dune", "alien", "heat"):
            await sqlite_storage.add_search_history("alice", keyword)

        assert await sqlite_storage.get_search_history("alice") == ["heat", "alien", "dune"]

    @pytest.mark.asyncio
    async def test_repeat_moves_to_front(self, sqlite_storage, alice):
        for keyword in ("dune", "alien", "dune"):
            await sqlite_storage.add_search_history("alice", keyword)

        assert await sqlite_storage.get_search_history("alice") == ["dune", "alien"]

    @pytest.mark.asyncio
    async def test_bounded_to_limit(self, sqlite_storage, alice):
        """Test 25 distinct keywords keep only the newest 20."""
        for i in range(25):
            await sqlite_storage.add_search_history("alice", f"k{i}")

        history = await sqlite_storage.get_search_history("alice")
        assert len(history) == SEARCH_HISTORY_LIMIT
        assert history == [f"k{i}" for i in range(24, 4, -1)]

        cursor = await sqlite_storage.db.execute("SELECT COUNT(*) FROM search_history")
        assert (await cursor.fetchone())[0] == SEARCH_HISTORY_LIMIT

    @pytest.mark.asyncio
    async def test_delete_one_and_all(self, sqlite_storage, alice):
        for keyword in ("dune", "alien", "heat"):
            await sqlite_storage.add_search_history("alice", keyword)

        await sqlite_storage.delete_search_history("alice", "alien")
        assert await sqlite_storage.get_search_history("alice") == ["heat", "dune"]

        await sqlite_storage.delete_search_history("alice")
        assert await sqlite_storage.get_search_history("alice") == []


# =============================================================================
# Deletion Tests
# =============================================================================


class TestDeletion:
    """Tests for cascade delete and full wipe."""

    @pytest.mark.asyncio
    async def test_alice_scenario(self, sqlite_storage):
        """Test register, favorite, verify, then delete removes everything."""
        await sqlite_storage.register_user("alice", "pw1", "a@x.io")
        await sqlite_storage.set_favorite("alice", "src1+42", make_favorite())

        assert await sqlite_storage.verify_user("alice", "pw1") is True
        assert list(await sqlite_storage.get_all_favorites("alice")) == ["src1+42"]

        await sqlite_storage.delete_user("alice")

        assert await sqlite_storage.check_user_exist("alice") is False
        assert await sqlite_storage.get_all_favorites("alice") == {}

    @pytest.mark.asyncio
    async def test_delete_cascades_to_every_table(self, sqlite_storage, alice):
        await sqlite_storage.set_favorite("alice", "src1+1", make_favorite())
        await sqlite_storage.set_play_record("alice", "src1+1", PlayRecord(title="x", save_time=1))
        await sqlite_storage.set_skip_config("alice", "src1+1", SkipConfig())
        await sqlite_storage.add_search_history("alice", "dune")

        await sqlite_storage.delete_user("alice")

        for table in ("favorites", "play_records", "skip_configs", "search_history"):
            cursor = await sqlite_storage.db.execute(f"SELECT COUNT(*) FROM {table}")
            assert (await cursor.fetchone())[0] == 0, table

    @pytest.mark.asyncio
    async def test_delete_unknown_user_is_noop(self, sqlite_storage):
        await sqlite_storage.delete_user("nobody")

    @pytest.mark.asyncio
    async def test_clear_all_data(self, sqlite_storage, alice):
        """Test wipe removes every row and resets identity counters."""
        await sqlite_storage.set_favorite("alice", "src1+1", make_favorite())
        await sqlite_storage.set_admin_config(AdminConfig())

        await sqlite_storage.clear_all_data()

        assert await sqlite_storage.get_all_users() == []
        assert await sqlite_storage.get_admin_config() is None

        await sqlite_storage.register_user("bob", "pw", "b@x.io")
        cursor = await sqlite_storage.db.execute("SELECT id FROM users WHERE username = 'bob'")
        assert (await cursor.fetchone())["id"] == 1


# =============================================================================
# Error Mapping Tests
# =============================================================================


class TestErrorMapping:
    """Tests for driver error translation and retry."""

    @pytest.mark.asyncio
    async def test_locked_database_is_retried(self, temp_db_path):
        """Test 'database is locked' is treated as transient and retried."""
        storage = SQLiteStorage(temp_db_path, retry_policy=RetryPolicy(max_attempts=2))
        await storage.connect()
        try:
            operation = AsyncMock(side_effect=[sqlite3.OperationalError("database is locked"), 1])
            with patch("mediastore.storage.retry.asyncio.sleep", new_callable=AsyncMock):
                assert await storage._run("select_one", operation) == 1
            assert operation.await_count == 2
        finally:
            await storage.close()

    @pytest.mark.asyncio
    async def test_locked_database_exhausts(self, temp_db_path):
        storage = SQLiteStorage(temp_db_path, retry_policy=RetryPolicy(max_attempts=2))
        await storage.connect()
        try:
            operation = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))
            with patch("mediastore.storage.retry.asyncio.sleep", new_callable=AsyncMock):
                with pytest.raises(TransientIOError):
                    await storage._run("select_one", operation)
        finally:
            await storage.close()

    @pytest.mark.asyncio
    async def test_other_operational_errors_propagate(self, sqlite_storage):
        with pytest.raises(sqlite3.OperationalError):
            await sqlite_storage._run("select_one", lambda db: db.execute("SELECT * FROM missing"))

    @pytest.mark.asyncio
    async def test_failed_transaction_rolls_back(self, sqlite_storage, alice):
        """Test a failing multi-statement operation leaves no partial write."""

        async def partial(db):
            await db.execute("DELETE FROM users WHERE username = 'alice'")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await sqlite_storage._run("partial", partial)

        assert await sqlite_storage.check_user_exist("alice") is True


# =============================================================================
# Model Tests
# =============================================================================


class TestUserInfoModel:
    def test_defaults(self):
        info = UserInfo(email="a@x.io", created_at=datetime.now(UTC))

        assert info.is_active is True
        assert info.last_login_at is None
