"""Shared fixtures: SQLite-backed relational storage and an in-memory key-value client."""

import time
from pathlib import Path

import pytest

from mediastore.storage.errors import StorageError
from mediastore.storage.hybrid import HybridStorage
from mediastore.storage.kv import KeyValueClient, KeyValueStorage
from mediastore.storage.retry import RetryPolicy
from mediastore.storage.sqlite import SQLiteStorage


class InMemoryKeyValueClient(KeyValueClient):
    """Dict-backed KeyValueClient with TTL support.

    Set ``fail_with`` to an exception instance to make every command raise
    it, simulating an unreachable backend.
    """

    def __init__(self):
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.lists: dict[str, list[str]] = {}
        self.expiry: dict[str, float] = {}
        self.ttls: dict[str, int] = {}
        self.fail_with: StorageError | None = None
        self.connected = False
        self.commands: list[str] = []

    def _check(self, command: str) -> None:
        self.commands.append(command)
        if self.fail_with is not None:
            raise self.fail_with
        now = time.monotonic()
        for key in [k for k, deadline in self.expiry.items() if deadline <= now]:
            self._drop(key)

    def _drop(self, key: str) -> int:
        self.expiry.pop(key, None)
        self.ttls.pop(key, None)
        found = 0
        for space in (self.strings, self.hashes, self.lists):
            if space.pop(key, None) is not None:
                found = 1
        return found

    def expire_now(self, key: str) -> None:
        self.expiry[key] = 0.0

    async def connect(self) -> None:
        self._check("PING")
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def get(self, key: str) -> str | None:
        self._check("GET")
        return self.strings.get(key)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        self._check("SET")
        self._drop(key)
        self.strings[key] = value
        if ttl is not None:
            self.expiry[key] = time.monotonic() + ttl
            self.ttls[key] = ttl

    async def set_if_absent(self, key: str, value: str) -> bool:
        self._check("SETNX")
        if key in self.strings:
            return False
        self.strings[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        self._check("DEL")
        return sum(self._drop(key) for key in keys)

    async def exists(self, key: str) -> bool:
        self._check("EXISTS")
        return key in self.strings or key in self.hashes or key in self.lists

    async def scan(self, prefix: str) -> list[str]:
        self._check("SCAN")
        keys = {*self.strings, *self.hashes, *self.lists}
        return sorted(key for key in keys if key.startswith(prefix))

    async def hget(self, key: str, field: str) -> str | None:
        self._check("HGET")
        return self.hashes.get(key, {}).get(field)

    async def hset(self, key: str, field: str, value: str) -> None:
        self._check("HSET")
        self.hashes.setdefault(key, {})[field] = value

    async def hdel(self, key: str, field: str) -> None:
        self._check("HDEL")
        self.hashes.get(key, {}).pop(field, None)
        if key in self.hashes and not self.hashes[key]:
            del self.hashes[key]

    async def hgetall(self, key: str) -> dict[str, str]:
        self._check("HGETALL")
        return dict(self.hashes.get(key, {}))

    async def lpush(self, key: str, value: str) -> None:
        self._check("LPUSH")
        self.lists.setdefault(key, []).insert(0, value)

    async def rpush(self, key: str, value: str) -> None:
        self._check("RPUSH")
        self.lists.setdefault(key, []).append(value)

    async def lrem(self, key: str, value: str) -> None:
        self._check("LREM")
        if key in self.lists:
            self.lists[key] = [item for item in self.lists[key] if item != value]
            if not self.lists[key]:
                del self.lists[key]

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        self._check("LTRIM")
        if key in self.lists:
            self.lists[key] = self.lists[key][start : stop + 1]

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        self._check("LRANGE")
        items = self.lists.get(key, [])
        return items[start:] if stop == -1 else items[start : stop + 1]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy without backoff delays."""
    return RetryPolicy(max_attempts=3, base_delay=0)


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "test_mediastore.db"


@pytest.fixture
async def sqlite_storage(temp_db_path: Path, fast_retry: RetryPolicy) -> SQLiteStorage:
    """Create a connected SQLite storage instance."""
    storage = SQLiteStorage(temp_db_path, retry_policy=fast_retry)
    await storage.connect()
    yield storage
    await storage.close()


@pytest.fixture
def kv_client() -> InMemoryKeyValueClient:
    return InMemoryKeyValueClient()


@pytest.fixture
async def kv_storage(kv_client: InMemoryKeyValueClient, fast_retry: RetryPolicy) -> KeyValueStorage:
    """Create a connected key-value storage over the in-memory client."""
    storage = KeyValueStorage(kv_client, retry_policy=fast_retry)
    await storage.connect()
    yield storage
    await storage.close()


@pytest.fixture
async def hybrid_storage(
    temp_db_path: Path,
    kv_client: InMemoryKeyValueClient,
    fast_retry: RetryPolicy,
) -> HybridStorage:
    """Create a connected hybrid storage: SQLite system of record, in-memory cache."""
    storage = HybridStorage(
        SQLiteStorage(temp_db_path, retry_policy=fast_retry),
        KeyValueStorage(kv_client, retry_policy=fast_retry),
    )
    await storage.connect()
    yield storage
    await storage.close()
