"""Upstash REST transport for the key-value backend.

Upstash accepts Redis commands as JSON arrays POSTed to the database URL
and answers {"result": ...} or {"error": "..."}. Authentication is a
bearer token.
"""

from typing import Any

import httpx
import structlog

from mediastore.storage.errors import ConfigurationError, StorageError, TransientIOError
from mediastore.storage.kv import KeyValueClient

logger = structlog.get_logger(__name__)

SCAN_BATCH = 500


class UpstashClient(KeyValueClient):
    """KeyValueClient over the Upstash REST API.

    Usage:
        async with KeyValueStorage(UpstashClient(url, token)) as storage:
            await storage.get_all_users()
    """

    def __init__(self, url: str, token: str, timeout: float = 10.0):
        """Initialize Upstash client.

        Args:
            url: REST endpoint of the database
            token: REST API token
            timeout: Per-request timeout in seconds
        """
        if not url or not token:
            raise ConfigurationError("Upstash requires both url and token")
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client, raise if not connected."""
        if not self._client:
            raise StorageError("UpstashClient is not connected")
        return self._client

    async def connect(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.url,
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=self.timeout,
        )
        await self.command("PING")
        logger.info("upstash_connected", url=self.url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("upstash_closed")

    async def command(self, *args: Any) -> Any:
        """Execute one Redis command.

        Args:
            args: Command name followed by its arguments

        Returns:
            The command result

        Raises:
            TransientIOError: On network failures and 5xx responses
            StorageError: If Upstash rejects the command
        """
        try:
            response = await self.client.post("/", json=[str(arg) for arg in args])
        except httpx.RequestError as e:
            logger.warning("upstash_request_error", command=args[0], error=str(e))
            raise TransientIOError(f"Upstash request failed: {e}") from e

        if response.status_code >= 500:
            logger.warning("upstash_server_error", command=args[0], status=response.status_code)
            raise TransientIOError(f"Upstash server error: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise StorageError(f"Upstash returned invalid JSON: HTTP {response.status_code}") from e

        if "error" in data:
            logger.error("upstash_command_error", command=args[0], error=data["error"])
            raise StorageError(f"Upstash command {args[0]} failed: {data['error']}")
        if response.status_code >= 400:
            raise StorageError(f"Upstash HTTP error: {response.status_code}")

        return data.get("result")

    async def get(self, key: str) -> str | None:
        return await self.command("GET", key)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        if ttl is not None:
            await self.command("SET", key, value, "EX", ttl)
        else:
            await self.command("SET", key, value)

    async def set_if_absent(self, key: str, value: str) -> bool:
        return await self.command("SET", key, value, "NX") == "OK"

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.command("DEL", *keys))

    async def exists(self, key: str) -> bool:
        return int(await self.command("EXISTS", key)) > 0

    async def scan(self, prefix: str) -> list[str]:
        pattern = "".join(f"\\{c}" if c in "*?[]\\" else c for c in prefix) + "*"
        keys: list[str] = []
        cursor = "0"
        while True:
            cursor, batch = await self.command(
                "SCAN", cursor, "MATCH", pattern, "COUNT", SCAN_BATCH
            )
            keys.extend(batch)
            if str(cursor) == "0":
                return keys

    async def hget(self, key: str, field: str) -> str | None:
        return await self.command("HGET", key, field)

    async def hset(self, key: str, field: str, value: str) -> None:
        await self.command("HSET", key, field, value)

    async def hdel(self, key: str, field: str) -> None:
        await self.command("HDEL", key, field)

    async def hgetall(self, key: str) -> dict[str, str]:
        flat = await self.command("HGETALL", key) or []
        return dict(zip(flat[::2], flat[1::2], strict=True))

    async def lpush(self, key: str, value: str) -> None:
        await self.command("LPUSH", key, value)

    async def rpush(self, key: str, value: str) -> None:
        await self.command("RPUSH", key, value)

    async def lrem(self, key: str, value: str) -> None:
        await self.command("LREM", key, 0, value)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        await self.command("LTRIM", key, start, stop)

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return await self.command("LRANGE", key, start, stop) or []
