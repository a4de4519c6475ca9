"""Backend-agnostic data models for the storage layer."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

RECORD_KEY_SEPARATOR = "+"
SEARCH_HISTORY_LIMIT = 20

# Relational layout shared by the SQL backends.
# Child tables first, so foreign keys never block a delete.
TABLES_IN_DELETE_ORDER = (
    "search_history",
    "skip_configs",
    "play_records",
    "favorites",
    "admin_config",
    "users",
)

# Keyed per-user record kinds: (table, payload column)
RECORD_TABLES = {
    "favorite": ("favorites", "favorite_data"),
    "play_record": ("play_records", "record_data"),
    "skip_config": ("skip_configs", "skip_data"),
}


# =============================================================================
# Record keys
# =============================================================================


def record_key(source: str, item_id: str) -> str:
    """Build the composite key of a per-user record.

    Args:
        source: Source site identifier
        item_id: Item identifier within the source

    Returns:
        Key in the form "<source>+<item_id>"

    Raises:
        ValueError: If either part is empty or contains the separator
    """
    for part in (source, item_id):
        if not part or RECORD_KEY_SEPARATOR in part:
            raise ValueError(f"Invalid record key part: {part!r}")
    return f"{source}{RECORD_KEY_SEPARATOR}{item_id}"


def split_record_key(key: str) -> tuple[str, str]:
    """Split a composite record key into (source, item_id)."""
    source, sep, item_id = key.partition(RECORD_KEY_SEPARATOR)
    if not sep or not source or not item_id or RECORD_KEY_SEPARATOR in item_id:
        raise ValueError(f"Invalid record key: {key!r}")
    return source, item_id


# =============================================================================
# Entities
# =============================================================================


class UserInfo(BaseModel):
    """Profile view of a registered user."""

    email: str
    created_at: datetime
    last_login_at: datetime | None = None
    is_active: bool = True


class AdminConfig(BaseModel):
    """Site-wide admin configuration document.

    Saved wholesale; keys this model does not know about are preserved.
    """

    model_config = ConfigDict(extra="allow")

    config_file: str = ""
    site_config: dict[str, Any] = Field(default_factory=dict)
    user_config: dict[str, Any] = Field(default_factory=dict)
    source_config: list[dict[str, Any]] = Field(default_factory=list)
    custom_category: list[dict[str, Any]] = Field(default_factory=list)


class Favorite(BaseModel):
    """Favorited item."""

    title: str
    source_name: str = ""
    cover: str = ""
    year: str = ""
    total_episodes: int = 0
    save_time: int  # Unix milliseconds
    search_title: str = ""


class PlayRecord(BaseModel):
    """Playback progress for an item."""

    title: str
    source_name: str = ""
    cover: str = ""
    year: str = ""
    index: int = 1  # Episode index
    total_episodes: int = 0
    play_time: float = 0  # Position, seconds
    total_time: float = 0  # Duration, seconds
    save_time: int  # Unix milliseconds
    search_title: str = ""


class SkipConfig(BaseModel):
    """Intro/outro skip settings for an item."""

    enable: bool = True
    intro_time: float = 0  # Seconds skipped at the start
    outro_time: float = 0  # Seconds skipped before the end


# =============================================================================
# Operational views
# =============================================================================


class CacheStats(BaseModel):
    """Cache key counts for operational inspection."""

    total_keys: int = 0
    user_cache_keys: int = 0
    config_cache_keys: int = 0

    def describe(self) -> str:
        """Human-readable summary."""
        return (
            f"{self.total_keys} cache keys "
            f"({self.user_cache_keys} user, {self.config_cache_keys} config)"
        )


class HealthStatus(BaseModel):
    """Result of a storage health check."""

    status: Literal["healthy", "unhealthy"]
    storage_type: str
    details: dict[str, Any] = Field(default_factory=dict)
