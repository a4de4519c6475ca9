"""Storage contract shared by every backend.

Storage is the portable capability set callers depend on. KeyValueCache is
a narrower extension implemented only by key-value backends and consumed by
the hybrid backend for cache management.

Neither class holds state: each backend owns its own connections.
"""

from abc import ABC, abstractmethod

from mediastore.storage.errors import UnsupportedOperationError
from mediastore.storage.models import AdminConfig, Favorite, PlayRecord, SkipConfig, UserInfo


class Storage(ABC):
    """Abstract storage backend."""

    @abstractmethod
    async def connect(self) -> None:
        """Open connections and prepare the backend."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        pass

    async def __aenter__(self) -> "Storage":
        """Connect on context entry."""
        await self.connect()
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: object | None,
    ) -> None:
        """Close on context exit."""
        await self.close()

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    @abstractmethod
    async def register_user(self, username: str, password: str, email: str) -> None:
        """Create a user.

        Raises:
            ConstraintViolationError: If the username or email is taken
        """
        pass

    @abstractmethod
    async def verify_user(self, username: str, password: str) -> bool:
        """Check credentials and record the login on success."""
        pass

    @abstractmethod
    async def check_user_exist(self, username: str) -> bool:
        """Check whether a username is registered."""
        pass

    @abstractmethod
    async def check_email_exist(self, email: str) -> bool:
        """Check whether an email is registered."""
        pass

    @abstractmethod
    async def change_password(self, username: str, new_password: str) -> None:
        """Replace a user's password."""
        pass

    @abstractmethod
    async def delete_user(self, username: str) -> None:
        """Delete a user and every per-user record."""
        pass

    @abstractmethod
    async def get_all_users(self) -> list[str]:
        """Active usernames in registration order."""
        pass

    # -------------------------------------------------------------------------
    # Profile
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_user_info(self, username: str) -> UserInfo | None:
        pass

    @abstractmethod
    async def set_user_info(self, username: str, info: UserInfo) -> None:
        """Update profile fields (email).

        Raises:
            ConstraintViolationError: If the email belongs to another user
        """
        pass

    @abstractmethod
    async def update_last_login(self, username: str) -> None:
        pass

    # -------------------------------------------------------------------------
    # Admin config
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_admin_config(self) -> AdminConfig | None:
        """Most recently saved admin config."""
        pass

    @abstractmethod
    async def set_admin_config(self, config: AdminConfig) -> None:
        """Replace the admin config atomically."""
        pass

    # -------------------------------------------------------------------------
    # Favorites
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_favorite(self, username: str, key: str) -> Favorite | None:
        pass

    @abstractmethod
    async def set_favorite(self, username: str, key: str, favorite: Favorite) -> None:
        pass

    @abstractmethod
    async def delete_favorite(self, username: str, key: str) -> None:
        pass

    @abstractmethod
    async def get_all_favorites(self, username: str) -> dict[str, Favorite]:
        pass

    # -------------------------------------------------------------------------
    # Play records
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_play_record(self, username: str, key: str) -> PlayRecord | None:
        pass

    @abstractmethod
    async def set_play_record(self, username: str, key: str, record: PlayRecord) -> None:
        pass

    @abstractmethod
    async def delete_play_record(self, username: str, key: str) -> None:
        pass

    @abstractmethod
    async def get_all_play_records(self, username: str) -> dict[str, PlayRecord]:
        pass

    # -------------------------------------------------------------------------
    # Skip configs
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_skip_config(self, username: str, key: str) -> SkipConfig | None:
        pass

    @abstractmethod
    async def set_skip_config(self, username: str, key: str, config: SkipConfig) -> None:
        pass

    @abstractmethod
    async def delete_skip_config(self, username: str, key: str) -> None:
        pass

    @abstractmethod
    async def get_all_skip_configs(self, username: str) -> dict[str, SkipConfig]:
        pass

    # -------------------------------------------------------------------------
    # Search history
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_search_history(self, username: str) -> list[str]:
        """Up to 20 keywords, most recent first."""
        pass

    @abstractmethod
    async def add_search_history(self, username: str, keyword: str) -> None:
        """Move or insert keyword at the front and keep the newest 20."""
        pass

    @abstractmethod
    async def delete_search_history(self, username: str, keyword: str | None = None) -> None:
        """Delete one keyword, or the whole history when keyword is None."""
        pass

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def clear_all_data(self) -> None:
        """Irreversibly delete every record.

        Raises:
            UnsupportedOperationError: If the backend cannot wipe safely
        """
        raise UnsupportedOperationError(f"{type(self).__name__} does not support clear_all_data")


class KeyValueCache(ABC):
    """Raw key-value primitives used by the hybrid backend for caching.

    Single round-trips, not retried. Not part of the portable contract.
    """

    @abstractmethod
    async def cache_get(self, key: str) -> str | None:
        pass

    @abstractmethod
    async def cache_set(self, key: str, value: str, ttl: int | None = None) -> None:
        """Store a value, expiring after ``ttl`` seconds when given."""
        pass

    @abstractmethod
    async def cache_delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def cache_keys(self, prefix: str) -> list[str]:
        """All keys starting with ``prefix``."""
        pass

    @abstractmethod
    async def cache_delete_many(self, keys: list[str]) -> None:
        pass
