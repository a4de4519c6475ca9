"""Convenience facade over the process-wide storage backend.

Callers address keyed records by source and item id; the facade builds the
record key itself. Everything else passes straight through.

Usage:
    from mediastore.storage.manager import storage_manager

    await storage_manager.save_favorite("alice", "src1", "42", favorite)
    if await storage_manager.is_favorited("alice", "src1", "42"):
        ...
"""

from mediastore.storage.base import Storage
from mediastore.storage.factory import StorageResolver, get_resolver
from mediastore.storage.models import (
    AdminConfig,
    Favorite,
    PlayRecord,
    SkipConfig,
    UserInfo,
    record_key,
)


class StorageManager:
    """Storage operations keyed by (source, item_id) instead of record keys."""

    def __init__(self, resolver: StorageResolver | None = None):
        """Initialize the facade.

        Args:
            resolver: Resolver to take the backend from (defaults to the
                process-wide resolver)
        """
        self._resolver = resolver

    async def _storage(self) -> Storage:
        resolver = self._resolver or get_resolver()
        return await resolver.get()

    # -------------------------------------------------------------------------
    # Play records
    # -------------------------------------------------------------------------

    async def get_play_record(self, username: str, source: str, item_id: str) -> PlayRecord | None:
        storage = await self._storage()
        return await storage.get_play_record(username, record_key(source, item_id))

    async def save_play_record(
        self, username: str, source: str, item_id: str, record: PlayRecord
    ) -> None:
        storage = await self._storage()
        await storage.set_play_record(username, record_key(source, item_id), record)

    async def delete_play_record(self, username: str, source: str, item_id: str) -> None:
        storage = await self._storage()
        await storage.delete_play_record(username, record_key(source, item_id))

    async def get_all_play_records(self, username: str) -> dict[str, PlayRecord]:
        storage = await self._storage()
        return await storage.get_all_play_records(username)

    # -------------------------------------------------------------------------
    # Favorites
    # -------------------------------------------------------------------------

    async def get_favorite(self, username: str, source: str, item_id: str) -> Favorite | None:
        storage = await self._storage()
        return await storage.get_favorite(username, record_key(source, item_id))

    async def save_favorite(
        self, username: str, source: str, item_id: str, favorite: Favorite
    ) -> None:
        storage = await self._storage()
        await storage.set_favorite(username, record_key(source, item_id), favorite)

    async def delete_favorite(self, username: str, source: str, item_id: str) -> None:
        storage = await self._storage()
        await storage.delete_favorite(username, record_key(source, item_id))

    async def get_all_favorites(self, username: str) -> dict[str, Favorite]:
        storage = await self._storage()
        return await storage.get_all_favorites(username)

    async def is_favorited(self, username: str, source: str, item_id: str) -> bool:
        return await self.get_favorite(username, source, item_id) is not None

    # -------------------------------------------------------------------------
    # Skip configs
    # -------------------------------------------------------------------------

    async def get_skip_config(self, username: str, source: str, item_id: str) -> SkipConfig | None:
        storage = await self._storage()
        return await storage.get_skip_config(username, record_key(source, item_id))

    async def set_skip_config(
        self, username: str, source: str, item_id: str, config: SkipConfig
    ) -> None:
        storage = await self._storage()
        await storage.set_skip_config(username, record_key(source, item_id), config)

    async def delete_skip_config(self, username: str, source: str, item_id: str) -> None:
        storage = await self._storage()
        await storage.delete_skip_config(username, record_key(source, item_id))

    async def get_all_skip_configs(self, username: str) -> dict[str, SkipConfig]:
        storage = await self._storage()
        return await storage.get_all_skip_configs(username)

    # -------------------------------------------------------------------------
    # Users and profile
    # -------------------------------------------------------------------------

    async def register_user(self, username: str, password: str, email: str) -> None:
        storage = await self._storage()
        await storage.register_user(username, password, email)

    async def verify_user(self, username: str, password: str) -> bool:
        storage = await self._storage()
        return await storage.verify_user(username, password)

    async def check_user_exist(self, username: str) -> bool:
        storage = await self._storage()
        return await storage.check_user_exist(username)

    async def check_email_exist(self, email: str) -> bool:
        storage = await self._storage()
        return await storage.check_email_exist(email)

    async def change_password(self, username: str, new_password: str) -> None:
        storage = await self._storage()
        await storage.change_password(username, new_password)

    async def delete_user(self, username: str) -> None:
        storage = await self._storage()
        await storage.delete_user(username)

    async def get_all_users(self) -> list[str]:
        storage = await self._storage()
        return await storage.get_all_users()

    async def get_user_info(self, username: str) -> UserInfo | None:
        storage = await self._storage()
        return await storage.get_user_info(username)

    async def set_user_info(self, username: str, info: UserInfo) -> None:
        storage = await self._storage()
        await storage.set_user_info(username, info)

    async def update_last_login(self, username: str) -> None:
        storage = await self._storage()
        await storage.update_last_login(username)

    # -------------------------------------------------------------------------
    # Search history
    # -------------------------------------------------------------------------

    async def get_search_history(self, username: str) -> list[str]:
        storage = await self._storage()
        return await storage.get_search_history(username)

    async def add_search_history(self, username: str, keyword: str) -> None:
        storage = await self._storage()
        await storage.add_search_history(username, keyword)

    async def delete_search_history(self, username: str, keyword: str | None = None) -> None:
        storage = await self._storage()
        await storage.delete_search_history(username, keyword)

    # -------------------------------------------------------------------------
    # Admin config and maintenance
    # -------------------------------------------------------------------------

    async def get_admin_config(self) -> AdminConfig | None:
        storage = await self._storage()
        return await storage.get_admin_config()

    async def save_admin_config(self, config: AdminConfig) -> None:
        storage = await self._storage()
        await storage.set_admin_config(config)

    async def clear_all_data(self) -> None:
        storage = await self._storage()
        await storage.clear_all_data()


# Process-wide facade
storage_manager = StorageManager()
