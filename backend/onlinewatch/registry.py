"""
Channel/User registry: maps channel names and upstream public ids to stable
internal row ids, creating rows on first sight.

Lookups go through a per-cycle CycleCache first; a miss always runs the
upsert-then-select pair so that a row created concurrently elsewhere is
picked up instead of failing.
"""
import logging

import asyncpg

from onlinewatch.errors import StorageError

logger = logging.getLogger(__name__)

_STORAGE_EXCEPTIONS = (asyncpg.PostgresError, asyncpg.InterfaceError)


class CycleCache:
    """channel name -> id and public_id -> id, valid for one cycle only."""

    def __init__(self) -> None:
        self.channels: dict[str, int] = {}
        self.users: dict[str, int] = {}

    def clear(self) -> None:
        self.channels.clear()
        self.users.clear()

    def __len__(self) -> int:
        return len(self.channels) + len(self.users)


class Registry:
    def __init__(self, conn: asyncpg.Connection, cache: CycleCache) -> None:
        self._conn = conn
        self._cache = cache

    async def resolve_channel(self, name: str) -> int:
        cached = self._cache.channels.get(name)
        if cached is not None:
            return cached
        try:
            await self._conn.execute(
                "INSERT INTO channels (name) VALUES ($1) ON CONFLICT (name) DO NOTHING", name,
            )
            channel_id = await self._conn.fetchval("SELECT id FROM channels WHERE name = $1", name)
        except _STORAGE_EXCEPTIONS as e:
            raise StorageError(f"resolve_channel({name!r}) failed: {e}") from e
        if channel_id is None:
            raise StorageError(f"channel {name!r} missing after upsert")
        self._cache.channels[name] = channel_id
        return channel_id

    async def resolve_user(self, public_id: str, display_name: str) -> int:
        """Return the id for public_id; display_name only applies to a new row."""
        cached = self._cache.users.get(public_id)
        if cached is not None:
            return cached
        try:
            await self._conn.execute(
                """INSERT INTO users (public_id, name, online) VALUES ($1, $2, FALSE)
                   ON CONFLICT (public_id) DO NOTHING""",
                public_id, display_name,
            )
            user_id = await self._conn.fetchval("SELECT id FROM users WHERE public_id = $1", public_id)
        except _STORAGE_EXCEPTIONS as e:
            raise StorageError(f"resolve_user({public_id!r}) failed: {e}") from e
        if user_id is None:
            raise StorageError(f"user {public_id!r} missing after upsert")
        self._cache.users[public_id] = user_id
        return user_id

    def forget_user(self, public_id: str) -> None:
        """Drop a mapping whose creating savepoint was rolled back."""
        self._cache.users.pop(public_id, None)

    def forget_channel(self, name: str) -> None:
        self._cache.channels.pop(name, None)
