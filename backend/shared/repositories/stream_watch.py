"""Repository for the stream_watches table."""

from __future__ import annotations

import asyncpg

from shared.models.stream_watch import MessageStatus, StreamWatch

_COLUMNS = (
    "guild_id, channel_id, streamer_login, role_id, message_id, message_status, "
    "created_at, updated_at"
)


class StreamWatchRepository:
    """Pure SQL operations for tracked streamers.

    Logins are stored lowercase; every lookup lowercases its argument.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_watch(
        self, guild_id: int, channel_id: int, streamer_login: str
    ) -> StreamWatch | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM stream_watches "
                "WHERE guild_id = $1 AND channel_id = $2 AND streamer_login = $3",
                guild_id,
                channel_id,
                streamer_login.lower(),
            )
            return StreamWatch(**dict(row)) if row else None

    async def upsert_watch(
        self, guild_id: int, channel_id: int, streamer_login: str, role_id: int
    ) -> StreamWatch:
        """Insert or update a watch. An existing status card is kept."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO stream_watches (guild_id, channel_id, streamer_login, role_id)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (guild_id, channel_id, streamer_login) DO UPDATE SET
                    role_id    = EXCLUDED.role_id,
                    updated_at = NOW()
                RETURNING {_COLUMNS}
                """,
                guild_id,
                channel_id,
                streamer_login.lower(),
                role_id,
            )
            return StreamWatch(**dict(row))

    async def delete_watch(self, guild_id: int, channel_id: int, streamer_login: str) -> bool:
        async with self.pool.acquire() as conn:
            result: str = await conn.execute(
                "DELETE FROM stream_watches "
                "WHERE guild_id = $1 AND channel_id = $2 AND streamer_login = $3",
                guild_id,
                channel_id,
                streamer_login.lower(),
            )
            return result == "DELETE 1"

    async def list_watches(self, guild_id: int) -> list[StreamWatch]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM stream_watches WHERE guild_id = $1 "
                "ORDER BY channel_id, streamer_login",
                guild_id,
            )
            return [StreamWatch(**dict(r)) for r in rows]

    async def list_watches_for_guilds(self, guild_ids: list[int]) -> list[StreamWatch]:
        """All watches of the given guilds, in one query."""
        if not guild_ids:
            return []
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM stream_watches WHERE guild_id = ANY($1::BIGINT[]) "
                "ORDER BY guild_id, channel_id, streamer_login",
                guild_ids,
            )
            return [StreamWatch(**dict(r)) for r in rows]

    async def update_message(
        self,
        guild_id: int,
        channel_id: int,
        streamer_login: str,
        message_id: int | None,
        status: MessageStatus | None,
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE stream_watches
                SET message_id = $4, message_status = $5, updated_at = NOW()
                WHERE guild_id = $1 AND channel_id = $2 AND streamer_login = $3
                """,
                guild_id,
                channel_id,
                streamer_login.lower(),
                message_id,
                status.value if status else None,
            )
