"""Repository for the user_timezones table."""

from __future__ import annotations

import asyncpg

from shared.models.timezone import UserTimezone


class TimezoneRepository:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_timezone(self, guild_id: int, user_id: int) -> UserTimezone | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT guild_id, user_id, timezone_id, updated_at FROM user_timezones "
                "WHERE guild_id = $1 AND user_id = $2",
                guild_id,
                user_id,
            )
            return UserTimezone(**dict(row)) if row else None

    async def upsert_timezone(self, guild_id: int, user_id: int, timezone_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_timezones (guild_id, user_id, timezone_id)
                VALUES ($1, $2, $3)
                ON CONFLICT (guild_id, user_id) DO UPDATE SET
                    timezone_id = EXCLUDED.timezone_id,
                    updated_at  = NOW()
                """,
                guild_id,
                user_id,
                timezone_id,
            )
