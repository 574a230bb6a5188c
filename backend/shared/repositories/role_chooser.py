"""Repository for role_chooser_panels and role_mappings tables."""

from __future__ import annotations

import logging

import asyncpg

from shared.cache import AsyncTTLCache, cached
from shared.errors import ValidationError
from shared.models.role_chooser import RoleChooserPanel, RoleMapping

logger = logging.getLogger(__name__)

# --- In-process caches ---
# Mapping lists are read on every reconcile; writes go through this class.
_mapping_cache = AsyncTTLCache(maxsize=256, ttl=600)

_PANEL_COLUMNS = (
    "panel_id, guild_id, channel_id, section, description, message_id, created_at, updated_at"
)
_MAPPING_COLUMNS = "mapping_id, panel_id, reaction, role_id, created_at"


def _mapping_key(panel_id: int) -> str:
    return f"mapping:{panel_id}"


class RoleChooserRepository:
    """Pure SQL operations for role chooser panels and their mappings."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    # ==================== Panel Operations ====================

    async def find_panel(
        self, guild_id: int, channel_id: int, section: str
    ) -> RoleChooserPanel | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_PANEL_COLUMNS} FROM role_chooser_panels "
                "WHERE guild_id = $1 AND channel_id = $2 AND section = $3",
                guild_id,
                channel_id,
                section,
            )
            return RoleChooserPanel(**dict(row)) if row else None

    async def get_panel(self, panel_id: int) -> RoleChooserPanel | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_PANEL_COLUMNS} FROM role_chooser_panels WHERE panel_id = $1",
                panel_id,
            )
            return RoleChooserPanel(**dict(row)) if row else None

    async def upsert_panel(
        self,
        guild_id: int,
        channel_id: int,
        section: str,
        description: str | None = None,
    ) -> RoleChooserPanel:
        """Find-or-create a panel in a single statement.

        Concurrent calls for the same section converge on one row.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO role_chooser_panels (guild_id, channel_id, section, description)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (guild_id, channel_id, section) DO UPDATE SET
                    description = COALESCE(EXCLUDED.description, role_chooser_panels.description),
                    updated_at  = NOW()
                RETURNING {_PANEL_COLUMNS}
                """,
                guild_id,
                channel_id,
                section,
                description,
            )
            return RoleChooserPanel(**dict(row))

    async def update_panel_message(self, panel_id: int, message_id: int | None) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE role_chooser_panels SET message_id = $2, updated_at = NOW() "
                "WHERE panel_id = $1",
                panel_id,
                message_id,
            )

    async def rename_panel_section(self, panel_id: int, section: str) -> bool:
        """Rename a panel. Returns False if the panel vanished.

        Raises ValidationError if the new name is already taken in the channel.
        """
        try:
            async with self.pool.acquire() as conn:
                result: str = await conn.execute(
                    "UPDATE role_chooser_panels SET section = $2, updated_at = NOW() "
                    "WHERE panel_id = $1",
                    panel_id,
                    section,
                )
        except asyncpg.UniqueViolationError as e:
            raise ValidationError(f"section {section} already exists") from e
        return result == "UPDATE 1"

    async def delete_panel(self, panel_id: int) -> bool:
        """Delete a panel and (via cascade) its mappings."""
        async with self.pool.acquire() as conn:
            result: str = await conn.execute(
                "DELETE FROM role_chooser_panels WHERE panel_id = $1",
                panel_id,
            )
        _mapping_cache.invalidate(_mapping_key(panel_id))
        return result == "DELETE 1"

    async def list_panels_in_channel(
        self, guild_id: int, channel_id: int
    ) -> list[RoleChooserPanel]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_PANEL_COLUMNS} FROM role_chooser_panels "
                "WHERE guild_id = $1 AND channel_id = $2 ORDER BY panel_id",
                guild_id,
                channel_id,
            )
            return [RoleChooserPanel(**dict(r)) for r in rows]

    async def list_all_panels(self, guild_id: int) -> list[RoleChooserPanel]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_PANEL_COLUMNS} FROM role_chooser_panels "
                "WHERE guild_id = $1 ORDER BY channel_id, panel_id",
                guild_id,
            )
            return [RoleChooserPanel(**dict(r)) for r in rows]

    # ==================== Mapping Operations ====================

    async def upsert_mapping(self, panel_id: int, reaction: str, role_id: int) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO role_mappings (panel_id, reaction, role_id)
                VALUES ($1, $2, $3)
                ON CONFLICT (panel_id, reaction) DO UPDATE SET
                    role_id = EXCLUDED.role_id
                """,
                panel_id,
                reaction,
                role_id,
            )
        _mapping_cache.invalidate(_mapping_key(panel_id))

    async def delete_mapping(self, panel_id: int, reaction: str) -> bool:
        async with self.pool.acquire() as conn:
            result: str = await conn.execute(
                "DELETE FROM role_mappings WHERE panel_id = $1 AND reaction = $2",
                panel_id,
                reaction,
            )
        _mapping_cache.invalidate(_mapping_key(panel_id))
        return result == "DELETE 1"

    @cached(cache=_mapping_cache, key_func=lambda self, panel_id: _mapping_key(panel_id))
    async def list_mapping(self, panel_id: int) -> list[RoleMapping]:
        """Return a panel's mappings in insertion order."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_MAPPING_COLUMNS} FROM role_mappings "
                "WHERE panel_id = $1 ORDER BY mapping_id",
                panel_id,
            )
            return [RoleMapping(**dict(r)) for r in rows]
