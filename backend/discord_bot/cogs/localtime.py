"""Local time lookup: users store their timezone per guild, others can ask for it."""

from __future__ import annotations

import io
import logging
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError, available_timezones

import discord
from discord import app_commands
from discord.ext import commands

from shared.errors import ValidationError
from shared.repositories.timezone import TimezoneRepository

from discord_bot.core.interactions import handle_app_command_error, reply, run_command

logger = logging.getLogger(__name__)

SUGGEST_TIMEZONES = [
    "UTC", "GMT", "Europe/London",
    "CET", "Europe/Berlin", "Europe/Paris",
    "NZ", "Japan", "Asia/Tokyo",
    "US/Alaska", "US/Pacific", "US/Mountain",
    "US/Central", "US/Eastern", "Canada/Eastern",
    "America/New_York", "America/Sao_Paulo", "America/Chicago",
    "America/Los_Angeles", "Europe/Moscow", "Singapore",
]  # fmt: skip

CLOCK = "\N{CLOCK FACE FOUR OCLOCK}"

# ==================== Helpers ====================


def load_zone(zone_id: str) -> ZoneInfo:
    try:
        return ZoneInfo(zone_id.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise ValidationError(f"unknown timezone {zone_id}") from e


def format_time(instant: datetime, zone: tzinfo) -> str:
    local = instant.astimezone(zone)
    return f"{local.hour:02d}:{local.minute:02d}"


def utc_offset(zone: tzinfo, instant: datetime) -> timedelta:
    return instant.astimezone(zone).utcoffset() or timedelta(0)


def relative_offset(self_zone: tzinfo, target_zone: tzinfo, instant: datetime) -> timedelta:
    """How far the target's clock is ahead of the caller's."""
    return utc_offset(target_zone, instant) - utc_offset(self_zone, instant)


def format_offset(delta: timedelta) -> str:
    """``5h 30m``, ``-9h``, ``0h``."""
    minutes = int(delta.total_seconds()) // 60
    sign = "-" if minutes < 0 else ""
    hours, minutes = divmod(abs(minutes), 60)
    if minutes:
        return f"{sign}{hours}h {minutes}m"
    return f"{sign}{hours}h"


def sorted_zones(instant: datetime) -> list[tuple[str, timedelta]]:
    """Every known zone id with its current UTC offset, west to east."""
    zones = [(zone_id, utc_offset(ZoneInfo(zone_id), instant)) for zone_id in available_timezones()]
    return sorted(zones, key=lambda z: (z[1], z[0]))


def zone_list_text(instant: datetime) -> str:
    return "\n".join(f"{format_offset(offset):<10} {zone_id}" for zone_id, offset in sorted_zones(instant))


def suggested_zones() -> list[ZoneInfo]:
    zones = []
    for zone_id in SUGGEST_TIMEZONES:
        try:
            zones.append(load_zone(zone_id))
        except ValidationError:
            logger.error(f"incorrect timezone id: '{zone_id}'")
    return zones


def describe_local_time(
    target_mention: str,
    target_zone_id: str | None,
    self_zone_id: str | None,
    instant: datetime,
) -> str:
    if target_zone_id is None:
        return f"{target_mention} has not set their timezone"
    target_zone = load_zone(target_zone_id)

    difference = ""
    if self_zone_id is not None:
        delta = relative_offset(load_zone(self_zone_id), target_zone, instant)
        if delta:
            difference = f", relative offset is `{format_offset(delta)}`"

    time_text = format_time(instant, target_zone)
    return f"Time in {target_mention}'s timezone: `{time_text}` (`{target_zone_id}`){difference}"


# ==================== Cog ====================


class LocalTimeCog(commands.Cog):
    """Per-user timezones"""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.repo = TimezoneRepository(bot.db_pool)  # type: ignore[attr-defined]
        self.ctx_menu = app_commands.ContextMenu(name="Local Time", callback=self.local_time_menu)
        self.ctx_menu.guild_only = True

    async def cog_load(self) -> None:
        self.bot.tree.add_command(self.ctx_menu)

    async def cog_unload(self) -> None:
        self.bot.tree.remove_command(self.ctx_menu.name, type=self.ctx_menu.type)

    async def cog_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        await handle_app_command_error(interaction, error)

    async def _zone_id(self, guild_id: int, user_id: int) -> str | None:
        stored = await self.repo.get_timezone(guild_id, user_id)
        if stored is None:
            return None
        try:
            load_zone(stored.timezone_id)
        except ValidationError:
            logger.warning(f"Stored timezone {stored.timezone_id!r} of {user_id} is no longer valid")
            return None
        return stored.timezone_id

    async def _describe(self, interaction: discord.Interaction, target: discord.abc.User) -> str:
        assert interaction.guild_id is not None
        target_zone = await self._zone_id(interaction.guild_id, target.id)
        self_zone = await self._zone_id(interaction.guild_id, interaction.user.id)
        return describe_local_time(
            target.mention, target_zone, self_zone, datetime.now(timezone.utc)
        )

    # ==================== Commands ====================

    timezone_group = app_commands.Group(
        name="timezone", description="list or set timezones", guild_only=True
    )

    @timezone_group.command(name="set", description="update your timezone")
    @app_commands.describe(timezone="time zone id")
    async def timezone_set(self, interaction: discord.Interaction, timezone: str) -> None:
        assert interaction.guild_id is not None
        logger.info(f"received timezone id: {timezone}")
        now = datetime.now(tz=ZoneInfo("UTC"))
        try:
            zone = load_zone(timezone)
        except ValidationError:
            embed = discord.Embed()
            for suggestion in suggested_zones():
                embed.add_field(
                    name=suggestion.key,
                    value=f"{CLOCK} `{format_time(now, suggestion)}`",
                    inline=True,
                )
            await reply(
                interaction,
                "Possibly you meant one of the following timezones?\n"
                "for a full list of available zone ids run\n```\n/timezone list\n```",
                embed=embed,
            )
            return

        guild_id, user_id = interaction.guild_id, interaction.user.id

        async def action() -> str:
            await self.repo.upsert_timezone(guild_id, user_id, zone.key)
            return (
                f"Timezone has been set to **{zone.key}**. "
                f"Your current time should be `{format_time(now, zone)}`"
            )

        await run_command(interaction, action)

    @timezone_set.autocomplete("timezone")
    async def timezone_autocomplete(
        self, interaction: discord.Interaction, current: str
    ) -> list[app_commands.Choice[str]]:
        now = datetime.now(tz=ZoneInfo("UTC"))
        needle = current.strip().lower()
        if needle:
            zone_ids = sorted(z for z in available_timezones() if needle in z.lower())[:25]
        else:
            zone_ids = [z.key for z in suggested_zones()]
        return [
            app_commands.Choice(name=f"{z} {CLOCK} {format_time(now, ZoneInfo(z))}", value=z)
            for z in zone_ids
        ]

    @timezone_group.command(name="list", description="sends a list of valid timezones")
    async def timezone_list(self, interaction: discord.Interaction) -> None:
        text = zone_list_text(datetime.now(tz=ZoneInfo("UTC")))
        await reply(
            interaction,
            "a list of valid timezone ids is in the attachment",
            file=discord.File(io.BytesIO(text.encode("utf-8")), filename="timezones.txt"),
        )

    @app_commands.command(name="localtime", description="get the local time for a user")
    @app_commands.describe(user="user to get local time for")
    @app_commands.guild_only()
    async def localtime(self, interaction: discord.Interaction, user: discord.User) -> None:
        await run_command(interaction, lambda: self._describe(interaction, user))

    async def local_time_menu(
        self, interaction: discord.Interaction, user: discord.Member | discord.User
    ) -> None:
        await run_command(interaction, lambda: self._describe(interaction, user))


async def setup(bot: commands.Bot) -> None:
    """Extension entry point."""
    await bot.add_cog(LocalTimeCog(bot))
