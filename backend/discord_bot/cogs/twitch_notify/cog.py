"""Twitch notification cog: status cards for watched streamers."""

import asyncio
import logging

import discord
from discord import app_commands
from discord.ext import commands

from shared.repositories.stream_watch import StreamWatchRepository

from discord_bot.core.interactions import handle_app_command_error, run_command
from discord_bot.core.scheduler import PollScheduler

from .reconciler import NotificationReconciler, TickReport
from .webhooks import WebhookCache

logger = logging.getLogger(__name__)


class TwitchNotifyCog(commands.Cog):
    """Twitch live / offline notifications"""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        settings = bot.settings  # type: ignore[attr-defined]
        self.webhooks = WebhookCache(
            bot.gateway,  # type: ignore[attr-defined]
            avatar=settings.load_webhook_avatar(),
        )
        self.reconciler = NotificationReconciler(
            StreamWatchRepository(bot.db_pool),  # type: ignore[attr-defined]
            bot.gateway,  # type: ignore[attr-defined]
            bot.twitch,  # type: ignore[attr-defined]
            self.webhooks,
        )
        self.scheduler = PollScheduler(
            "twitch",
            self._tick,
            interval=settings.twitch_poll_interval,
            precision=settings.twitch_poll_precision,
            stall_timeout=settings.twitch_stall_timeout,
        )
        self._start_task: asyncio.Task | None = None

    async def cog_load(self) -> None:
        if not self.reconciler.twitch.enabled:
            logger.warning("Twitch credentials missing, notifications disabled")
            return
        # Non-blocking, the loop starts once the gateway is ready
        self._start_task = asyncio.create_task(self._start_when_ready())

    async def _start_when_ready(self) -> None:
        await self.bot.wait_until_ready()
        self.scheduler.start()

    async def cog_unload(self) -> None:
        if self._start_task:
            self._start_task.cancel()
        await self.scheduler.stop()

    async def cog_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        await handle_app_command_error(interaction, error)

    async def _tick(self) -> TickReport:
        report = await self.reconciler.check_all([g.id for g in self.bot.guilds])
        if report.failures:
            logger.warning(f"Twitch tick: {report.summary()}")
        else:
            logger.debug(f"Twitch tick: {report.summary()}")
        return report

    # ==================== Commands ====================

    twitch_group = app_commands.Group(
        name="twitch",
        description="twitch notifications",
        guild_only=True,
        default_permissions=discord.Permissions(manage_guild=True),
    )

    @twitch_group.command(name="add", description="be notified about more streamers")
    @app_commands.describe(
        role="Role to mention when the stream goes live",
        twitch="Twitch username",
        channel="Channel for notifications (defaults to this channel)",
    )
    @app_commands.checks.has_permissions(manage_guild=True)
    async def twitch_add(
        self,
        interaction: discord.Interaction,
        role: discord.Role,
        twitch: str,
        channel: discord.TextChannel | None = None,
    ) -> None:
        assert interaction.guild is not None
        guild_id = interaction.guild.id
        channel_id = channel.id if channel else interaction.channel_id

        async def action() -> str:
            watch, user = await self.reconciler.add_watch(guild_id, channel_id, twitch, role.id)
            return (
                f"added {user.display_name} <{watch.channel_url}> "
                f"to <#{channel_id}> to notify {role.mention}"
            )

        await run_command(interaction, action)

    @twitch_group.command(name="remove", description="removes a streamer from notifications")
    @app_commands.describe(
        twitch="Twitch username",
        channel="Channel of the notification (defaults to this channel)",
    )
    @app_commands.checks.has_permissions(manage_guild=True)
    async def twitch_remove(
        self,
        interaction: discord.Interaction,
        twitch: str,
        channel: discord.TextChannel | None = None,
    ) -> None:
        assert interaction.guild is not None
        guild_id = interaction.guild.id
        channel_id = channel.id if channel else interaction.channel_id

        async def action() -> str:
            await self.reconciler.remove_watch(guild_id, channel_id, twitch)
            return f"removed {twitch} from <#{channel_id}>"

        await run_command(interaction, action)

    @twitch_group.command(name="list", description="lists all streamers in config")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def twitch_list(self, interaction: discord.Interaction) -> None:
        assert interaction.guild is not None
        guild_id = interaction.guild.id

        async def action() -> str:
            watches = await self.reconciler.list_watches(guild_id)
            if not watches:
                return "no twitch notifications registered, get started with /twitch add"
            entries = []
            for watch in watches:
                lines = [f"<{watch.channel_url}>", f"<@&{watch.role_id}>", f"<#{watch.channel_id}>"]
                if watch.message_id:
                    lines.append(
                        f"https://discord.com/channels/{guild_id}/{watch.channel_id}/{watch.message_id}"
                    )
                entries.append("\n".join(lines))
            return ("registered twitch notifications: \n\n" + "\n\n".join(entries))[:2000]

        await run_command(interaction, action)

    @twitch_group.command(name="status", description="check status of twitch background loop")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def twitch_status(self, interaction: discord.Interaction) -> None:
        async def action() -> str:
            lines = [f"running: {self.scheduler.running}", f"ticks: {self.scheduler.tick_count}"]
            outcome = self.scheduler.last_outcome
            if outcome is not None:
                finished = "?"
                if outcome.finished_at:
                    finished = discord.utils.format_dt(outcome.finished_at, "R")
                if outcome.ok:
                    lines.append(f"last tick ok {finished}: {outcome.detail or '-'}")
                else:
                    lines.append(f"last tick failed {finished}: {outcome.error}")
            return "\n".join(lines)

        await run_command(interaction, action)

    @twitch_group.command(name="check", description="check permissions in channel")
    @app_commands.describe(channel="Channel to check (defaults to this channel)")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def twitch_check(
        self, interaction: discord.Interaction, channel: discord.TextChannel | None = None
    ) -> None:
        assert interaction.guild is not None
        guild_id = interaction.guild.id
        channel_id = channel.id if channel else interaction.channel_id

        async def action() -> str:
            missing = await self.reconciler.check_channel(guild_id, channel_id)
            if missing:
                return f"missing permissions in <#{channel_id}>: {', '.join(missing)}"
            return "OK"

        await run_command(interaction, action)
