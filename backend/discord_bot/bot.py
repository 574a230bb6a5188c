"""
rolecast Discord bot
discord.py 2.x with slash commands
"""

import asyncio
import logging

import discord
from discord.ext import commands
from dotenv import load_dotenv

from shared.database import DatabaseManager, PoolConfig
from shared.twitch_api import TwitchStatusClient

from discord_bot.core.config import DISCORD_BOT_DIR, BotSettings, get_settings
from discord_bot.core.health_server import HealthCheckServer
from discord_bot.core.logging import setup_logging
from discord_bot.gateway import DiscordGateway

logger = logging.getLogger(__name__)

INITIAL_EXTENSIONS = [
    "discord_bot.cogs.role_chooser",
    "discord_bot.cogs.twitch_notify",
    "discord_bot.cogs.localtime",
]


class RolecastBot(commands.Bot):
    """rolecast Discord bot client"""

    def __init__(self, settings: BotSettings):
        intents = discord.Intents.default()
        intents.members = True  # member lookups for role grants

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            help_command=None,
        )

        self.settings = settings
        self.db = DatabaseManager(settings.database_url, PoolConfig.for_service("discord"))
        self.gateway = DiscordGateway(self)
        self.twitch = TwitchStatusClient(settings.twitch_client_id, settings.twitch_client_secret)
        self.health_server = HealthCheckServer(
            self, host=settings.health_host, port=settings.health_port
        )

    @property
    def db_pool(self):
        return self.db.pool

    async def setup_hook(self) -> None:
        """Connect the database, load cogs and sync slash commands"""
        await self.db.connect()
        applied = await self.db.migrate()
        if applied:
            logger.info(f"[green]Applied migrations:[/green] {', '.join(applied)}")

        loaded = []
        failed = []
        for extension in INITIAL_EXTENSIONS:
            try:
                await self.load_extension(extension)
                loaded.append(extension.split(".")[-1])
            except Exception as e:
                logger.exception(f"Failed to load {extension}")
                failed.append(f"{extension.split('.')[-1]} ({e})")

        if loaded:
            logger.info(f"[green]Loaded cogs:[/green] {', '.join(loaded)}")
        if failed:
            logger.error(f"[red]Failed to load:[/red] {', '.join(failed)}")

        if twitch_cog := self.get_cog("TwitchNotifyCog"):
            self.health_server.scheduler = twitch_cog.scheduler  # type: ignore[attr-defined]

        logger.info("[yellow]Syncing slash commands...[/yellow]")
        guild_id = self.settings.discord_guild_id
        if guild_id:
            # Sync to the test guild (instant)
            guild = discord.Object(id=guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
            logger.info(f"[magenta]Synced slash commands to guild {guild_id}[/magenta]")
        else:
            # Global sync can take up to an hour to show up
            await self.tree.sync()
            logger.info("[magenta]Synced slash commands globally[/magenta]")

        await self.health_server.start()

    async def on_ready(self) -> None:
        assert self.user is not None
        logger.info(f"[bold green]Bot ready:[/bold green] {self.user} [dim](ID: {self.user.id})[/dim]")
        logger.info(
            f"[cyan]Connected:[/cyan] {len(self.guilds)} guilds | discord.py {discord.__version__}"
        )

    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        self.gateway.dispatch_raw_reaction(payload)

    async def on_raw_reaction_remove(self, payload: discord.RawReactionActionEvent) -> None:
        self.gateway.dispatch_raw_reaction(payload)

    async def close(self) -> None:
        await self.health_server.stop()
        await super().close()
        await self.twitch.aclose()
        await self.db.disconnect()


async def main() -> None:
    """Bot entry point"""
    load_dotenv(dotenv_path=DISCORD_BOT_DIR / ".env", encoding="utf-8")
    settings = get_settings()
    setup_logging(settings.log_level)

    async with RolecastBot(settings) as bot:
        try:
            await bot.start(settings.discord_bot_token)
        except (KeyboardInterrupt, asyncio.CancelledError):
            if not bot.is_closed():
                await bot.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("[yellow]Bot stopped[/yellow]")
