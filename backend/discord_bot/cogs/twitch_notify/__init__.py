"""Twitch notification feature module."""

from discord.ext import commands

from .cog import TwitchNotifyCog

__all__ = ["TwitchNotifyCog", "setup"]


async def setup(bot: commands.Bot) -> None:
    """Extension entry point."""
    await bot.add_cog(TwitchNotifyCog(bot))
