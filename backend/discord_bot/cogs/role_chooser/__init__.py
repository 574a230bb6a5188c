"""Role chooser feature module."""

from discord.ext import commands

from .cog import RoleChooserCog

__all__ = ["RoleChooserCog", "setup"]


async def setup(bot: commands.Bot) -> None:
    """Extension entry point."""
    await bot.add_cog(RoleChooserCog(bot))
