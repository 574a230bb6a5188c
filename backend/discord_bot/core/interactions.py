"""Shared reply and error handling for slash commands."""

import logging
from collections.abc import Awaitable, Callable

import discord
from discord import app_commands

from shared.errors import BotError

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong, please try again later"


async def reply(interaction: discord.Interaction, content: str, **kwargs) -> None:
    """Ephemeral reply whether or not the interaction was deferred."""
    if interaction.response.is_done():
        await interaction.followup.send(content, ephemeral=True, **kwargs)
    else:
        await interaction.response.send_message(content, ephemeral=True, **kwargs)


async def run_command(
    interaction: discord.Interaction, action: Callable[[], Awaitable[str]]
) -> None:
    """Defer, run *action* and answer with its text or a short error."""
    if not interaction.response.is_done():
        await interaction.response.defer(ephemeral=True, thinking=True)
    try:
        content = await action()
    except BotError as e:
        content = e.message
    except Exception:
        name = interaction.command.qualified_name if interaction.command else "?"
        logger.exception(f"Command /{name} failed (guild={interaction.guild_id})")
        content = GENERIC_ERROR
    await reply(interaction, content)


async def handle_app_command_error(
    interaction: discord.Interaction, error: app_commands.AppCommandError
) -> None:
    if isinstance(error, app_commands.MissingPermissions):
        missing = ", ".join(p.replace("_", " ") for p in error.missing_permissions)
        content = f"You need the {missing} permission to use this command"
    elif isinstance(error, app_commands.NoPrivateMessage):
        content = "This command can only be used in a server"
    elif isinstance(error, app_commands.CheckFailure):
        content = "You cannot use this command here"
    else:
        logger.error(f"App command error: {error}", exc_info=error)
        content = GENERIC_ERROR
    await reply(interaction, content)
