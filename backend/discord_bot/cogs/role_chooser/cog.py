"""Role chooser cog: reaction-role panels managed with /role."""

import logging

import discord
from discord import app_commands
from discord.ext import commands

from shared.repositories.role_chooser import RoleChooserRepository

from discord_bot.core.interactions import handle_app_command_error, run_command
from discord_bot.gateway import ReactionKey

from .reconciler import PanelReconciler

logger = logging.getLogger(__name__)


class RoleChooserCog(commands.Cog):
    """Reaction-role self assignment"""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.reconciler = PanelReconciler(
            RoleChooserRepository(bot.db_pool),  # type: ignore[attr-defined]
            bot.gateway,  # type: ignore[attr-defined]
        )

    async def cog_unload(self) -> None:
        self.reconciler.watchers.cancel_all()

    async def cog_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        await handle_app_command_error(interaction, error)

    # ==================== Events ====================

    @commands.Cog.listener()
    async def on_guild_available(self, guild: discord.Guild) -> None:
        report = await self.reconciler.reconcile_guild(guild.id)
        if report.reconciled or report.failed:
            logger.info(
                f"Role choosers of {guild.name}: {report.reconciled} ok, "
                f"{len(report.failed)} failed"
            )

    @commands.Cog.listener()
    async def on_guild_join(self, guild: discord.Guild) -> None:
        await self.reconciler.reconcile_guild(guild.id)

    # ==================== Commands ====================

    role_group = app_commands.Group(
        name="role",
        description="Reaction role selection",
        guild_only=True,
        default_permissions=discord.Permissions(manage_roles=True),
    )

    @role_group.command(name="add", description="adds a new reaction to role mapping")
    @app_commands.describe(
        section="Section name",
        emoji="Reaction emoji",
        role="Role to grant",
        channel="Channel of the panel (defaults to this channel)",
    )
    @app_commands.checks.has_permissions(manage_roles=True)
    async def role_add(
        self,
        interaction: discord.Interaction,
        section: str,
        emoji: str,
        role: discord.Role,
        channel: discord.TextChannel | None = None,
    ) -> None:
        assert interaction.guild is not None
        channel_id = channel.id if channel else interaction.channel_id
        guild_id = interaction.guild.id

        async def action() -> str:
            key = ReactionKey.parse(emoji)
            await self.reconciler.add_mapping(guild_id, channel_id, section, key, role.id)
            return (
                f"added new role mapping {key} -> {role.mention} to {section} in <#{channel_id}>"
            )

        await run_command(interaction, action)

    @role_group.command(name="remove", description="removes a role mapping")
    @app_commands.describe(
        section="Section name",
        emoji="Reaction emoji",
        channel="Channel of the panel (defaults to this channel)",
    )
    @app_commands.checks.has_permissions(manage_roles=True)
    async def role_remove(
        self,
        interaction: discord.Interaction,
        section: str,
        emoji: str,
        channel: discord.TextChannel | None = None,
    ) -> None:
        assert interaction.guild is not None
        channel_id = channel.id if channel else interaction.channel_id
        guild_id = interaction.guild.id

        async def action() -> str:
            key = ReactionKey.parse(emoji)
            deleted = await self.reconciler.remove_mapping(guild_id, channel_id, section, key)
            return "removed role section" if deleted else "removed role"

        await run_command(interaction, action)

    @role_group.command(name="update-section", description="renames a section")
    @app_commands.describe(
        old="Current section name",
        section="New section name",
        channel="Channel of the panel (defaults to this channel)",
    )
    @app_commands.checks.has_permissions(manage_roles=True)
    async def role_update_section(
        self,
        interaction: discord.Interaction,
        old: str,
        section: str,
        channel: discord.TextChannel | None = None,
    ) -> None:
        assert interaction.guild is not None
        channel_id = channel.id if channel else interaction.channel_id
        guild_id = interaction.guild.id

        async def action() -> str:
            await self.reconciler.rename_section(guild_id, channel_id, old, section)
            return f"renamed section {old} to {section}"

        await run_command(interaction, action)

    @role_group.command(name="list", description="lists role selection sections")
    @app_commands.describe(channel="Only list panels in this channel")
    @app_commands.checks.has_permissions(manage_roles=True)
    async def role_list(
        self, interaction: discord.Interaction, channel: discord.TextChannel | None = None
    ) -> None:
        assert interaction.guild is not None
        guild_id = interaction.guild.id

        async def action() -> str:
            panels = await self.reconciler.list_panels(guild_id, channel.id if channel else None)
            if not panels:
                return "no role selection sections"
            blocks = []
            for panel in panels:
                header = f"**{panel.section}** in <#{panel.channel_id}>"
                if panel.jump_url:
                    header += f" ({panel.jump_url})"
                if panel.description:
                    header += f"\n{panel.description}"
                blocks.append("\n".join([header, *panel.lines]))
            return "\n\n".join(blocks)[:2000]

        await run_command(interaction, action)

    @role_group.command(name="check", description="re-syncs every panel of this server")
    @app_commands.checks.has_permissions(manage_roles=True)
    async def role_check(self, interaction: discord.Interaction) -> None:
        assert interaction.guild is not None
        guild_id = interaction.guild.id

        async def action() -> str:
            report = await self.reconciler.reconcile_guild(guild_id)
            lines = [f"reconciled {report.reconciled} panels"]
            if report.failed:
                lines.append(f"failed: {', '.join(report.failed)}")
            for channel_id, missing in report.missing_permissions.items():
                lines.append(f"missing in <#{channel_id}>: {', '.join(missing)}")
            return "\n".join(lines)

        await run_command(interaction, action)
