"""Drives role chooser panel messages to match their stored mappings.

A reconcile pass resolves (or recreates) the panel message, rewrites its
body, syncs the reaction set, grants roles that members reacted for while
no watcher was running, and finally restarts the panel's live watcher.

Store writes always happen before the platform is touched, and no store
call is held open across a platform call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from shared.cache import KeyedLocks
from shared.errors import (
    BotError,
    FatalPreconditionError,
    NotFoundError,
    PlatformError,
    TransientPlatformError,
    ValidationError,
)
from shared.models.role_chooser import RoleChooserPanel, RoleMapping
from shared.repositories.role_chooser import RoleChooserRepository

from discord_bot.gateway import (
    MessageSnapshot,
    PlatformGateway,
    ReactionKey,
    RoleRef,
    Supported,
    Unsupported,
)

from .rendering import placeholder_content, render_panel
from .watcher import ReactionWatcherRegistry

logger = logging.getLogger(__name__)

REQUIRED_PERMISSIONS = (
    "view_channel",
    "send_messages",
    "read_message_history",
    "add_reactions",
    "manage_messages",
    "manage_roles",
)


@dataclass
class PanelSummary:
    section: str
    channel_id: int
    description: str | None
    lines: list[str]
    jump_url: str | None


@dataclass
class GuildReconcileReport:
    guild_id: int
    reconciled: int = 0
    failed: list[str] = field(default_factory=list)
    missing_permissions: dict[int, tuple[str, ...]] = field(default_factory=dict)


def _stored_key(mapping: RoleMapping) -> ReactionKey | None:
    try:
        return ReactionKey.parse(mapping.reaction)
    except ValidationError:
        logger.warning(
            f"Ignoring unparsable reaction {mapping.reaction!r} on panel {mapping.panel_id}"
        )
        return None


class PanelReconciler:
    def __init__(
        self,
        repo: RoleChooserRepository,
        gateway: PlatformGateway,
        watchers: ReactionWatcherRegistry | None = None,
    ) -> None:
        self.repo = repo
        self.gateway = gateway
        self.watchers = watchers or ReactionWatcherRegistry(gateway)
        self._locks = KeyedLocks()

    def _channel_lock(self, guild_id: int, channel_id: int):
        return self._locks.get((guild_id, channel_id))

    # ==================== Helpers ====================

    async def _require_channel(self, guild_id: int, channel_id: int) -> Supported:
        capability = await self.gateway.resolve_channel(guild_id, channel_id)
        if isinstance(capability, Unsupported):
            raise FatalPreconditionError(
                capability.reason, guild_id=guild_id, channel_id=channel_id
            )
        return capability

    async def _effective_mapping(
        self, panel: RoleChooserPanel
    ) -> list[tuple[ReactionKey, RoleRef]]:
        """Stored mapping minus rows whose emoji or role is no longer usable."""
        entries: list[tuple[ReactionKey, RoleRef]] = []
        for mapping in await self.repo.list_mapping(panel.panel_id):
            key = _stored_key(mapping)
            if key is None:
                continue
            role = await self.gateway.get_role(panel.guild_id, mapping.role_id)
            if role is None:
                logger.warning(
                    f"Role {mapping.role_id} for {key} in section '{panel.section}' no longer "
                    f"exists (guild={panel.guild_id}, channel={panel.channel_id})"
                )
                continue
            entries.append((key, role))
        return entries

    async def _resolve_message(self, panel: RoleChooserPanel) -> MessageSnapshot:
        if panel.message_id:
            message = await self.gateway.fetch_message(panel.channel_id, panel.message_id)
            if message is not None:
                return message
            logger.info(
                f"Message {panel.message_id} of section '{panel.section}' vanished, recreating "
                f"(guild={panel.guild_id}, channel={panel.channel_id})"
            )

        message = await self.gateway.create_message(
            panel.channel_id, placeholder_content(panel.section), silent=True
        )
        await self.repo.update_panel_message(panel.panel_id, message.id)
        panel.message_id = message.id
        return message

    async def _grant_reactors(
        self, panel: RoleChooserPanel, message_id: int, key: ReactionKey, role: RoleRef
    ) -> None:
        try:
            reactors = await self.gateway.list_reactors(panel.channel_id, message_id, key)
        except (TransientPlatformError, NotFoundError) as e:
            logger.warning(f"Could not list reactors of {key} on '{panel.section}': {e.message}")
            return

        for user_id in reactors:
            if user_id == self.gateway.self_user_id:
                continue
            try:
                role_ids = await self.gateway.member_role_ids(panel.guild_id, user_id)
                if role_ids is None or role.id in role_ids:
                    continue
                logger.info(f"Adding '{role.name}' to {user_id} (guild={panel.guild_id})")
                await self.gateway.grant_role(
                    panel.guild_id, user_id, role.id, reason=f"role chooser '{panel.section}'"
                )
            except (PlatformError, NotFoundError) as e:
                logger.warning(
                    f"Failed to grant '{role.name}' to {user_id} "
                    f"(guild={panel.guild_id}, channel={panel.channel_id}): {e.message}"
                )

    async def _revoke_reactors(
        self, panel: RoleChooserPanel, key: ReactionKey, role_id: int
    ) -> None:
        """Take *role_id* back from everyone who reacted with *key*, then drop the reaction."""
        if not panel.message_id:
            return
        try:
            reactors = await self.gateway.list_reactors(panel.channel_id, panel.message_id, key)
        except (TransientPlatformError, NotFoundError) as e:
            logger.warning(f"Could not list reactors of {key} on '{panel.section}': {e.message}")
            return

        for user_id in reactors:
            if user_id == self.gateway.self_user_id:
                continue
            try:
                role_ids = await self.gateway.member_role_ids(panel.guild_id, user_id)
                if role_ids is None or role_id not in role_ids:
                    continue
                await self.gateway.revoke_role(
                    panel.guild_id, user_id, role_id, reason=f"role chooser '{panel.section}'"
                )
            except (PlatformError, NotFoundError) as e:
                logger.warning(
                    f"Failed to revoke role {role_id} from {user_id} "
                    f"(guild={panel.guild_id}, channel={panel.channel_id}): {e.message}"
                )

        try:
            await self.gateway.clear_reaction(panel.channel_id, panel.message_id, key)
        except (TransientPlatformError, NotFoundError) as e:
            logger.warning(f"Could not clear {key} on '{panel.section}': {e.message}")

    async def _delete_panel(self, panel: RoleChooserPanel) -> None:
        self.watchers.cancel(panel.panel_id)
        await self.repo.delete_panel(panel.panel_id)
        if panel.message_id:
            try:
                await self.gateway.delete_message(panel.channel_id, panel.message_id)
            except PlatformError as e:
                logger.warning(
                    f"Could not delete message of section '{panel.section}' "
                    f"(guild={panel.guild_id}, channel={panel.channel_id}): {e.message}"
                )

    # ==================== Reconcile ====================

    async def reconcile(self, panel: RoleChooserPanel) -> MessageSnapshot:
        """Bring one panel's message, reactions and grants in line with the store."""
        async with self._channel_lock(panel.guild_id, panel.channel_id):
            return await self._reconcile(panel)

    async def _reconcile(self, panel: RoleChooserPanel) -> MessageSnapshot:
        await self._require_channel(panel.guild_id, panel.channel_id)
        message = await self._resolve_message(panel)
        entries = await self._effective_mapping(panel)

        content = render_panel(
            panel.section, entries, suppress_notifications=message.suppress_notifications
        )
        if message.content != content:
            message = await self.gateway.edit_message(panel.channel_id, message.id, content)

        mapped = {key for key, _ in entries}
        for key in message.reactions:
            if key in mapped:
                continue
            try:
                await self.gateway.clear_reaction(panel.channel_id, message.id, key)
            except (TransientPlatformError, NotFoundError) as e:
                logger.warning(f"Could not clear {key} on '{panel.section}': {e.message}")

        for key, role in entries:
            try:
                await self.gateway.add_reaction(panel.channel_id, message.id, key)
            except (TransientPlatformError, NotFoundError) as e:
                logger.warning(f"Could not add {key} on '{panel.section}': {e.message}")
            await self._grant_reactors(panel, message.id, key, role)

        self.watchers.start_watcher(
            panel.panel_id,
            message.id,
            panel.guild_id,
            {key: role.id for key, role in entries},
        )
        return message

    async def reconcile_guild(self, guild_id: int) -> GuildReconcileReport:
        """Reconcile every panel of a guild; one failing panel never stops the rest."""
        report = GuildReconcileReport(guild_id)
        panels = await self.repo.list_all_panels(guild_id)

        for channel_id in sorted({p.channel_id for p in panels}):
            capability = await self.gateway.resolve_channel(
                guild_id, channel_id, required_permissions=REQUIRED_PERMISSIONS
            )
            if isinstance(capability, Supported) and capability.missing_permissions:
                missing = capability.missing_permissions
                report.missing_permissions[channel_id] = missing
                logger.error(
                    f"Missing permissions in guild {guild_id} #{capability.name}: "
                    f"{', '.join(missing)}"
                )

        for panel in panels:
            logger.info(f"Processing role chooser '{panel.section}' (guild={guild_id})")
            try:
                await self.reconcile(panel)
                report.reconciled += 1
            except BotError as e:
                report.failed.append(panel.section)
                logger.error(
                    f"Role chooser '{panel.section}' failed "
                    f"(guild={guild_id}, channel={panel.channel_id}): {e}"
                )
            except Exception:
                report.failed.append(panel.section)
                logger.exception(
                    f"Unexpected error reconciling '{panel.section}' "
                    f"(guild={guild_id}, channel={panel.channel_id})"
                )
        return report

    # ==================== Mutations ====================

    async def add_mapping(
        self,
        guild_id: int,
        channel_id: int,
        section: str,
        key: ReactionKey,
        role_id: int,
    ) -> RoleChooserPanel:
        async with self._channel_lock(guild_id, channel_id):
            await self._require_channel(guild_id, channel_id)
            if await self.gateway.get_role(guild_id, role_id) is None:
                raise ValidationError("that role does not exist")

            panel = await self.repo.find_panel(guild_id, channel_id, section)
            if panel is not None:
                for mapping in await self.repo.list_mapping(panel.panel_id):
                    if _stored_key(mapping) == key:
                        raise ValidationError(f"{key} is already mapped in section {section}")
            else:
                panel = await self.repo.upsert_panel(guild_id, channel_id, section)

            self.watchers.cancel(panel.panel_id)
            await self.repo.upsert_mapping(panel.panel_id, str(key), role_id)
            await self._reconcile(panel)
            return panel

    async def remove_mapping(
        self, guild_id: int, channel_id: int, section: str, key: ReactionKey
    ) -> bool:
        """Remove one mapping. Returns True when the emptied panel was deleted."""
        async with self._channel_lock(guild_id, channel_id):
            panel = await self.repo.find_panel(guild_id, channel_id, section)
            if panel is None:
                raise ValidationError(f"no role selection section {section}")

            mappings = await self.repo.list_mapping(panel.panel_id)
            if not mappings:
                await self._delete_panel(panel)
                return True

            removed = next((m for m in mappings if _stored_key(m) == key), None)
            if removed is None:
                raise ValidationError(f"no role exists for {key}")

            self.watchers.cancel(panel.panel_id)
            await self.repo.delete_mapping(panel.panel_id, removed.reaction)
            await self._revoke_reactors(panel, key, removed.role_id)
            if len(mappings) == 1:
                await self._delete_panel(panel)
                return True

            await self._reconcile(panel)
            return False

    async def rename_section(
        self, guild_id: int, channel_id: int, old_section: str, new_section: str
    ) -> RoleChooserPanel:
        async with self._channel_lock(guild_id, channel_id):
            if await self.repo.find_panel(guild_id, channel_id, new_section) is not None:
                raise ValidationError(f"section {new_section} already exists")
            panel = await self.repo.find_panel(guild_id, channel_id, old_section)
            if panel is None:
                raise ValidationError(f"no role selection section {old_section}")

            if not await self.repo.rename_panel_section(panel.panel_id, new_section):
                raise NotFoundError(f"section {old_section} was deleted meanwhile")
            self.watchers.cancel(panel.panel_id)
            panel.section = new_section
            await self._reconcile(panel)
            return panel

    # ==================== Queries ====================

    async def list_panels(
        self, guild_id: int, channel_id: int | None = None
    ) -> list[PanelSummary]:
        if channel_id is None:
            panels = await self.repo.list_all_panels(guild_id)
        else:
            panels = await self.repo.list_panels_in_channel(guild_id, channel_id)

        summaries = []
        for panel in panels:
            lines = []
            for mapping in await self.repo.list_mapping(panel.panel_id):
                role = await self.gateway.get_role(guild_id, mapping.role_id)
                lines.append(f"{mapping.reaction} {role.mention if role else '(deleted role)'}")
            jump_url = None
            if panel.message_id:
                jump_url = (
                    f"https://discord.com/channels/{guild_id}/{panel.channel_id}/{panel.message_id}"
                )
            summaries.append(
                PanelSummary(panel.section, panel.channel_id, panel.description, lines, jump_url)
            )
        return summaries
