"""Live reaction watchers: grant / revoke roles as members react."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from shared.errors import BotError

from discord_bot.gateway import PlatformGateway, ReactionEvent, ReactionKey, ReactionSubscription

logger = logging.getLogger(__name__)


class ReactionWatcherRegistry:
    """At most one reaction subscription per panel.

    Each watcher acts on the mapping captured when it started; any mutation
    of the panel replaces it.
    """

    def __init__(self, gateway: PlatformGateway) -> None:
        self._gateway = gateway
        self._handles: dict[int, ReactionSubscription] = {}

    def start_watcher(
        self,
        panel_id: int,
        message_id: int,
        guild_id: int,
        snapshot: Mapping[ReactionKey, int],
    ) -> ReactionSubscription:
        """Replace the panel's watcher with one bound to *snapshot*."""
        # No await between cancel and subscribe: the old handle is gone
        # before the new one can see any event
        self.cancel(panel_id)
        roles = dict(snapshot)

        async def handle(event: ReactionEvent) -> None:
            await self._on_event(panel_id, guild_id, roles, event)

        subscription = self._gateway.subscribe_reaction_events(message_id, handle)
        self._handles[panel_id] = subscription
        logger.debug(f"Watching panel {panel_id} (message {message_id}, {len(roles)} mappings)")
        return subscription

    def cancel(self, panel_id: int) -> bool:
        subscription = self._handles.pop(panel_id, None)
        if subscription is None:
            return False
        subscription.cancel()
        return True

    def cancel_all(self) -> None:
        for panel_id in list(self._handles):
            self.cancel(panel_id)

    def get(self, panel_id: int) -> ReactionSubscription | None:
        return self._handles.get(panel_id)

    def __len__(self) -> int:
        return len(self._handles)

    async def _on_event(
        self,
        panel_id: int,
        guild_id: int,
        roles: Mapping[ReactionKey, int],
        event: ReactionEvent,
    ) -> None:
        if event.user_id == self._gateway.self_user_id:
            return
        role_id = roles.get(event.key)
        if role_id is None:
            return

        try:
            if event.added:
                await self._gateway.grant_role(
                    guild_id, event.user_id, role_id, reason=f"role chooser panel {panel_id}"
                )
            else:
                await self._gateway.revoke_role(
                    guild_id, event.user_id, role_id, reason=f"role chooser panel {panel_id}"
                )
        except BotError as e:
            action = "grant" if event.added else "revoke"
            logger.warning(
                f"Could not {action} role {role_id} for user {event.user_id} "
                f"(guild={guild_id}, channel={event.channel_id}): {e.message}"
            )
