"""Per-channel webhook cache for status cards."""

from __future__ import annotations

import logging

from shared.cache import KeyedLocks
from shared.errors import FatalPreconditionError

from discord_bot.gateway import PlatformGateway, WebhookHandle

logger = logging.getLogger(__name__)

WEBHOOK_NAME = "twitch-notifications"


class WebhookCache:
    """Lazily finds or creates one named webhook per channel.

    Creation is single-flight per channel: concurrent misses for the same
    channel result in exactly one upstream create.
    """

    def __init__(
        self,
        gateway: PlatformGateway,
        name: str = WEBHOOK_NAME,
        avatar: bytes | None = None,
    ) -> None:
        self.gateway = gateway
        self.name = name
        self.avatar = avatar
        self._handles: dict[int, WebhookHandle] = {}
        self._locks = KeyedLocks()

    async def get(self, channel_id: int) -> WebhookHandle:
        if handle := self._handles.get(channel_id):
            return handle

        async with self._locks.get(channel_id):
            if handle := self._handles.get(channel_id):
                return handle

            handle = await self._find_or_create(channel_id)
            if handle.channel_id != channel_id:
                raise FatalPreconditionError(
                    f"webhook {handle.id} belongs to channel {handle.channel_id}",
                    channel_id=channel_id,
                )
            self._handles[channel_id] = handle
            return handle

    async def _find_or_create(self, channel_id: int) -> WebhookHandle:
        for hook in await self.gateway.list_webhooks(channel_id):
            if hook.name == self.name and hook.token and hook.channel_id == channel_id:
                logger.debug(f"Reusing webhook {hook.id} in channel {channel_id}")
                return hook

        logger.info(f"Creating webhook '{self.name}' in channel {channel_id}")
        return await self.gateway.create_webhook(channel_id, self.name, self.avatar)

    def invalidate(self, channel_id: int) -> None:
        self._handles.pop(channel_id, None)

    def __contains__(self, channel_id: int) -> bool:
        return channel_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)
