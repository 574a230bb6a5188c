"""Platform gateway: the narrow set of Discord operations the reconcilers use.

The reconcilers only ever see plain snapshots and handles defined here,
never discord.py objects, so they can be driven by an in-memory fake.
``DiscordGateway`` translates discord.py exceptions into the shared error
taxonomy.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

import aiohttp
import discord

from shared.errors import (
    BotError,
    FatalPreconditionError,
    NotFoundError,
    TransientPlatformError,
    ValidationError,
)

if TYPE_CHECKING:
    from discord.ext import commands

logger = logging.getLogger(__name__)

_CUSTOM_EMOJI_RE = re.compile(r"^<(a?):([A-Za-z0-9_~]{1,32}):(\d{15,21})>$")


# ==================== Value types ====================


@dataclass(frozen=True, eq=False)
class ReactionKey:
    """Normalized emoji used as a reaction.

    Two keys are equal when their custom emoji ids match, or, for unicode
    emoji, when the characters match. Name and animation flag of a custom
    emoji do not take part in equality.
    """

    name: str
    id: int | None = None
    animated: bool = False

    @property
    def is_custom(self) -> bool:
        return self.id is not None

    @property
    def identity(self) -> int | str:
        return self.id if self.id is not None else self.name

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReactionKey):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self) -> int:
        return hash(self.identity)

    def __str__(self) -> str:
        if self.id is None:
            return self.name
        prefix = "a" if self.animated else ""
        return f"<{prefix}:{self.name}:{self.id}>"

    @classmethod
    def parse(cls, text: str) -> ReactionKey:
        """Parse the stored / user supplied text form of an emoji."""
        text = text.strip()
        if not text:
            raise ValidationError("emoji must not be empty")
        if match := _CUSTOM_EMOJI_RE.match(text):
            animated, name, emoji_id = match.groups()
            return cls(name=name, id=int(emoji_id), animated=bool(animated))
        if text.startswith("<") or " " in text:
            raise ValidationError(f"`{text}` is not a valid emoji")
        return cls(name=text)

    @classmethod
    def from_emoji(cls, emoji: discord.PartialEmoji | discord.Emoji | str) -> ReactionKey:
        if isinstance(emoji, str):
            return cls.parse(emoji)
        return cls(name=emoji.name or "_", id=emoji.id, animated=emoji.animated)

    def to_partial_emoji(self) -> discord.PartialEmoji:
        return discord.PartialEmoji(name=self.name, id=self.id, animated=self.animated)


@dataclass(frozen=True)
class EmbedSpec:
    title: str | None = None
    url: str | None = None
    timestamp: datetime | None = None
    footer_text: str | None = None
    footer_icon_url: str | None = None
    author_name: str | None = None
    author_url: str | None = None
    author_icon_url: str | None = None

    def to_discord(self) -> discord.Embed:
        embed = discord.Embed(title=self.title, url=self.url, timestamp=self.timestamp)
        if self.author_name:
            embed.set_author(name=self.author_name, url=self.author_url, icon_url=self.author_icon_url)
        if self.footer_text:
            embed.set_footer(text=self.footer_text, icon_url=self.footer_icon_url)
        return embed

    @classmethod
    def from_discord(cls, embed: discord.Embed) -> EmbedSpec:
        return cls(
            title=embed.title,
            url=embed.url,
            timestamp=embed.timestamp,
            footer_text=embed.footer.text,
            footer_icon_url=embed.footer.icon_url,
            author_name=embed.author.name,
            author_url=embed.author.url,
            author_icon_url=embed.author.icon_url,
        )


@dataclass(frozen=True)
class MessageSnapshot:
    id: int
    channel_id: int
    content: str
    embeds: tuple[EmbedSpec, ...] = ()
    reactions: tuple[ReactionKey, ...] = ()
    suppress_notifications: bool = False
    jump_url: str = ""


@dataclass(frozen=True)
class RoleRef:
    id: int
    name: str

    @property
    def mention(self) -> str:
        return f"<@&{self.id}>"


@dataclass(frozen=True)
class WebhookHandle:
    """Capability to post into one channel. The token never reaches repr/logs."""

    id: int
    channel_id: int
    name: str
    token: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class Supported:
    channel_id: int
    name: str
    is_news: bool = False
    missing_permissions: tuple[str, ...] = ()


@dataclass(frozen=True)
class Unsupported:
    channel_id: int
    reason: str


ChannelCapability = Supported | Unsupported


# ==================== Reaction events ====================


@dataclass(frozen=True)
class ReactionEvent:
    guild_id: int | None
    channel_id: int
    message_id: int
    user_id: int
    key: ReactionKey
    added: bool


ReactionHandler = Callable[[ReactionEvent], Awaitable[None]]


class ReactionSubscription:
    """Queue + consumer task for one message's reaction events."""

    def __init__(self, hub: ReactionEventHub, message_id: int, handler: ReactionHandler) -> None:
        self.message_id = message_id
        self._hub = hub
        self._handler = handler
        self._queue: asyncio.Queue[ReactionEvent] = asyncio.Queue()
        self._cancelled = False
        self._task = asyncio.create_task(self._consume(), name=f"reactions-{message_id}")

    @property
    def active(self) -> bool:
        return not self._cancelled

    def push(self, event: ReactionEvent) -> None:
        if not self._cancelled:
            self._queue.put_nowait(event)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._handler(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    f"Reaction handler failed for message {self.message_id} "
                    f"(guild={event.guild_id}, channel={event.channel_id})"
                )
            finally:
                self._queue.task_done()

    def cancel(self) -> None:
        """Stop receiving events. Never blocks; pending events are dropped."""
        if self._cancelled:
            return
        self._cancelled = True
        self._hub._remove(self)
        self._task.cancel()

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()


class ReactionEventHub:
    """Fans raw reaction events out to per-message subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: dict[int, list[ReactionSubscription]] = defaultdict(list)

    def subscribe(self, message_id: int, handler: ReactionHandler) -> ReactionSubscription:
        subscription = ReactionSubscription(self, message_id, handler)
        self._subscriptions[message_id].append(subscription)
        return subscription

    def _remove(self, subscription: ReactionSubscription) -> None:
        subs = self._subscriptions.get(subscription.message_id)
        if not subs:
            return
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            del self._subscriptions[subscription.message_id]

    def dispatch(self, event: ReactionEvent) -> int:
        """Queue *event* for every subscription on its message. Returns the count."""
        subs = list(self._subscriptions.get(event.message_id, ()))
        for subscription in subs:
            subscription.push(event)
        return len(subs)

    def active_count(self, message_id: int | None = None) -> int:
        if message_id is not None:
            return len(self._subscriptions.get(message_id, ()))
        return sum(len(subs) for subs in self._subscriptions.values())


# ==================== Gateway protocol ====================


class PlatformGateway(Protocol):
    @property
    def self_user_id(self) -> int: ...

    async def resolve_channel(
        self,
        guild_id: int,
        channel_id: int,
        *,
        allow_news: bool = False,
        required_permissions: Sequence[str] = (),
    ) -> ChannelCapability: ...

    async def fetch_message(self, channel_id: int, message_id: int) -> MessageSnapshot | None: ...

    async def find_webhook_message(
        self, channel_id: int, webhook_id: int, username: str, limit: int = 100
    ) -> MessageSnapshot | None: ...

    async def create_message(
        self, channel_id: int, content: str, *, silent: bool = False
    ) -> MessageSnapshot: ...

    async def edit_message(self, channel_id: int, message_id: int, content: str) -> MessageSnapshot: ...

    async def delete_message(self, channel_id: int, message_id: int) -> bool: ...

    async def add_reaction(self, channel_id: int, message_id: int, key: ReactionKey) -> None: ...

    async def clear_reaction(self, channel_id: int, message_id: int, key: ReactionKey) -> None: ...

    async def list_reactors(self, channel_id: int, message_id: int, key: ReactionKey) -> list[int]: ...

    async def get_role(self, guild_id: int, role_id: int) -> RoleRef | None: ...

    async def member_role_ids(self, guild_id: int, user_id: int) -> set[int] | None: ...

    async def grant_role(self, guild_id: int, user_id: int, role_id: int, reason: str) -> None: ...

    async def revoke_role(self, guild_id: int, user_id: int, role_id: int, reason: str) -> None: ...

    async def list_webhooks(self, channel_id: int) -> list[WebhookHandle]: ...

    async def create_webhook(
        self, channel_id: int, name: str, avatar: bytes | None = None
    ) -> WebhookHandle: ...

    async def execute_webhook(
        self,
        handle: WebhookHandle,
        content: str,
        embed: EmbedSpec | None,
        username: str | None = None,
        avatar_url: str | None = None,
    ) -> MessageSnapshot: ...

    async def edit_webhook_message(
        self, handle: WebhookHandle, message_id: int, content: str, embed: EmbedSpec | None
    ) -> MessageSnapshot: ...

    async def publish_message(self, channel_id: int, message_id: int) -> None: ...

    async def set_presence(self, watching: str | None) -> None: ...

    def subscribe_reaction_events(
        self, message_id: int, handler: ReactionHandler
    ) -> ReactionSubscription: ...


# ==================== discord.py implementation ====================


@contextmanager
def _translate(
    action: str, *, guild_id: int | None = None, channel_id: int | None = None
) -> Iterator[None]:
    """Map discord.py / transport failures onto the shared error taxonomy."""
    try:
        yield
    except BotError:
        raise
    except discord.NotFound as e:
        raise NotFoundError(f"{action}: not found") from e
    except discord.Forbidden as e:
        raise FatalPreconditionError(
            f"{action}: missing permissions", guild_id=guild_id, channel_id=channel_id
        ) from e
    except (discord.HTTPException, asyncio.TimeoutError, aiohttp.ClientError) as e:
        raise TransientPlatformError(f"{action} failed: {e}") from e


def _snapshot(message: discord.Message | discord.WebhookMessage) -> MessageSnapshot:
    return MessageSnapshot(
        id=message.id,
        channel_id=message.channel.id,
        content=message.content,
        embeds=tuple(EmbedSpec.from_discord(e) for e in message.embeds),
        reactions=tuple(ReactionKey.from_emoji(r.emoji) for r in message.reactions),
        suppress_notifications=message.flags.suppress_notifications,
        jump_url=message.jump_url,
    )


class DiscordGateway:
    """``PlatformGateway`` backed by a running discord.py bot."""

    def __init__(self, bot: commands.Bot, hub: ReactionEventHub | None = None) -> None:
        self._bot = bot
        self.hub = hub or ReactionEventHub()

    @property
    def self_user_id(self) -> int:
        if self._bot.user is None:
            raise NotFoundError("bot user not ready")
        return self._bot.user.id

    # --- helpers ---

    async def _text_channel(self, channel_id: int) -> discord.TextChannel | discord.Thread:
        channel = self._bot.get_channel(channel_id)
        if channel is None:
            with _translate("fetch channel", channel_id=channel_id):
                channel = await self._bot.fetch_channel(channel_id)
        if not isinstance(channel, (discord.TextChannel, discord.Thread)):
            guild = getattr(channel, "guild", None)
            raise FatalPreconditionError(
                "channel is not a text channel",
                guild_id=guild.id if guild else None,
                channel_id=channel_id,
            )
        return channel

    async def _member(self, guild_id: int, user_id: int) -> discord.Member | None:
        guild = self._bot.get_guild(guild_id)
        if guild is None:
            raise NotFoundError(f"guild {guild_id} is not available")
        if member := guild.get_member(user_id):
            return member
        try:
            with _translate("fetch member", guild_id=guild_id):
                return await guild.fetch_member(user_id)
        except NotFoundError:
            return None

    def _webhook(self, handle: WebhookHandle) -> discord.Webhook:
        if not handle.token:
            raise FatalPreconditionError(
                f"webhook {handle.name} has no token", channel_id=handle.channel_id
            )
        return discord.Webhook.partial(handle.id, handle.token, client=self._bot)

    # --- channels ---

    async def resolve_channel(
        self,
        guild_id: int,
        channel_id: int,
        *,
        allow_news: bool = False,
        required_permissions: Sequence[str] = (),
    ) -> ChannelCapability:
        guild = self._bot.get_guild(guild_id)
        if guild is None:
            return Unsupported(channel_id, "guild is not available")
        channel = guild.get_channel(channel_id)
        if channel is None:
            return Unsupported(channel_id, "channel does not exist")
        if not isinstance(channel, discord.TextChannel):
            return Unsupported(channel_id, f"{channel.type} channels are not supported")
        is_news = channel.is_news()
        if is_news and not allow_news:
            return Unsupported(channel_id, "announcement channels are not supported")

        permissions = channel.permissions_for(guild.me)
        missing = tuple(p for p in required_permissions if not getattr(permissions, p, False))
        return Supported(channel_id, channel.name, is_news=is_news, missing_permissions=missing)

    # --- messages ---

    async def fetch_message(self, channel_id: int, message_id: int) -> MessageSnapshot | None:
        channel = await self._text_channel(channel_id)
        try:
            with _translate("fetch message", guild_id=channel.guild.id, channel_id=channel_id):
                return _snapshot(await channel.fetch_message(message_id))
        except NotFoundError:
            return None

    async def find_webhook_message(
        self, channel_id: int, webhook_id: int, username: str, limit: int = 100
    ) -> MessageSnapshot | None:
        """Newest of the last *limit* messages *webhook_id* posted as *username*."""
        channel = await self._text_channel(channel_id)
        with _translate("read message history", guild_id=channel.guild.id, channel_id=channel_id):
            async for message in channel.history(limit=limit):
                if message.webhook_id == webhook_id and message.author.name == username:
                    return _snapshot(message)
        return None

    async def create_message(
        self, channel_id: int, content: str, *, silent: bool = False
    ) -> MessageSnapshot:
        channel = await self._text_channel(channel_id)
        with _translate("send message", guild_id=channel.guild.id, channel_id=channel_id):
            message = await channel.send(
                content,
                silent=silent,
                allowed_mentions=discord.AllowedMentions.none(),
            )
        return _snapshot(message)

    async def edit_message(self, channel_id: int, message_id: int, content: str) -> MessageSnapshot:
        channel = await self._text_channel(channel_id)
        with _translate("edit message", guild_id=channel.guild.id, channel_id=channel_id):
            message = await channel.get_partial_message(message_id).edit(content=content)
        return _snapshot(message)

    async def delete_message(self, channel_id: int, message_id: int) -> bool:
        channel = await self._text_channel(channel_id)
        try:
            with _translate("delete message", guild_id=channel.guild.id, channel_id=channel_id):
                await channel.get_partial_message(message_id).delete()
        except NotFoundError:
            return False
        return True

    async def publish_message(self, channel_id: int, message_id: int) -> None:
        channel = await self._text_channel(channel_id)
        with _translate("publish message", guild_id=channel.guild.id, channel_id=channel_id):
            await channel.get_partial_message(message_id).publish()

    # --- reactions ---

    async def add_reaction(self, channel_id: int, message_id: int, key: ReactionKey) -> None:
        channel = await self._text_channel(channel_id)
        with _translate("add reaction", guild_id=channel.guild.id, channel_id=channel_id):
            await channel.get_partial_message(message_id).add_reaction(key.to_partial_emoji())

    async def clear_reaction(self, channel_id: int, message_id: int, key: ReactionKey) -> None:
        channel = await self._text_channel(channel_id)
        with _translate("clear reaction", guild_id=channel.guild.id, channel_id=channel_id):
            await channel.get_partial_message(message_id).clear_reaction(key.to_partial_emoji())

    async def list_reactors(self, channel_id: int, message_id: int, key: ReactionKey) -> list[int]:
        channel = await self._text_channel(channel_id)
        with _translate("list reactors", guild_id=channel.guild.id, channel_id=channel_id):
            message = await channel.fetch_message(message_id)
            for reaction in message.reactions:
                if ReactionKey.from_emoji(reaction.emoji) == key:
                    return [user.id async for user in reaction.users(limit=None)]
        return []

    # --- roles ---

    async def get_role(self, guild_id: int, role_id: int) -> RoleRef | None:
        guild = self._bot.get_guild(guild_id)
        role = guild.get_role(role_id) if guild else None
        return RoleRef(role.id, role.name) if role else None

    async def member_role_ids(self, guild_id: int, user_id: int) -> set[int] | None:
        member = await self._member(guild_id, user_id)
        return {role.id for role in member.roles} if member else None

    async def grant_role(self, guild_id: int, user_id: int, role_id: int, reason: str) -> None:
        member = await self._member(guild_id, user_id)
        if member is None:
            raise NotFoundError(f"user {user_id} is not a member")
        with _translate("grant role", guild_id=guild_id):
            await member.add_roles(discord.Object(id=role_id), reason=reason)

    async def revoke_role(self, guild_id: int, user_id: int, role_id: int, reason: str) -> None:
        member = await self._member(guild_id, user_id)
        if member is None:
            raise NotFoundError(f"user {user_id} is not a member")
        with _translate("revoke role", guild_id=guild_id):
            await member.remove_roles(discord.Object(id=role_id), reason=reason)

    # --- webhooks ---

    async def list_webhooks(self, channel_id: int) -> list[WebhookHandle]:
        channel = await self._text_channel(channel_id)
        if isinstance(channel, discord.Thread):
            raise FatalPreconditionError("threads cannot own webhooks", channel_id=channel_id)
        with _translate("list webhooks", guild_id=channel.guild.id, channel_id=channel_id):
            hooks = await channel.webhooks()
        return [
            WebhookHandle(h.id, h.channel_id or channel_id, h.name or "", h.token)
            for h in hooks
        ]

    async def create_webhook(
        self, channel_id: int, name: str, avatar: bytes | None = None
    ) -> WebhookHandle:
        channel = await self._text_channel(channel_id)
        if isinstance(channel, discord.Thread):
            raise FatalPreconditionError("threads cannot own webhooks", channel_id=channel_id)
        with _translate("create webhook", guild_id=channel.guild.id, channel_id=channel_id):
            hook = await channel.create_webhook(name=name, avatar=avatar)
        return WebhookHandle(hook.id, hook.channel_id or channel_id, hook.name or name, hook.token)

    async def execute_webhook(
        self,
        handle: WebhookHandle,
        content: str,
        embed: EmbedSpec | None,
        username: str | None = None,
        avatar_url: str | None = None,
    ) -> MessageSnapshot:
        webhook = self._webhook(handle)
        with _translate("execute webhook", channel_id=handle.channel_id):
            message = await webhook.send(
                content=content,
                embeds=[embed.to_discord()] if embed else [],
                username=username or discord.utils.MISSING,
                avatar_url=avatar_url or discord.utils.MISSING,
                wait=True,
            )
        return _snapshot(message)

    async def edit_webhook_message(
        self, handle: WebhookHandle, message_id: int, content: str, embed: EmbedSpec | None
    ) -> MessageSnapshot:
        webhook = self._webhook(handle)
        with _translate("edit webhook message", channel_id=handle.channel_id):
            message = await webhook.edit_message(
                message_id,
                content=content,
                embeds=[embed.to_discord()] if embed else [],
            )
        return _snapshot(message)

    # --- presence / events ---

    async def set_presence(self, watching: str | None) -> None:
        with _translate("change presence"):
            if watching:
                await self._bot.change_presence(
                    status=discord.Status.online,
                    activity=discord.Activity(type=discord.ActivityType.watching, name=watching),
                )
            else:
                await self._bot.change_presence(status=discord.Status.idle, activity=None)

    def subscribe_reaction_events(
        self, message_id: int, handler: ReactionHandler
    ) -> ReactionSubscription:
        return self.hub.subscribe(message_id, handler)

    def dispatch_raw_reaction(self, payload: discord.RawReactionActionEvent) -> int:
        """Forward a gateway reaction event to the matching subscriptions."""
        event = ReactionEvent(
            guild_id=payload.guild_id,
            channel_id=payload.channel_id,
            message_id=payload.message_id,
            user_id=payload.user_id,
            key=ReactionKey.from_emoji(payload.emoji),
            added=payload.event_type == "REACTION_ADD",
        )
        return self.hub.dispatch(event)
