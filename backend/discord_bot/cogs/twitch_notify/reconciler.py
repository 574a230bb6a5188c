"""Keeps one status card per watched streamer and channel in sync with Twitch.

One ``check_all`` call is one poll tick:

1. load every watch of the given guilds
2. get the app token (no token, no work)
3. batch-fetch streams, users, games and channel info
4. update the bot presence
5. walk guilds in batches of ``GUILD_BATCH_SIZE``; each guild's watches run
   sequentially and a failing watch or guild never stops its siblings
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from shared.errors import (
    BotError,
    CredentialUnavailable,
    FatalPreconditionError,
    NotFoundError,
    PlatformError,
    TransientPlatformError,
    ValidationError,
)
from shared.models.stream_watch import MessageStatus, StreamWatch
from shared.repositories.stream_watch import StreamWatchRepository
from shared.twitch_api import (
    TwitchChannelInfo,
    TwitchGame,
    TwitchStatusClient,
    TwitchStream,
    TwitchUser,
    TwitchVideo,
)

from discord_bot.gateway import (
    EmbedSpec,
    MessageSnapshot,
    PlatformGateway,
    Unsupported,
    WebhookHandle,
)

from .webhooks import WebhookCache

logger = logging.getLogger(__name__)

GUILD_BATCH_SIZE = 10

WEBHOOK_PERMISSIONS = ("view_channel", "manage_webhooks", "read_message_history")


class Transition(Enum):
    CREATE_LIVE = "create_live"
    EDIT_LIVE = "edit_live"
    POST_OFFLINE = "post_offline"
    NOOP = "noop"


def plan_transition(prior: MessageStatus | None, live: bool) -> Transition:
    """Pick the action for a watch given its card's status and the stream state."""
    if live:
        return Transition.EDIT_LIVE if prior is MessageStatus.LIVE else Transition.CREATE_LIVE
    if prior is MessageStatus.OFFLINE:
        return Transition.NOOP
    return Transition.POST_OFFLINE


@dataclass
class TickReport:
    skipped: str | None = None
    guilds: int = 0
    watches: int = 0
    live: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def summary(self) -> str:
        if self.skipped:
            return f"skipped: {self.skipped}"
        text = f"{self.watches} watches in {self.guilds} guilds, {self.live} live"
        if self.failures:
            text += f", {len(self.failures)} failed"
        return text


@dataclass
class TwitchState:
    """Upstream data fetched once per tick, keyed by lowercase login / name."""

    streams: dict[str, TwitchStream]
    users: dict[str, TwitchUser]
    games: dict[str, TwitchGame]
    channels: dict[str, TwitchChannelInfo]


@dataclass
class ChannelTarget:
    webhook: WebhookHandle
    is_news: bool = False


# ==================== Card content ====================


def live_content(login: str, role_id: int) -> str:
    return f"<https://twitch.tv/{login}> \n <@&{role_id}>"


def live_embed(user: TwitchUser, stream: TwitchStream, game: TwitchGame | None) -> EmbedSpec:
    if game is not None:
        footer_text, footer_icon = game.name, game.box_art(16, 16)
    else:
        footer_text, footer_icon = stream.game_name, None
    return EmbedSpec(
        title=stream.title,
        url=user.channel_url,
        timestamp=stream.started_at,
        footer_text=footer_text or None,
        footer_icon_url=footer_icon,
        author_name=user.login,
        author_url=user.channel_url,
        author_icon_url=user.profile_image_url or None,
    )


def offline_content(
    login: str, channel: TwitchChannelInfo | None, vod: TwitchVideo | None
) -> str:
    game_name = channel.game_name if channel else ""
    if vod is not None:
        body = f"<{vod.url}>\n**{vod.title}**\n{game_name}"
    else:
        title = channel.title if channel else ""
        body = f"_VOD url not available_\n**{title}**\n{game_name}"
    return f"<https://twitch.tv/{login}>\n{body}"


def presence_text(streams: dict[str, TwitchStream]) -> str | None:
    if not streams:
        return None
    name = streams[min(streams)].user_name
    if len(streams) == 1:
        return name
    return f"{name} and {len(streams) - 1} More"


def _card_changed(message: MessageSnapshot, content: str, embed: EmbedSpec) -> bool:
    if message.content != content or not message.embeds:
        return True
    old = message.embeds[0]
    return (
        old.title != embed.title
        or old.footer_text != embed.footer_text
        or old.timestamp != embed.timestamp
    )


def card_status(message: MessageSnapshot, role_id: int) -> MessageStatus:
    """Live cards mention the role, offline cards never do."""
    if f"<@&{role_id}>" in message.content:
        return MessageStatus.LIVE
    return MessageStatus.OFFLINE


# ==================== Reconciler ====================


class NotificationReconciler:
    def __init__(
        self,
        repo: StreamWatchRepository,
        gateway: PlatformGateway,
        twitch: TwitchStatusClient,
        webhooks: WebhookCache,
    ) -> None:
        self.repo = repo
        self.gateway = gateway
        self.twitch = twitch
        self.webhooks = webhooks
        self._presence: str | None | object = object()

    # --- tick ---

    async def check_all(self, guild_ids: Iterable[int]) -> TickReport:
        """Run one poll tick over *guild_ids*."""
        if not self.twitch.enabled:
            return TickReport(skipped="twitch credentials not configured")

        token = await self.twitch.get_token()
        if token is None:
            logger.warning("Skipping tick: no Twitch app token")
            return TickReport(skipped="twitch token unavailable")

        watches = await self.repo.list_watches_for_guilds(list(guild_ids))
        by_guild: dict[int, list[StreamWatch]] = defaultdict(list)
        for watch in watches:
            by_guild[watch.guild_id].append(watch)

        state = await self._fetch_state(watches)
        if state is None:
            return TickReport(skipped="twitch api unavailable")

        await self._update_presence(state.streams)

        report = TickReport(guilds=len(by_guild), live=len(state.streams))
        if not watches:
            return report

        targets = await self._resolve_targets(by_guild, report)

        items = list(by_guild.items())
        for start in range(0, len(items), GUILD_BATCH_SIZE):
            batch = items[start : start + GUILD_BATCH_SIZE]
            results = await asyncio.gather(
                *(self._check_guild(gid, ws, state, targets, report) for gid, ws in batch),
                return_exceptions=True,
            )
            for (guild_id, _), result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error(f"Twitch check for guild {guild_id} failed: {result!r}")
                    report.failures.append(f"guild {guild_id}: {result}")
        return report

    async def _fetch_state(self, watches: list[StreamWatch]) -> TwitchState | None:
        logins = sorted({w.streamer_login for w in watches})
        streams = await self.twitch.get_streams(logins)
        users = await self.twitch.get_users(logins)
        if streams is None or users is None:
            return None
        games = await self.twitch.get_games({s.game_name for s in streams.values() if s.game_name})
        channels = await self.twitch.get_channel_info([u.id for u in users.values()])
        if games is None or channels is None:
            return None
        return TwitchState(streams, users, games, channels)

    async def _update_presence(self, streams: dict[str, TwitchStream]) -> None:
        text = presence_text(streams)
        if text == self._presence:
            return
        try:
            await self.gateway.set_presence(text)
            self._presence = text
        except PlatformError as e:
            logger.warning(f"Could not update presence: {e.message}")

    async def _resolve_targets(
        self, by_guild: dict[int, list[StreamWatch]], report: TickReport
    ) -> dict[int, ChannelTarget]:
        """One webhook per distinct channel. Failed channels are left out."""
        targets: dict[int, ChannelTarget] = {}
        for guild_id, watches in by_guild.items():
            for channel_id in sorted({w.channel_id for w in watches}):
                try:
                    targets[channel_id] = await self._target(guild_id, channel_id)
                except BotError as e:
                    logger.error(
                        f"No webhook for guild {guild_id} channel {channel_id}: {e.message}"
                    )
                    report.failures.append(f"channel {channel_id}: {e.message}")
        return targets

    async def _target(self, guild_id: int, channel_id: int) -> ChannelTarget:
        capability = await self.gateway.resolve_channel(guild_id, channel_id, allow_news=True)
        if isinstance(capability, Unsupported):
            raise FatalPreconditionError(
                capability.reason, guild_id=guild_id, channel_id=channel_id
            )
        webhook = await self.webhooks.get(channel_id)
        return ChannelTarget(webhook, is_news=capability.is_news)

    async def _check_guild(
        self,
        guild_id: int,
        watches: list[StreamWatch],
        state: TwitchState,
        targets: dict[int, ChannelTarget],
        report: TickReport,
    ) -> None:
        for watch in watches:
            target = targets.get(watch.channel_id)
            if target is None:
                continue
            try:
                await self.check_watch(watch, state, target)
                report.watches += 1
            except BotError as e:
                logger.error(
                    f"Twitch update for {watch.streamer_login} failed "
                    f"(guild={guild_id}, channel={watch.channel_id}): {e}"
                )
                report.failures.append(f"{watch.streamer_login}: {e.message}")
            except Exception as e:
                logger.exception(
                    f"Unexpected error updating {watch.streamer_login} "
                    f"(guild={guild_id}, channel={watch.channel_id})"
                )
                report.failures.append(f"{watch.streamer_login}: {type(e).__name__}")

    # --- one watch ---

    async def check_watch(
        self, watch: StreamWatch, state: TwitchState, target: ChannelTarget
    ) -> Transition:
        login = watch.streamer_login
        user = state.users.get(login)
        if user is None:
            raise NotFoundError(f"twitch user {login} does not exist")
        stream = state.streams.get(login)
        live = stream is not None

        prior = watch.message_status if watch.message_id else None
        if plan_transition(prior, live) is Transition.NOOP:
            return Transition.NOOP

        message = None
        if watch.message_id:
            message = await self.gateway.fetch_message(watch.channel_id, watch.message_id)
            if message is None:
                logger.info(f"Status card of {login} vanished (channel={watch.channel_id})")
                prior = None
        if message is None:
            message = await self._recover_card(watch, user, target)
            if message is not None:
                prior = card_status(message, watch.role_id)
                if plan_transition(prior, live) is Transition.NOOP:
                    return Transition.NOOP

        transition = plan_transition(prior, live)
        if stream is not None:
            game = state.games.get(stream.game_name.lower()) if stream.game_name else None
            content = live_content(login, watch.role_id)
            embed = live_embed(user, stream, game)
            if transition is Transition.EDIT_LIVE and message is not None:
                if not _card_changed(message, content, embed):
                    return Transition.NOOP
                try:
                    await self.gateway.edit_webhook_message(
                        target.webhook, message.id, content, embed
                    )
                    return transition
                except NotFoundError:
                    logger.info(f"Could not edit card of {login}, posting a new one")
            await self._post_live(watch, user, target, content, embed, replaces=message)
            return Transition.CREATE_LIVE

        vod = await self.twitch.get_last_vod(user.id)
        content = offline_content(login, state.channels.get(login), vod)
        await self._post_offline(watch, user, target, content, existing=message)
        return Transition.POST_OFFLINE

    async def _recover_card(
        self, watch: StreamWatch, user: TwitchUser, target: ChannelTarget
    ) -> MessageSnapshot | None:
        """Adopt a card the channel webhook already posted for this streamer."""
        try:
            message = await self.gateway.find_webhook_message(
                watch.channel_id, target.webhook.id, user.display_name
            )
        except PlatformError as e:
            logger.warning(f"Could not scan channel {watch.channel_id} for cards: {e.message}")
            return None
        if message is None:
            return None
        status = card_status(message, watch.role_id)
        await self.repo.update_message(
            watch.guild_id, watch.channel_id, watch.streamer_login, message.id, status
        )
        logger.info(
            f"Recovered {status.value} card {message.id} of {user.login} "
            f"(channel={watch.channel_id})"
        )
        return message

    async def _execute(
        self,
        watch: StreamWatch,
        user: TwitchUser,
        target: ChannelTarget,
        content: str,
        embed: EmbedSpec | None,
    ) -> MessageSnapshot:
        try:
            return await self._send(target.webhook, user, content, embed)
        except NotFoundError:
            # Webhook deleted upstream, create a fresh one for the channel
            logger.info(f"Webhook of channel {watch.channel_id} is gone, recreating")
        self.webhooks.invalidate(watch.channel_id)
        target.webhook = await self.webhooks.get(watch.channel_id)
        return await self._send(target.webhook, user, content, embed)

    async def _send(
        self, webhook: WebhookHandle, user: TwitchUser, content: str, embed: EmbedSpec | None
    ) -> MessageSnapshot:
        return await self.gateway.execute_webhook(
            webhook,
            content,
            embed,
            username=user.display_name,
            avatar_url=user.profile_image_url or None,
        )

    async def _post_live(
        self,
        watch: StreamWatch,
        user: TwitchUser,
        target: ChannelTarget,
        content: str,
        embed: EmbedSpec,
        replaces: MessageSnapshot | None,
    ) -> None:
        message = await self._execute(watch, user, target, content, embed)
        await self.repo.update_message(
            watch.guild_id, watch.channel_id, watch.streamer_login, message.id, MessageStatus.LIVE
        )
        logger.info(f"{user.login} is live, posted card {message.id} (channel={watch.channel_id})")

        old_id = replaces.id if replaces else None
        if old_id and old_id != message.id:
            try:
                await self.gateway.delete_message(watch.channel_id, old_id)
            except PlatformError as e:
                logger.warning(f"Could not delete old card {old_id}: {e.message}")

        if target.is_news:
            try:
                await self.gateway.publish_message(watch.channel_id, message.id)
            except PlatformError as e:
                logger.warning(f"Failed to publish card in channel {watch.channel_id}: {e.message}")

    async def _post_offline(
        self,
        watch: StreamWatch,
        user: TwitchUser,
        target: ChannelTarget,
        content: str,
        existing: MessageSnapshot | None,
    ) -> None:
        if existing is not None:
            try:
                await self.gateway.edit_webhook_message(target.webhook, existing.id, content, None)
                await self.repo.update_message(
                    watch.guild_id,
                    watch.channel_id,
                    watch.streamer_login,
                    existing.id,
                    MessageStatus.OFFLINE,
                )
                return
            except NotFoundError:
                logger.info(f"Could not edit card of {user.login}, posting a new one")

        message = await self._execute(watch, user, target, content, None)
        await self.repo.update_message(
            watch.guild_id, watch.channel_id, watch.streamer_login, message.id, MessageStatus.OFFLINE
        )
        if existing is not None and existing.id != message.id:
            try:
                await self.gateway.delete_message(watch.channel_id, existing.id)
            except PlatformError as e:
                logger.warning(f"Could not delete old card {existing.id}: {e.message}")

    # ==================== Watch management ====================

    async def add_watch(
        self, guild_id: int, channel_id: int, login: str, role_id: int
    ) -> tuple[StreamWatch, TwitchUser]:
        if not self.twitch.enabled:
            raise CredentialUnavailable("twitch notifications are not configured")

        login = login.strip().lower()
        if not login:
            raise ValidationError("twitch username must not be empty")
        users = await self.twitch.get_users([login])
        if users is None:
            raise TransientPlatformError("twitch is not reachable right now")
        user = users.get(login)
        if user is None:
            raise ValidationError(f"cannot find twitch user {login}")

        missing = await self.check_channel(guild_id, channel_id)
        if missing:
            raise FatalPreconditionError(
                f"missing permissions: {', '.join(missing)}",
                guild_id=guild_id,
                channel_id=channel_id,
            )

        await self.webhooks.get(channel_id)
        watch = await self.repo.upsert_watch(guild_id, channel_id, login, role_id)
        return watch, user

    async def remove_watch(self, guild_id: int, channel_id: int, login: str) -> bool:
        """Stop watching *login*. The last status card is deleted."""
        watch = await self.repo.get_watch(guild_id, channel_id, login)
        if watch is None:
            raise ValidationError(f"no twitch notification for {login} in that channel")
        await self.repo.delete_watch(guild_id, channel_id, login)
        if watch.message_id:
            try:
                await self.gateway.delete_message(channel_id, watch.message_id)
            except PlatformError as e:
                logger.warning(f"Could not delete card of {login}: {e.message}")
        return True

    async def list_watches(self, guild_id: int) -> list[StreamWatch]:
        return await self.repo.list_watches(guild_id)

    async def check_channel(self, guild_id: int, channel_id: int) -> tuple[str, ...]:
        """Permissions the bot lacks for posting status cards in a channel."""
        capability = await self.gateway.resolve_channel(
            guild_id, channel_id, allow_news=True, required_permissions=WEBHOOK_PERMISSIONS
        )
        if isinstance(capability, Unsupported):
            raise ValidationError(f"cannot post in that channel: {capability.reason}")
        return capability.missing_permissions
