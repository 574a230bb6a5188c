"""In-memory stand-ins for the platform gateway, the stores and Twitch."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from shared.errors import NotFoundError, ValidationError
from shared.models.role_chooser import RoleChooserPanel, RoleMapping
from shared.models.stream_watch import MessageStatus, StreamWatch
from shared.twitch_api import (
    AppToken,
    TwitchChannelInfo,
    TwitchGame,
    TwitchStream,
    TwitchUser,
    TwitchVideo,
)

from discord_bot.gateway import (
    EmbedSpec,
    MessageSnapshot,
    ReactionEventHub,
    ReactionKey,
    ReactionSubscription,
    RoleRef,
    Supported,
    Unsupported,
    WebhookHandle,
)

BOT_USER_ID = 1


@dataclass
class FakeChannel:
    guild_id: int
    name: str
    kind: str = "text"  # text | news | voice
    missing_permissions: tuple[str, ...] = ()


@dataclass
class FakeMessage:
    id: int
    channel_id: int
    content: str
    embeds: list[EmbedSpec] = field(default_factory=list)
    reactions: dict[ReactionKey, list[int]] = field(default_factory=dict)
    suppress_notifications: bool = False
    webhook_id: int | None = None
    username: str | None = None

    def snapshot(self) -> MessageSnapshot:
        return MessageSnapshot(
            id=self.id,
            channel_id=self.channel_id,
            content=self.content,
            embeds=tuple(self.embeds),
            reactions=tuple(self.reactions),
            suppress_notifications=self.suppress_notifications,
            jump_url=f"https://discord.com/channels/0/{self.channel_id}/{self.id}",
        )


class FakeGateway:
    """Records every call; failures are injected per (method, key)."""

    def __init__(self) -> None:
        self.hub = ReactionEventHub()
        self.channels: dict[int, FakeChannel] = {}
        self.messages: dict[int, FakeMessage] = {}
        self.roles: dict[tuple[int, int], str] = {}
        self.members: dict[tuple[int, int], set[int]] = {}
        self.webhooks: dict[int, list[WebhookHandle]] = {}
        self.presence: list[str | None] = []
        self.calls: list[tuple[str, Any]] = []
        self.failures: dict[tuple[str, Any], BaseException] = {}
        self.webhook_create_delay = 0.0
        self._ids = itertools.count(1000)

    # --- setup helpers ---

    def add_channel(self, guild_id: int, channel_id: int, kind: str = "text", **kw) -> None:
        self.channels[channel_id] = FakeChannel(guild_id, f"channel-{channel_id}", kind, **kw)

    def add_role(self, guild_id: int, role_id: int, name: str) -> None:
        self.roles[(guild_id, role_id)] = name

    def add_member(self, guild_id: int, user_id: int, *role_ids: int) -> None:
        self.members[(guild_id, user_id)] = set(role_ids)

    def react(self, message_id: int, key: ReactionKey, user_id: int) -> None:
        """Put a reaction on a message without emitting an event."""
        self.messages[message_id].reactions.setdefault(key, []).append(user_id)

    def fail(self, method: str, key: Any, error: BaseException) -> None:
        self.failures[(method, key)] = error

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _record(self, method: str, *keys: Any) -> None:
        self.calls.append((method, keys))
        for key in (None, *keys):
            if error := self.failures.get((method, key)):
                raise error

    def _message(self, channel_id: int, message_id: int) -> FakeMessage:
        message = self.messages.get(message_id)
        if message is None or message.channel_id != channel_id:
            raise NotFoundError("unknown message")
        return message

    def _live_webhook(self, handle: WebhookHandle) -> None:
        if all(h.id != handle.id for h in self.webhooks.get(handle.channel_id, [])):
            raise NotFoundError("unknown webhook")

    # --- protocol ---

    @property
    def self_user_id(self) -> int:
        return BOT_USER_ID

    async def resolve_channel(
        self, guild_id, channel_id, *, allow_news=False, required_permissions=()
    ):
        self._record("resolve_channel", channel_id)
        channel = self.channels.get(channel_id)
        if channel is None or channel.guild_id != guild_id:
            return Unsupported(channel_id, "channel does not exist")
        if channel.kind == "voice":
            return Unsupported(channel_id, "voice channels are not supported")
        if channel.kind == "news" and not allow_news:
            return Unsupported(channel_id, "announcement channels are not supported")
        missing = tuple(p for p in required_permissions if p in channel.missing_permissions)
        return Supported(channel_id, channel.name, channel.kind == "news", missing)

    async def fetch_message(self, channel_id, message_id):
        self._record("fetch_message", channel_id, message_id)
        message = self.messages.get(message_id)
        if message is None or message.channel_id != channel_id:
            return None
        return message.snapshot()

    async def find_webhook_message(self, channel_id, webhook_id, username, limit=100):
        self._record("find_webhook_message", channel_id)
        recent = sorted(
            (m for m in self.messages.values() if m.channel_id == channel_id),
            key=lambda m: m.id,
            reverse=True,
        )[:limit]
        for message in recent:
            if message.webhook_id == webhook_id and message.username == username:
                return message.snapshot()
        return None

    async def create_message(self, channel_id, content, *, silent=False):
        self._record("create_message", channel_id)
        message = FakeMessage(next(self._ids), channel_id, content, suppress_notifications=silent)
        self.messages[message.id] = message
        return message.snapshot()

    async def edit_message(self, channel_id, message_id, content):
        self._record("edit_message", channel_id, message_id)
        message = self._message(channel_id, message_id)
        message.content = content
        return message.snapshot()

    async def delete_message(self, channel_id, message_id):
        self._record("delete_message", channel_id, message_id)
        return self.messages.pop(message_id, None) is not None

    async def add_reaction(self, channel_id, message_id, key):
        self._record("add_reaction", channel_id, message_id)
        reactors = self._message(channel_id, message_id).reactions.setdefault(key, [])
        if BOT_USER_ID not in reactors:
            reactors.append(BOT_USER_ID)

    async def clear_reaction(self, channel_id, message_id, key):
        self._record("clear_reaction", channel_id, message_id)
        self._message(channel_id, message_id).reactions.pop(key, None)

    async def list_reactors(self, channel_id, message_id, key):
        self._record("list_reactors", channel_id, message_id)
        return list(self._message(channel_id, message_id).reactions.get(key, []))

    async def get_role(self, guild_id, role_id):
        name = self.roles.get((guild_id, role_id))
        return RoleRef(role_id, name) if name is not None else None

    async def member_role_ids(self, guild_id, user_id):
        roles = self.members.get((guild_id, user_id))
        return set(roles) if roles is not None else None

    async def grant_role(self, guild_id, user_id, role_id, reason):
        self._record("grant_role", user_id)
        if (guild_id, user_id) not in self.members:
            raise NotFoundError("not a member")
        self.members[(guild_id, user_id)].add(role_id)

    async def revoke_role(self, guild_id, user_id, role_id, reason):
        self._record("revoke_role", user_id)
        if (guild_id, user_id) not in self.members:
            raise NotFoundError("not a member")
        self.members[(guild_id, user_id)].discard(role_id)

    async def list_webhooks(self, channel_id):
        self._record("list_webhooks", channel_id)
        return list(self.webhooks.get(channel_id, []))

    async def create_webhook(self, channel_id, name, avatar=None):
        self._record("create_webhook", channel_id)
        if self.webhook_create_delay:
            await asyncio.sleep(self.webhook_create_delay)
        handle = WebhookHandle(next(self._ids), channel_id, name, token=f"secret-{channel_id}")
        self.webhooks.setdefault(channel_id, []).append(handle)
        return handle

    async def execute_webhook(self, handle, content, embed, username=None, avatar_url=None):
        self._record("execute_webhook", handle.channel_id)
        self._live_webhook(handle)
        message = FakeMessage(
            next(self._ids),
            handle.channel_id,
            content,
            embeds=[embed] if embed else [],
            webhook_id=handle.id,
            username=username,
        )
        self.messages[message.id] = message
        return message.snapshot()

    async def edit_webhook_message(self, handle, message_id, content, embed):
        self._record("edit_webhook_message", handle.channel_id, message_id)
        self._live_webhook(handle)
        message = self._message(handle.channel_id, message_id)
        if message.webhook_id != handle.id:
            raise NotFoundError("message was not sent by this webhook")
        message.content = content
        message.embeds = [embed] if embed else []
        return message.snapshot()

    async def publish_message(self, channel_id, message_id):
        self._record("publish_message", channel_id, message_id)

    async def set_presence(self, watching):
        self._record("set_presence", watching)
        self.presence.append(watching)

    def subscribe_reaction_events(self, message_id, handler) -> ReactionSubscription:
        return self.hub.subscribe(message_id, handler)


# ==================== Stores ====================


class FakeRoleChooserRepository:
    def __init__(self) -> None:
        self.panels: dict[int, RoleChooserPanel] = {}
        self.mappings: dict[int, list[RoleMapping]] = {}
        self._ids = itertools.count(1)

    async def find_panel(self, guild_id, channel_id, section):
        for panel in self.panels.values():
            if (panel.guild_id, panel.channel_id, panel.section) == (guild_id, channel_id, section):
                return replace(panel)
        return None

    async def get_panel(self, panel_id):
        panel = self.panels.get(panel_id)
        return replace(panel) if panel else None

    async def upsert_panel(self, guild_id, channel_id, section, description=None):
        if existing := await self.find_panel(guild_id, channel_id, section):
            return existing
        panel = RoleChooserPanel(next(self._ids), guild_id, channel_id, section, description)
        self.panels[panel.panel_id] = panel
        self.mappings[panel.panel_id] = []
        return replace(panel)

    async def update_panel_message(self, panel_id, message_id):
        if panel_id in self.panels:
            self.panels[panel_id].message_id = message_id

    async def rename_panel_section(self, panel_id, section):
        panel = self.panels.get(panel_id)
        if panel is None:
            return False
        if await self.find_panel(panel.guild_id, panel.channel_id, section):
            raise ValidationError(f"section {section} already exists")
        panel.section = section
        return True

    async def delete_panel(self, panel_id):
        self.mappings.pop(panel_id, None)
        return self.panels.pop(panel_id, None) is not None

    async def list_panels_in_channel(self, guild_id, channel_id):
        return [
            replace(p)
            for p in self.panels.values()
            if p.guild_id == guild_id and p.channel_id == channel_id
        ]

    async def list_all_panels(self, guild_id):
        return [replace(p) for p in self.panels.values() if p.guild_id == guild_id]

    async def upsert_mapping(self, panel_id, reaction, role_id):
        rows = self.mappings[panel_id]
        for row in rows:
            if row.reaction == reaction:
                row.role_id = role_id
                return
        rows.append(RoleMapping(panel_id, reaction, role_id, mapping_id=len(rows) + 1))

    async def delete_mapping(self, panel_id, reaction):
        rows = self.mappings.get(panel_id, [])
        before = len(rows)
        rows[:] = [r for r in rows if r.reaction != reaction]
        return len(rows) != before

    async def list_mapping(self, panel_id):
        return [replace(r) for r in self.mappings.get(panel_id, [])]


class FakeStreamWatchRepository:
    def __init__(self) -> None:
        self.watches: dict[tuple[int, int, str], StreamWatch] = {}
        self.updates: list[tuple[str, int | None, MessageStatus | None]] = []

    def add(self, guild_id, channel_id, login, role_id, message_id=None, status=None) -> None:
        key = (guild_id, channel_id, login.lower())
        self.watches[key] = StreamWatch(guild_id, channel_id, login.lower(), role_id, message_id, status)

    def watch(self, guild_id, channel_id, login) -> StreamWatch:
        return self.watches[(guild_id, channel_id, login.lower())]

    async def get_watch(self, guild_id, channel_id, streamer_login):
        watch = self.watches.get((guild_id, channel_id, streamer_login.lower()))
        return replace(watch) if watch else None

    async def upsert_watch(self, guild_id, channel_id, streamer_login, role_id):
        key = (guild_id, channel_id, streamer_login.lower())
        if key in self.watches:
            self.watches[key].role_id = role_id
        else:
            self.add(guild_id, channel_id, streamer_login, role_id)
        return replace(self.watches[key])

    async def delete_watch(self, guild_id, channel_id, streamer_login):
        return self.watches.pop((guild_id, channel_id, streamer_login.lower()), None) is not None

    async def list_watches(self, guild_id):
        return [replace(w) for w in self.watches.values() if w.guild_id == guild_id]

    async def list_watches_for_guilds(self, guild_ids):
        return [replace(w) for w in self.watches.values() if w.guild_id in guild_ids]

    async def update_message(self, guild_id, channel_id, streamer_login, message_id, status):
        watch = self.watches[(guild_id, channel_id, streamer_login.lower())]
        watch.message_id = message_id
        watch.message_status = status
        self.updates.append((streamer_login, message_id, status))


# ==================== Twitch ====================

STARTED_AT = datetime(2024, 5, 1, 18, 0, tzinfo=timezone.utc)


def make_user(login: str, user_id: str | None = None) -> TwitchUser:
    return TwitchUser(
        id=user_id or f"id-{login}",
        login=login,
        display_name=login.capitalize(),
        profile_image_url=f"https://img.example/{login}.png",
    )


def make_stream(login: str, title: str = "Live now", game: str = "Celeste") -> TwitchStream:
    return TwitchStream(
        id=f"s-{login}",
        user_id=f"id-{login}",
        user_login=login,
        user_name=login.capitalize(),
        game_name=game,
        title=title,
        started_at=STARTED_AT,
    )


class FakeTwitch:
    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.token: AppToken | None = AppToken(access_token="tok", expires_in=3600)
        self.users: dict[str, TwitchUser] = {}
        self.streams: dict[str, TwitchStream] = {}
        self.games: dict[str, TwitchGame] = {}
        self.channels: dict[str, TwitchChannelInfo] = {}
        self.vods: dict[str, TwitchVideo] = {}
        self.unavailable = False
        self.requests: list[str] = []

    def add_user(self, login: str) -> TwitchUser:
        user = make_user(login)
        self.users[login] = user
        self.channels[login] = TwitchChannelInfo(
            broadcaster_id=user.id,
            broadcaster_login=login,
            broadcaster_name=user.display_name,
            game_name="Celeste",
            title="Last stream title",
        )
        return user

    def go_live(self, login: str, **kw) -> None:
        self.streams[login] = make_stream(login, **kw)

    def go_offline(self, login: str) -> None:
        self.streams.pop(login, None)

    async def get_token(self):
        self.requests.append("token")
        return self.token if self.enabled else None

    async def get_streams(self, logins):
        self.requests.append("streams")
        if not self.enabled or self.unavailable:
            return None
        wanted = {login.lower() for login in logins}
        return {k: v for k, v in self.streams.items() if k in wanted}

    async def get_users(self, logins):
        self.requests.append("users")
        if not self.enabled or self.unavailable:
            return None
        wanted = {login.lower() for login in logins}
        return {k: v for k, v in self.users.items() if k in wanted}

    async def get_games(self, names):
        self.requests.append("games")
        if not self.enabled:
            return None
        wanted = {n.lower() for n in names}
        return {k: v for k, v in self.games.items() if k in wanted}

    async def get_channel_info(self, broadcaster_ids):
        self.requests.append("channels")
        if not self.enabled:
            return None
        wanted = set(broadcaster_ids)
        return {k: v for k, v in self.channels.items() if v.broadcaster_id in wanted}

    async def get_last_vod(self, user_id):
        self.requests.append("videos")
        return self.vods.get(user_id)
