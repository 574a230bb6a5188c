"""Data models for the stream_watches table."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class MessageStatus(str, Enum):
    """What the current status card shows."""

    LIVE = "live"
    OFFLINE = "offline"


@dataclass
class StreamWatch:
    """A Twitch streamer tracked in a guild channel."""

    guild_id: int
    channel_id: int
    streamer_login: str
    role_id: int
    message_id: int | None = None
    message_status: MessageStatus | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if isinstance(self.message_status, str) and not isinstance(
            self.message_status, MessageStatus
        ):
            self.message_status = MessageStatus(self.message_status)

    @property
    def channel_url(self) -> str:
        return f"https://twitch.tv/{self.streamer_login}"
