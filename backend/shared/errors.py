"""Error taxonomy shared by the reconcilers, gateway and commands.

Every error carries a short ``message`` that is safe to show to the user
who invoked a command.
"""

from __future__ import annotations


class BotError(Exception):
    """Base class for expected, user-presentable failures."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(BotError):
    """Duplicate or unknown section / reaction; nothing was mutated."""


class NotFoundError(BotError):
    """A referenced panel, watch or message no longer exists."""


class CredentialUnavailable(BotError):
    """Third-party client credentials are not configured."""


class PlatformError(BotError):
    """A call to the chat platform failed."""


class TransientPlatformError(PlatformError):
    """Rate limit, timeout or upstream 5xx. Safe to skip and retry later."""


class FatalPreconditionError(PlatformError):
    """Target channel has the wrong type or the bot lacks permissions."""

    def __init__(
        self,
        message: str,
        *,
        guild_id: int | None = None,
        channel_id: int | None = None,
    ) -> None:
        super().__init__(message)
        self.guild_id = guild_id
        self.channel_id = channel_id

    def __str__(self) -> str:
        return f"{self.message} (guild={self.guild_id}, channel={self.channel_id})"
