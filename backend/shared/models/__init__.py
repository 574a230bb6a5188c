"""Shared data models for persisted rows."""

from .role_chooser import RoleChooserPanel, RoleMapping
from .stream_watch import MessageStatus, StreamWatch
from .timezone import UserTimezone

__all__ = [
    "MessageStatus",
    "RoleChooserPanel",
    "RoleMapping",
    "StreamWatch",
    "UserTimezone",
]
