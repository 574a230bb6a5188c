"""Config store adapter: SQL repositories over the asyncpg pool."""

from .role_chooser import RoleChooserRepository
from .stream_watch import StreamWatchRepository
from .timezone import TimezoneRepository

__all__ = [
    "RoleChooserRepository",
    "StreamWatchRepository",
    "TimezoneRepository",
]
