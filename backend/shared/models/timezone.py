"""Data model for the user_timezones table."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class UserTimezone:
    guild_id: int
    user_id: int
    timezone_id: str
    updated_at: datetime | None = None
