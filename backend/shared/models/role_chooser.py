"""Data models for role chooser panel tables."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class RoleChooserPanel:
    """A reaction-role message for one guild / channel / section."""

    panel_id: int
    guild_id: int
    channel_id: int
    section: str
    description: str | None = None
    message_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class RoleMapping:
    """Reaction key -> role, unique per panel."""

    panel_id: int
    reaction: str
    role_id: int
    mapping_id: int | None = None
    created_at: datetime | None = None
