"""Pure rendering of role chooser panel messages."""

from __future__ import annotations

from collections.abc import Iterable

from discord_bot.gateway import ReactionKey, RoleRef


def placeholder_content(section: str) -> str:
    return f"placeholder for section {section}"


def render_role(role: RoleRef, *, suppress_notifications: bool) -> str:
    # Silent messages show plain names so later edits never look like pings
    if suppress_notifications:
        return f"`{role.name}`"
    return role.mention


def render_panel(
    section: str,
    entries: Iterable[tuple[ReactionKey, RoleRef]],
    *,
    suppress_notifications: bool,
) -> str:
    """Render the panel body: a bold section header, then one line per mapping."""
    lines = "\n".join(
        f"{key} {render_role(role, suppress_notifications=suppress_notifications)}"
        for key, role in entries
    )
    return f"**{section}** : \n{lines}"
