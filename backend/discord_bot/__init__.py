"""rolecast Discord bot: role chooser panels, Twitch notifications, local time."""
