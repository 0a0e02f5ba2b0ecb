"""Notifications: in-process event bus and Discord webhook."""

from slicer.notifications.discord import DiscordNotifier, get_discord_notifier
from slicer.notifications.events import EventBus

__all__ = ["DiscordNotifier", "EventBus", "get_discord_notifier"]
