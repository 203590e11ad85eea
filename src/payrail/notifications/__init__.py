"""Notification services."""

from payrail.notifications.game_server import GameServerNotifier, get_notifier, reset_notifier

__all__ = ["GameServerNotifier", "get_notifier", "reset_notifier"]
