"""Balance change notifications for the game-state server.

Notifications are best effort: the ledger is the source of truth and a
failed notification never changes the outcome of a transfer.
"""

import logging
from decimal import Decimal
from typing import Optional

import httpx

from payrail.config import get_settings
from payrail.utils.amounts import format_sol

logger = logging.getLogger(__name__)

# Singleton notifier instance
_notifier: Optional["GameServerNotifier"] = None


class GameServerNotifier:
    """Posts balance change events to the configured webhook."""

    def __init__(self, url: Optional[str] = None, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def notify(
        self,
        user_id: str,
        event: str,
        amount: Decimal,
        transaction_id: Optional[str] = None,
    ) -> bool:
        """Send an event. Returns True if delivered."""
        payload = {
            "userId": user_id,
            "event": event,
            "amount": format_sol(amount),
            "transactionId": transaction_id,
        }
        if not self.enabled:
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
            if response.status_code >= 400:
                logger.warning(f"Game server notify {event} for {user_id}: HTTP {response.status_code}")
                return False
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Game server notify {event} for {user_id} failed: {e}")
            return False


def get_notifier() -> GameServerNotifier:
    """Get or create the notifier singleton."""
    global _notifier
    if _notifier is None:
        _notifier = GameServerNotifier(get_settings().game_server_notify_url)
    return _notifier


def reset_notifier() -> None:
    """Clear notifier singleton (useful for testing)."""
    global _notifier
    _notifier = None
