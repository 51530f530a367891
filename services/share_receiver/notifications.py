"""Notification utilities for synced shares."""

import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from shared.models import SyncEvent

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], Awaitable[Any]]


class NotificationBus:
    """
    Best-effort broadcast of sync events to connected foreground clients.

    Nothing is queued or persisted: a client that is not connected when an
    event is published never sees it.
    """

    def __init__(self, webhook_url: Optional[str] = None):
        """
        Initialize notification bus.

        Args:
            webhook_url: Optional URL that also receives every event; defaults
                         to the NOTIFICATION_WEBHOOK_URL env var
        """
        self.webhook_url = webhook_url or os.getenv("NOTIFICATION_WEBHOOK_URL")
        self._listeners: List[Listener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def connect(self, listener: Listener) -> None:
        """Register a listener, e.g. a WebSocket's ``send_json``."""
        self._listeners.append(listener)
        logger.debug(f"Notification listener connected ({len(self._listeners)} total)")

    def disconnect(self, listener: Listener) -> None:
        """Unregister a listener; unknown listeners are ignored."""
        try:
            self._listeners.remove(listener)
        except ValueError:
            return
        logger.debug(f"Notification listener disconnected ({len(self._listeners)} total)")

    async def notify(self, event: SyncEvent) -> int:
        """
        Send an event to every connected listener.

        Listeners that fail are dropped. Having no listener is not an error.

        Args:
            event: The event to publish

        Returns:
            Number of listeners that received the event
        """
        message = event.to_message()
        delivered = 0

        for listener in list(self._listeners):
            try:
                await listener(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping notification listener after send failure: {e}")
                self.disconnect(listener)

        if self.webhook_url:
            await self._post_webhook(message)

        logger.info(f"Published {event.type} for share {event.id} to {delivered} listener(s)")
        return delivered

    async def _post_webhook(self, message: Dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient() as client:
                await client.post(self.webhook_url, json=message, timeout=10.0)
        except Exception as e:
            logger.error(f"Failed to send notification webhook: {e}")
