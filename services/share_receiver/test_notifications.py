"""Unit tests for the sync notification bus."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shared.models import SyncEvent
from services.share_receiver.notifications import NotificationBus


@pytest.fixture
def bus(monkeypatch):
    monkeypatch.delenv("NOTIFICATION_WEBHOOK_URL", raising=False)
    return NotificationBus()


@pytest.mark.asyncio
async def test_notify_without_listeners(bus):
    """Publishing with nobody connected is not an error."""
    delivered = await bus.notify(SyncEvent(type="SHARE_SYNCED", id=1))

    assert delivered == 0


@pytest.mark.asyncio
async def test_notify_sends_message_to_listeners(bus):
    first = AsyncMock()
    second = AsyncMock()
    bus.connect(first)
    bus.connect(second)

    delivered = await bus.notify(SyncEvent(type="SHARE_SYNCED", id=3))

    assert delivered == 2
    first.assert_awaited_once_with({"type": "SHARE_SYNCED", "id": 3})
    second.assert_awaited_once_with({"type": "SHARE_SYNCED", "id": 3})


@pytest.mark.asyncio
async def test_failing_listener_is_dropped(bus):
    broken = AsyncMock(side_effect=RuntimeError("socket closed"))
    healthy = AsyncMock()
    bus.connect(broken)
    bus.connect(healthy)

    delivered = await bus.notify(SyncEvent(type="SHARE_SYNCED", id=4))

    assert delivered == 1
    assert bus.listener_count == 1
    healthy.assert_awaited_once()


def test_disconnect_unknown_listener_is_ignored(bus):
    listener = AsyncMock()
    bus.connect(listener)

    bus.disconnect(listener)
    bus.disconnect(listener)

    assert bus.listener_count == 0


@pytest.mark.asyncio
async def test_webhook_receives_event():
    bus = NotificationBus(webhook_url="https://hooks.example.com/share")

    with patch("services.share_receiver.notifications.httpx.AsyncClient") as mock_client_class:
        mock_client = MagicMock()
        mock_client.post = AsyncMock()
        mock_client_class.return_value.__aenter__.return_value = mock_client

        await bus.notify(SyncEvent(type="SHARE_SYNCED", id=9))

    mock_client.post.assert_awaited_once_with(
        "https://hooks.example.com/share",
        json={"type": "SHARE_SYNCED", "id": 9},
        timeout=10.0
    )


@pytest.mark.asyncio
async def test_webhook_failure_is_swallowed():
    bus = NotificationBus(webhook_url="https://hooks.example.com/share")

    with patch("services.share_receiver.notifications.httpx.AsyncClient") as mock_client_class:
        mock_client = MagicMock()
        mock_client.post = AsyncMock(side_effect=Exception("Network error"))
        mock_client_class.return_value.__aenter__.return_value = mock_client

        delivered = await bus.notify(SyncEvent(type="SHARE_SYNCED", id=9))

    assert delivered == 0
