"""Unit tests for EventPublisher."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from rmq_messaging.events import EventPublisher


@pytest.fixture
def sender():
    sender = MagicMock()
    sender.connect = AsyncMock()
    sender.send_message_queue = AsyncMock(return_value=True)
    return sender


@pytest.mark.asyncio
async def test_publish_connects_then_sends(sender):
    events = EventPublisher(sender, "domain-events")

    assert await events.publish({"type": "order.created"}) is True

    sender.connect.assert_awaited_once()
    sender.send_message_queue.assert_awaited_once_with("domain-events", {"type": "order.created"})


@pytest.mark.asyncio
async def test_publish_reports_failure(sender):
    sender.send_message_queue.return_value = False
    assert await EventPublisher(sender, "domain-events").publish({}) is False


@pytest.mark.asyncio
@pytest.mark.parametrize("destination", ["", "   ", None])
async def test_blank_destination_disables_publishing(sender, destination):
    events = EventPublisher(sender, destination)

    assert events.enabled is False
    assert await events.publish({}) is False
    sender.connect.assert_not_awaited()


@pytest.mark.asyncio
async def test_no_sender():
    assert await EventPublisher(None, "domain-events").publish({}) is False
