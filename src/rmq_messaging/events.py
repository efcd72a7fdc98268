"""Best-effort publishing of domain events for callers outside the messaging layer."""

from typing import Any

from loguru import logger

from rmq_messaging.sender import MessageSender


class EventPublisher:
    """Send JSON events to a configured queue.

    An empty destination turns publishing off; ``publish`` then returns False
    without touching the broker.
    """

    def __init__(self, sender: MessageSender | None, destination: str | None):
        self._sender = sender
        self._destination = (destination or "").strip()

    @property
    def enabled(self) -> bool:
        return self._sender is not None and bool(self._destination)

    async def publish(self, payload: Any) -> bool:
        if not self.enabled:
            logger.debug("Event publishing disabled, no destination configured")
            return False

        await self._sender.connect()
        return await self._sender.send_message_queue(self._destination, payload)
