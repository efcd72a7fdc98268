"""Application glue between settings, the consumer pool and message handling.

The client registers itself as the pool's callbacks, starts consumers at boot
when ``RABBITMQ_CONSUMER_ENABLED`` is set, and restarts them after a lost
connection according to ``RABBITMQ_CONSUMER_MAX_RECONNECT_ATTEMPTS``:

- ``0``: no reconnects
- ``< 0``: retry forever
- ``> 0``: at most that many attempts
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable

from aio_pika.abc import AbstractIncomingMessage
from loguru import logger

from rmq_messaging.config import Settings
from rmq_messaging.consumer import ConsumerCallbacks, ConsumerPool
from rmq_messaging.errors import BrokerConnectionError
from rmq_messaging.models import MessageProcessInstruction


MessageHandler = Callable[..., Awaitable[MessageProcessInstruction]]


async def default_message_handler(
    message: AbstractIncomingMessage,
    content: str,
    consumer_tag: str,
    first_retry_date: datetime | None = None,
    last_retry_date: datetime | None = None,
    elapsed_time_seconds: float | None = None,
    retry_count: int = 0,
) -> MessageProcessInstruction:
    """Log the message; drop bodies mentioning an error, acknowledge the rest."""
    logger.info(
        f"Received message (consumer: {consumer_tag})",
        first_retry_date=first_retry_date,
        last_retry_date=last_retry_date,
        elapsed_time_seconds=elapsed_time_seconds,
        retry_count=retry_count,
    )
    logger.debug(f"Message content: {content}")
    logger.debug(f"Message headers: {dict(message.headers or {})}")

    if "error" in content.lower():
        logger.error("Error message received")
        return MessageProcessInstruction.IGNORE_MESSAGE

    return MessageProcessInstruction.OK


class MessagingClient(ConsumerCallbacks):
    """Starts consumers from settings and keeps them running."""

    def __init__(
        self,
        settings: Settings,
        pool: ConsumerPool,
        message_handler: MessageHandler | None = None,
    ):
        self._settings = settings
        self._pool = pool
        self._pool.callbacks = self
        self._message_handler = message_handler or default_message_handler

        self._reconnect_task: asyncio.Task | None = None
        self._reconnect_attempts = 0

    @property
    def pool(self) -> ConsumerPool:
        return self._pool

    @property
    def is_enabled(self) -> bool:
        return self._settings.rabbitmq_consumer_enabled

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def start(self) -> None:
        """Start the configured consumers, unless consumers are disabled.

        A broker that is down at boot does not fail startup; the reconnect
        policy takes over instead.
        """
        if not self.is_enabled:
            logger.info("Consumers are not enabled")
            return

        try:
            await self.start_consumers()
        except BrokerConnectionError as e:
            logger.error(f"Failed to start consumers: {e}")
            self._schedule_reconnect()

    async def start_consumers(self) -> None:
        logger.info("Starting consumers...")
        await self._pool.start_consumers(
            self._settings.consumer_name,
            self._settings.rabbitmq_user_queue_consumer,
            self._settings.rabbitmq_consumer_instances_to_start,
        )

    async def stop(self) -> None:
        """Cancel any reconnect loop and stop every running consumer."""
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        if not self.is_enabled:
            return

        if self._pool.total_running_consumers > 0:
            logger.info("Stopping consumers...")
            await self._pool.stop_all_consumers()
            logger.info("Consumers stopped")
        else:
            logger.info("No consumers to stop")

    # -------------------------------------------------------------------------
    # Pool callbacks
    # -------------------------------------------------------------------------

    async def on_message_received(
        self,
        message: AbstractIncomingMessage,
        content: str,
        consumer_tag: str,
        first_retry_date: datetime | None = None,
        last_retry_date: datetime | None = None,
        elapsed_time_seconds: float | None = None,
        retry_count: int = 0,
    ) -> MessageProcessInstruction:
        return await self._message_handler(
            message,
            content,
            consumer_tag,
            first_retry_date,
            last_retry_date,
            elapsed_time_seconds,
            retry_count,
        )

    def on_consumer_shutdown(self, consumer_tag: str) -> None:
        logger.info(f"Consumer shutdown: {consumer_tag}")

    def on_processing_error(
        self,
        error: Exception,
        consumer_tag: str,
        message: AbstractIncomingMessage,
    ) -> None:
        logger.opt(exception=error).error(
            f"Processing error (consumer: {consumer_tag}): {error}",
            delivery_tag=message.delivery_tag,
        )

    def on_connection_closed(
        self,
        hostname: str | None,
        removed_count: int,
        total_running: int,
    ) -> None:
        logger.info(
            f"Connection closed: {hostname}. Removed count: {removed_count}. "
            f"Total running: {total_running}"
        )
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        max_attempts = self._settings.rabbitmq_consumer_max_reconnect_attempts

        if max_attempts == 0:
            logger.info("Max reconnect attempts is 0; No reconnect attempts will be made.")
            return
        if max_attempts < 0:
            logger.info("Max reconnect attempts is negative; reconnecting until it succeeds.")

        if self.is_reconnecting:
            logger.debug("Reconnect loop already running")
            return

        self._reconnect_attempts = 0
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(max_attempts))

    async def _reconnect_loop(self, max_attempts: int) -> None:
        delay = self._settings.rabbitmq_consumer_reconnect_delay / 1000

        while True:
            await asyncio.sleep(delay)

            if max_attempts > 0:
                self._reconnect_attempts += 1

            try:
                await self.start_consumers()
            except Exception as e:
                if max_attempts > 0:
                    logger.error(
                        f"Reconnect attempt {self._reconnect_attempts} of {max_attempts} failed: {e}"
                    )
                else:
                    logger.error(f"Reconnect attempt failed, retrying: {e}")
            else:
                self._reconnect_attempts = 0
                logger.info("Reconnect successful; stopped retry loop")
                return

            if max_attempts > 0 and self._reconnect_attempts >= max_attempts:
                self._reconnect_attempts = 0
                logger.warning("Reconnect stopped; reached max reconnect attempts")
                return
