"""Message publisher with host selection and bounded reconnects.

The sender owns one connection and one channel. Publishing is best effort:
``send_message_queue`` and ``send_message`` report failures through their
return values and never raise, so a broker outage cannot break the caller.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> DISCONNECTED            (connection error or close)
    DISCONNECTED -> CONNECTING           (retry timer or explicit connect())

Retries stop for good once ``connection_retry_attempts`` is exhausted, or
immediately when retries are disabled.
"""

import asyncio
import json
from enum import Enum
from typing import Any
from urllib.parse import quote

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractConnection
from loguru import logger

from rmq_messaging.hosts import HostSelector
from rmq_messaging.models import (
    DEFAULT_CONNECTION_DESCRIPTION,
    SendResult,
    SenderConnectionDetails,
)


class ConnectionState(str, Enum):
    """Publisher connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class MessageSender:
    """Publishes JSON messages to queues and exchanges."""

    def __init__(self, connection_details: SenderConnectionDetails):
        """Initialize the sender.

        Raises:
            ConfigurationError: if the host list is empty.
        """
        self._details = connection_details
        self._host_selector = HostSelector(
            connection_details.hostname,
            select_random=connection_details.select_random_host,
            select_sequential=connection_details.select_sequential_host,
        )

        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._state = ConnectionState.DISCONNECTED
        self._closing = False

        self._retry_attempt = 0
        self._retry_task: asyncio.Task | None = None

        self._url = self.build_url()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._channel is not None and self._state == ConnectionState.CONNECTED

    @property
    def current_host(self) -> str | None:
        return self._host_selector.current_host

    @property
    def retry_attempt(self) -> int:
        return self._retry_attempt

    def build_url(self) -> str:
        """Build ``amqp://[user[:pass]@]host[:port][/vhost]`` for the next host.

        Runs host selection, so consecutive calls may point to different hosts.
        """
        details = self._details
        host = self._host_selector.select().host

        url = "amqp://"
        if details.username:
            url += quote(details.username, safe="")
            # An empty password is still a password
            if details.password is not None:
                url += f":{quote(details.password, safe='')}"
            url += "@"

        url += host

        if details.port:
            url += f":{details.port}"

        # Empty vhost means "/", None leaves the broker default
        if details.vhost is not None:
            url += details.vhost if details.vhost.startswith("/") else f"/{details.vhost}"

        return url

    async def connect(self) -> None:
        """Open the connection and channel.

        No-op when already connected or while a connection attempt is in
        flight. Connection failures are logged and handed to the retry policy;
        they are never raised.
        """
        if self._connection is not None or self._state == ConnectionState.CONNECTING:
            return

        self._closing = False
        self._state = ConnectionState.CONNECTING
        connection: AbstractConnection | None = None

        try:
            connection = await aio_pika.connect(
                self._url,
                timeout=self._details.connection_timeout_seconds,
                client_properties={
                    "connection_name": self._details.connection_description
                    or DEFAULT_CONNECTION_DESCRIPTION,
                },
            )
            channel = await connection.channel()
        except Exception as e:
            logger.error(
                "Failed to connect to RabbitMQ",
                host=self.current_host,
                error=str(e),
            )
            if connection is not None and not connection.is_closed:
                try:
                    await connection.close()
                except Exception as close_error:
                    logger.warning(f"Error closing half-open connection: {close_error}")
            self._state = ConnectionState.DISCONNECTED
            if not self._closing:
                self._handle_disconnect()
            return

        # close() was called while the attempt was in flight
        if self._closing:
            try:
                await connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection opened during close: {e}")
            self._state = ConnectionState.DISCONNECTED
            return

        self._connection = connection
        self._channel = channel
        self._state = ConnectionState.CONNECTED
        self._retry_attempt = 0

        connection.close_callbacks.add(self._on_connection_closed)

        logger.info("Successfully connected to RabbitMQ", host=self.current_host)

    async def close(self) -> None:
        """Close the channel and connection without scheduling a reconnect."""
        self._closing = True

        if self._retry_task is not None and self._retry_task is not asyncio.current_task():
            self._retry_task.cancel()
        self._retry_task = None

        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None
        self._state = ConnectionState.DISCONNECTED

        if channel is not None:
            try:
                if not channel.is_closed:
                    await channel.close()
            except Exception as e:
                logger.warning(f"Error closing sender channel: {e}")

        if connection is not None:
            try:
                if not connection.is_closed:
                    await connection.close()
            except Exception as e:
                logger.warning(f"Error closing sender connection: {e}")

        logger.info("Sender closed", host=self.current_host)

    def _on_connection_closed(
        self,
        sender: AbstractConnection | None,
        exc: BaseException | None = None,
    ) -> None:
        if self._closing or sender is not self._connection:
            return

        if exc is not None:
            logger.error(
                "RabbitMQ connection error",
                host=self.current_host,
                error=str(exc),
            )
        else:
            logger.warning(
                "RabbitMQ connection closed, attempting to reconnect",
                host=self.current_host,
            )

        self._handle_disconnect()

    def _handle_disconnect(self) -> None:
        """Drop connection state and schedule a reconnect if the policy allows."""
        self._channel = None
        self._connection = None
        self._state = ConnectionState.DISCONNECTED

        max_attempts = self._details.connection_retry_attempts
        delay_ms = self._details.connection_retry_delay_ms

        if max_attempts == 0 or delay_ms <= 0:
            logger.warning(
                "No retry attempts configured or retry delay is not positive. "
                "Not attempting to reconnect."
            )
            return

        if max_attempts > 0:
            self._retry_attempt += 1
            if self._retry_attempt > max_attempts:
                logger.error(
                    f"Max connection retry attempts reached ({max_attempts}). Stopping retries."
                )
                return

            logger.warning(
                f"Retrying connection to RabbitMQ in {delay_ms}ms... "
                f"Attempt {self._retry_attempt} of {max_attempts}"
            )

        self._retry_task = asyncio.create_task(self._reconnect_after(delay_ms))

    async def _reconnect_after(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000)
        if self._closing:
            return
        # The failed host may be swapped for another one
        self._url = self.build_url()
        await self.connect()

    @staticmethod
    def _build_message(message: Any) -> Message:
        return Message(
            body=json.dumps(message).encode("utf-8"),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
        )

    async def send_message_queue(self, queue: str, message: Any) -> bool:
        """Send ``message`` as JSON to ``queue``, declaring it durable first.

        Returns:
            True if the broker accepted the message, False otherwise.
        """
        if self._channel is None:
            logger.error("Cannot send message, RabbitMQ channel is not available.", queue=queue)
            return False

        try:
            await self._channel.declare_queue(queue, durable=True)
            await self._channel.default_exchange.publish(
                self._build_message(message),
                routing_key=queue,
            )
        except Exception as e:
            logger.error(
                "Error sending message to queue",
                queue=queue,
                host=self.current_host,
                error=str(e),
            )
            return False

        logger.info("Message sent to queue", queue=queue, host=self.current_host)
        return True

    async def send_message(
        self,
        queue_name_or_routing_key: str,
        exchange_name: str,
        message: Any,
    ) -> SendResult:
        """Publish ``message`` to an exchange with a routing key.

        An empty ``exchange_name`` publishes through the default exchange,
        i.e. straight to the queue named by the routing key.
        """
        result = SendResult()

        if self._channel is None:
            result.error_code = 500
            result.error_description = "Not connected to RabbitMQ"
            return result

        if not queue_name_or_routing_key and not exchange_name:
            result.error_code = 400
            result.error_description = (
                "Queue name or routing key and exchange name must be provided"
            )
            return result

        try:
            if exchange_name:
                exchange = await self._channel.get_exchange(exchange_name, ensure=False)
            else:
                exchange = self._channel.default_exchange

            await exchange.publish(
                self._build_message(message),
                routing_key=queue_name_or_routing_key,
            )
        except Exception as e:
            logger.error(
                "Failed to publish message",
                exchange=exchange_name,
                routing_key=queue_name_or_routing_key,
                error=str(e),
            )
            result.error_code = 500
            result.error_description = f"Failed to send message: {e}"
            return result

        logger.debug(
            "Message published",
            exchange=exchange_name,
            routing_key=queue_name_or_routing_key,
        )
        result.success = True
        return result
