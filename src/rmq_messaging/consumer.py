"""Consumer pool: many logical consumers over few physical connections.

Each logical consumer gets its own channel. Channels are packed onto physical
connections up to ``max_channels_per_connection``; a new connection is only
opened when every pooled connection is full, and a connection is closed as
soon as its last channel goes away.

Consumers are addressed by an internal tag ``{consumer_name}_{index}``, which
is also passed to the broker as the consumer tag.

For every delivery the application handler returns a
``MessageProcessInstruction``:

- ``OK``: ack
- ``IGNORE_MESSAGE``: nack without requeue (the message is dropped)
- ``IGNORE_MESSAGE_WITH_REQUEUE``: publish a stamped copy to the same queue,
  then nack the original
- ``REQUEUE_MESSAGE_WITH_DELAY``: publish a stamped copy with a random TTL to
  the retry queue (dropped when none is configured), then nack the original

A handler exception is reported through ``on_processing_error`` and the
message is nacked without requeue. Processing errors are never retried.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractIncomingMessage
from loguru import logger

from rmq_messaging.errors import BrokerConnectionError, ConfigurationError
from rmq_messaging.hosts import split_hosts
from rmq_messaging.models import (
    DEFAULT_CONNECTION_DESCRIPTION,
    DEFAULT_MAX_CHANNELS_PER_CONNECTION,
    DEFAULT_PORT,
    ConsumerConnectionDetails,
    MessageProcessInstruction,
)
from rmq_messaging.redelivery import (
    MessageProperties,
    RetryInfo,
    prepare_requeue_properties,
    random_retry_ttl,
)


class ConsumerCallbacks:
    """Hooks the consumer pool calls into application code.

    Subclass and override what you need. The default handler drops every
    message, the other hooks do nothing.
    """

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
        return MessageProcessInstruction.IGNORE_MESSAGE

    def on_consumer_shutdown(self, consumer_tag: str) -> None:
        pass

    def on_processing_error(
        self,
        error: Exception,
        consumer_tag: str,
        message: AbstractIncomingMessage,
    ) -> None:
        pass

    def on_connection_closed(
        self,
        hostname: str | None,
        removed_count: int,
        total_running: int,
    ) -> None:
        pass


@dataclass
class ConnectionParameters:
    """Where and how to open one physical connection."""

    hostname: str
    port: int = DEFAULT_PORT
    username: str | None = None
    password: str | None = None
    vhost: str | None = None

    def connect_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"host": self.hostname, "port": self.port}
        if self.username is not None:
            kwargs["login"] = self.username
        if self.password is not None:
            kwargs["password"] = self.password
        if self.vhost:
            kwargs["virtualhost"] = self.vhost
        return kwargs


@dataclass(eq=False)
class ConnectionWrapper:
    """A pooled physical connection and the number of channels open on it."""

    connection: AbstractConnection
    hostname: str | None
    id: int
    channel_count: int = 0
    closing: bool = False


@dataclass(eq=False)
class RunningConsumer:
    """One logical consumer: its own channel on a pooled connection."""

    channel: AbstractChannel
    consumer_tag: str  # as returned by the broker
    connection_wrapper: ConnectionWrapper
    queue_name: str = field(default="")


class ConsumerPool:
    """Start, stop and serve named consumers over a bounded connection pool.

    All bookkeeping (channel counts, the connection list, the running map) is
    mutated in synchronous blocks between awaits, so callbacks scheduled on
    the same event loop never see a half-updated pool.
    """

    def __init__(
        self,
        connection_details: ConsumerConnectionDetails,
        callbacks: ConsumerCallbacks | None = None,
    ):
        """Initialize the pool.

        Raises:
            ConfigurationError: if no hostname is configured.
        """
        if not connection_details.hostname or not connection_details.hostname.strip():
            raise ConfigurationError(
                "Configuration error: hostname must be provided and cannot be empty."
            )

        self.callbacks = callbacks or ConsumerCallbacks()

        self._configs = [
            ConnectionParameters(
                hostname=host,
                port=connection_details.port or DEFAULT_PORT,
                username=connection_details.username,
                password=connection_details.password,
                vhost=connection_details.vhost,
            )
            for host in split_hosts(connection_details.hostname)
        ]
        if not self._configs:
            raise ConfigurationError("No RabbitMQ hosts provided in the list.")

        self._max_channels = connection_details.max_channels_per_connection
        if self._max_channels <= 0:
            self._max_channels = DEFAULT_MAX_CHANNELS_PER_CONNECTION

        self._ttl_min = max(connection_details.message_retry_ttl_seconds_min, 0)
        self._ttl_max = max(connection_details.message_retry_ttl_seconds_max, 0)
        self._retry_queue = connection_details.retry_queue
        self._use_retry_count = connection_details.use_retry_count_for_requeued_messages

        self._connection_description = connection_details.connection_description
        self._connection_timeout = connection_details.connection_timeout_seconds

        self._connections: list[ConnectionWrapper] = []
        self._consumers: dict[str, RunningConsumer] = {}
        self._connection_seq = 0
        self._channel_lock = asyncio.Lock()
        self._shutdown_tasks: set[asyncio.Task] = set()

        logger.info(
            "Consumer pool configured",
            hosts=[c.hostname for c in self._configs],
            max_channels_per_connection=self._max_channels,
            retry_ttl_min=self._ttl_min,
            retry_ttl_max=self._ttl_max,
            retry_queue=self._retry_queue,
        )

    @property
    def max_channels_per_connection(self) -> int:
        return self._max_channels

    @property
    def total_running_consumers(self) -> int:
        return len(self._consumers)

    @property
    def total_running_connections(self) -> int:
        return len(self._connections)

    @property
    def running_consumer_tags(self) -> list[str]:
        return list(self._consumers)

    async def start_consumers(
        self,
        consumer_name: str,
        queue_name: str,
        total_consumers: int,
    ) -> None:
        """Start ``total_consumers`` consumers on ``queue_name``.

        Indexes that are already running are skipped, so calling this twice
        with the same arguments does not duplicate consumers.

        Raises:
            BrokerConnectionError: if a new connection is needed and no host
                accepts it.
        """
        for index in range(total_consumers):
            tag = f"{consumer_name}_{index}"
            if tag in self._consumers:
                logger.warning(f"Consumer with tag {tag} is already running.")
                continue

            channel, wrapper = await self._get_or_create_channel()

            try:
                queue = await channel.get_queue(queue_name, ensure=False)
                broker_tag = await queue.consume(
                    partial(self._on_message, tag, queue_name, channel),
                    consumer_tag=tag,
                )
                # Basic.Cancel from the broker, e.g. the queue was deleted
                underlay = await channel.get_underlay_channel()
                underlay.on_consumer_cancel_callbacks.add(
                    partial(self._on_broker_cancel, tag)
                )
            except Exception:
                await self._release_channel(channel, wrapper)
                raise

            self._consumers[tag] = RunningConsumer(
                channel=channel,
                consumer_tag=broker_tag,
                connection_wrapper=wrapper,
                queue_name=queue_name,
            )

            logger.info(
                f"Consumer {tag} started to consume {queue_name}",
                consumer_tag=tag,
                channel=wrapper.channel_count,
                connection_id=wrapper.id,
                host=wrapper.hostname,
            )

    async def stop_consumer(self, consumer_tag: str) -> None:
        if consumer_tag not in self._consumers:
            logger.warning(f"No consumer found with tag {consumer_tag} to stop.")
            return

        await self._handle_shutdown(consumer_tag)

    async def stop_all_consumers(self) -> None:
        for tag in list(self._consumers):
            await self.stop_consumer(tag)

    async def close(self) -> None:
        """Stop every consumer and close any connection left in the pool."""
        await self.stop_all_consumers()

        leftovers, self._connections = self._connections, []
        for wrapper in leftovers:
            wrapper.closing = True
            try:
                if not wrapper.connection.is_closed:
                    await wrapper.connection.close()
            except Exception as e:
                logger.warning(f"Error closing pooled connection {wrapper.id}: {e}")

    async def _on_message(
        self,
        consumer_tag: str,
        queue_name: str,
        channel: AbstractChannel,
        message: AbstractIncomingMessage,
    ) -> None:
        with logger.contextualize(consumer_tag=consumer_tag):
            try:
                retry = RetryInfo.from_headers(message.headers)
                content = message.body.decode("utf-8", errors="replace")

                instruction = await self.callbacks.on_message_received(
                    message,
                    content,
                    consumer_tag,
                    retry.first_retry_date,
                    retry.last_retry_date,
                    retry.elapsed_time_seconds,
                    retry.retry_count,
                )
                await self._apply_instruction(
                    MessageProcessInstruction(instruction),
                    message,
                    channel,
                    queue_name,
                )
            except Exception as e:
                try:
                    self.callbacks.on_processing_error(e, consumer_tag, message)
                except Exception:
                    logger.exception("Processing error callback failed")
                # No requeue, a poison message must not loop
                await self._nack(message)

    async def _apply_instruction(
        self,
        instruction: MessageProcessInstruction,
        message: AbstractIncomingMessage,
        channel: AbstractChannel,
        queue_name: str,
    ) -> None:
        if instruction is MessageProcessInstruction.OK:
            await message.ack()

        elif instruction is MessageProcessInstruction.IGNORE_MESSAGE:
            await message.nack(requeue=False)

        elif instruction is MessageProcessInstruction.IGNORE_MESSAGE_WITH_REQUEUE:
            # A native requeue cannot carry new headers, publish a stamped copy
            properties, retry_count = prepare_requeue_properties(
                MessageProperties.from_message(message),
                use_retry_count=self._use_retry_count,
            )
            await channel.default_exchange.publish(
                properties.to_message(message.body),
                routing_key=queue_name,
            )
            logger.info(
                f"Message requeued to {queue_name} with new timestamp. Retry count: {retry_count}."
            )
            await message.nack(requeue=False)

        elif instruction is MessageProcessInstruction.REQUEUE_MESSAGE_WITH_DELAY:
            ttl_seconds = random_retry_ttl(self._ttl_min, self._ttl_max)
            properties, retry_count = prepare_requeue_properties(
                MessageProperties.from_message(message),
                ttl_seconds=ttl_seconds,
                use_retry_count=self._use_retry_count,
            )

            if self._retry_queue:
                await channel.default_exchange.publish(
                    properties.to_message(message.body),
                    routing_key=self._retry_queue,
                )
                logger.info(
                    f"Message sent to retry queue '{self._retry_queue}' for delayed processing",
                    ttl_seconds=ttl_seconds,
                    retry_count=retry_count,
                )
            else:
                logger.warning(
                    "Requeue with delay requested, but no retry queue is configured. "
                    "Message will be discarded."
                )

            await message.nack(requeue=False)

    def _on_broker_cancel(self, consumer_tag: str, *_: Any) -> None:
        # One consumer per channel, so any cancel on it is this consumer's
        if consumer_tag not in self._consumers:
            return

        logger.warning("Consumer cancelled by broker", consumer_tag=consumer_tag)
        task = asyncio.create_task(self._handle_shutdown(consumer_tag))
        self._shutdown_tasks.add(task)
        task.add_done_callback(self._shutdown_tasks.discard)

    async def _nack(self, message: AbstractIncomingMessage) -> None:
        try:
            await message.nack(requeue=False)
        except Exception as e:
            logger.error(f"Failed to nack message: {e}")

    async def _handle_shutdown(self, consumer_tag: str) -> None:
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is None:
            return

        wrapper = consumer.connection_wrapper
        wrapper.channel_count -= 1
        close_connection = wrapper.channel_count <= 0
        if close_connection:
            wrapper.channel_count = 0
            wrapper.closing = True
            if wrapper in self._connections:
                self._connections.remove(wrapper)

        try:
            if not consumer.channel.is_closed:
                await consumer.channel.close()
        except Exception as e:
            logger.warning(f"Error closing channel of consumer {consumer_tag}: {e}")

        if close_connection:
            try:
                if not wrapper.connection.is_closed:
                    await wrapper.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection {wrapper.id}: {e}")

        self.callbacks.on_consumer_shutdown(consumer_tag)

    async def _release_channel(
        self,
        channel: AbstractChannel,
        wrapper: ConnectionWrapper,
    ) -> None:
        """Give back a channel that never got a consumer."""
        wrapper.channel_count = max(wrapper.channel_count - 1, 0)
        try:
            if not channel.is_closed:
                await channel.close()
        except Exception as e:
            logger.warning(f"Error closing unused channel: {e}")

    async def _get_or_create_channel(self) -> tuple[AbstractChannel, ConnectionWrapper]:
        # Search, open and reserve as one step across concurrent starts
        async with self._channel_lock:
            wrapper = next(
                (c for c in self._connections if c.channel_count < self._max_channels),
                None,
            )
            if wrapper is None:
                wrapper = await self._open_connection()
            wrapper.channel_count += 1

        try:
            channel = await wrapper.connection.channel()
        except Exception:
            wrapper.channel_count -= 1
            raise

        return channel, wrapper

    async def _open_connection(self) -> ConnectionWrapper:
        """Open a connection to the first configured host that accepts one."""
        last_error: Exception | None = None
        description = self._connection_description or DEFAULT_CONNECTION_DESCRIPTION

        for params in self._configs:
            try:
                connection = await aio_pika.connect(
                    **params.connect_kwargs(),
                    timeout=self._connection_timeout,
                    client_properties={
                        "connection_name": f"{description} ({len(self._connections) + 1})",
                    },
                )
            except Exception as e:
                logger.error(
                    "Failed to connect to RabbitMQ host",
                    host=params.hostname,
                    error=str(e),
                )
                last_error = e
                continue

            self._connection_seq += 1
            wrapper = ConnectionWrapper(
                connection=connection,
                hostname=params.hostname,
                id=self._connection_seq,
            )
            connection.close_callbacks.add(partial(self._on_connection_closed, wrapper))
            self._connections.append(wrapper)
            return wrapper

        raise BrokerConnectionError(
            "Unable to connect to any RabbitMQ host",
            hostname=self._configs[-1].hostname,
        ) from last_error

    def _on_connection_closed(
        self,
        wrapper: ConnectionWrapper,
        sender: Any = None,
        exc: BaseException | None = None,
    ) -> None:
        if wrapper in self._connections:
            self._connections.remove(wrapper)

        if wrapper.closing:
            return

        if exc is not None:
            logger.error(
                "RabbitMQ connection error",
                host=wrapper.hostname,
                connection_id=wrapper.id,
                error=str(exc),
            )

        removed = [
            tag
            for tag, consumer in self._consumers.items()
            if consumer.connection_wrapper is wrapper
        ]
        for tag in removed:
            del self._consumers[tag]
        wrapper.channel_count = 0

        for tag in removed:
            self.callbacks.on_consumer_shutdown(tag)

        logger.warning(
            f"RabbitMQ connection closed. Consumers removed: {len(removed)}. "
            f"Total running: {len(self._consumers)}.",
            host=wrapper.hostname,
            connection_id=wrapper.id,
        )

        self.callbacks.on_connection_closed(
            wrapper.hostname,
            len(removed),
            len(self._consumers),
        )
