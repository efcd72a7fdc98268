"""Integration tests using Testcontainers or external RabbitMQ."""

import asyncio
import json
import logging
import socket
import uuid

import aio_pika
import pytest
from testcontainers.core.container import DockerContainer
from testcontainers.core.waiting_utils import wait_for_logs

from rmq_messaging.consumer import ConsumerCallbacks, ConsumerPool
from rmq_messaging.models import (
    ConsumerConnectionDetails,
    MessageProcessInstruction,
    SenderConnectionDetails,
)
from rmq_messaging.sender import MessageSender

logger = logging.getLogger(__name__)


def is_port_open(host: str, port: int) -> bool:
    """Check if a TCP port is open."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(1)
        return s.connect_ex((host, port)) == 0


@pytest.fixture(scope="module")
def broker():
    """Yield ``(host, port)`` of a running RabbitMQ."""
    if is_port_open("localhost", 5672):
        logger.info("Using existing RabbitMQ instance on localhost:5672")
        yield "localhost", 5672
        return

    logger.info("Falling back to Testcontainers (DockerContainer)...")
    container = DockerContainer("rabbitmq:4.0-management").with_exposed_ports(5672)
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"No RabbitMQ available: {e}")

    try:
        wait_for_logs(container, "Server startup complete", timeout=60)
        yield container.get_container_host_ip(), int(container.get_exposed_port(5672))
    finally:
        container.stop()


@pytest.fixture
def queue_name():
    return f"test.integration.q.{uuid.uuid4().hex[:8]}"


async def declare(host: str, port: int, name: str, **arguments) -> None:
    connection = await aio_pika.connect(host=host, port=port, login="guest", password="guest")
    async with connection:
        channel = await connection.channel()
        await channel.declare_queue(name, durable=True, arguments=arguments or None)


class RecordingCallbacks(ConsumerCallbacks):
    def __init__(self, instructions):
        self.instructions = list(instructions)
        self.deliveries = []
        self.errors = []
        self.done = asyncio.Event()

    async def on_message_received(self, message, content, consumer_tag, *retry):
        self.deliveries.append((content, retry))
        instruction = self.instructions.pop(0)
        if not self.instructions:
            self.done.set()
        if isinstance(instruction, Exception):
            raise instruction
        return instruction

    def on_processing_error(self, error, consumer_tag, message):
        self.errors.append(error)


def consumer_details(host: str, port: int, **overrides) -> ConsumerConnectionDetails:
    return ConsumerConnectionDetails(
        hostname=host,
        port=port,
        username="guest",
        password="guest",
        **overrides,
    )


@pytest.mark.asyncio
async def test_send_message_queue_roundtrip(broker, queue_name):
    """A persistent JSON message lands in a freshly declared durable queue."""
    host, port = broker
    sender = MessageSender(
        SenderConnectionDetails(hostname=host, port=port, username="guest", password="guest")
    )
    await sender.connect()
    assert sender.is_connected

    try:
        assert await sender.send_message_queue(queue_name, {"x": 1}) is True
    finally:
        await sender.close()

    connection = await aio_pika.connect(host=host, port=port, login="guest", password="guest")
    async with connection:
        channel = await connection.channel()
        queue = await channel.declare_queue(queue_name, durable=True)
        message = await queue.get(timeout=5)
        await message.ack()

    assert json.loads(message.body) == {"x": 1}
    assert message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT


@pytest.mark.asyncio
async def test_pool_bounds_channels_per_connection(broker, queue_name):
    host, port = broker
    await declare(host, port, queue_name)

    pool = ConsumerPool(consumer_details(host, port, max_channels_per_connection=2))
    try:
        await pool.start_consumers("itest", queue_name, 3)
        assert pool.total_running_consumers == 3
        assert pool.total_running_connections == 2
    finally:
        await pool.close()

    assert pool.total_running_connections == 0


@pytest.mark.asyncio
async def test_delayed_retry_comes_back_with_headers(broker, queue_name):
    host, port = broker
    retry_queue = f"{queue_name}.retry"
    await declare(host, port, queue_name)
    await declare(
        host,
        port,
        retry_queue,
        **{"x-dead-letter-exchange": "", "x-dead-letter-routing-key": queue_name},
    )

    callbacks = RecordingCallbacks(
        [MessageProcessInstruction.REQUEUE_MESSAGE_WITH_DELAY, MessageProcessInstruction.OK]
    )
    pool = ConsumerPool(
        consumer_details(
            host,
            port,
            retry_queue=retry_queue,
            message_retry_ttl_seconds_min=1,
            message_retry_ttl_seconds_max=1,
            use_retry_count_for_requeued_messages=True,
        ),
        callbacks,
    )
    sender = MessageSender(
        SenderConnectionDetails(hostname=host, port=port, username="guest", password="guest")
    )

    try:
        await pool.start_consumers("itest", queue_name, 1)
        await sender.connect()
        await sender.send_message_queue(queue_name, {"order": 1})
        await asyncio.wait_for(callbacks.done.wait(), timeout=15)
    finally:
        await sender.close()
        await pool.close()

    (_, first_retry), (content, second_retry) = callbacks.deliveries
    assert json.loads(content) == {"order": 1}
    assert first_retry == (None, None, None, 0)
    first_retry_date, last_retry_date, _, retry_count = second_retry
    assert first_retry_date is not None
    assert last_retry_date is not None
    assert retry_count == 1


@pytest.mark.asyncio
async def test_handler_error_drops_message(broker, queue_name):
    host, port = broker
    await declare(host, port, queue_name)

    callbacks = RecordingCallbacks([ValueError("bad payload")])
    pool = ConsumerPool(consumer_details(host, port), callbacks)
    sender = MessageSender(
        SenderConnectionDetails(hostname=host, port=port, username="guest", password="guest")
    )

    try:
        await pool.start_consumers("itest", queue_name, 1)
        await sender.connect()
        await sender.send_message_queue(queue_name, {"order": 2})
        await asyncio.wait_for(callbacks.done.wait(), timeout=10)
        # Give a redelivery the chance to show up
        await asyncio.sleep(1)
    finally:
        await sender.close()
        await pool.close()

    assert len(callbacks.errors) == 1
    assert len(callbacks.deliveries) == 1
