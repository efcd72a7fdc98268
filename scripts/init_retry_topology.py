#!/usr/bin/env python3
"""
Delayed Retry Topology Initialization Script

Declares the work queue consumed by the application and the retry queue used
for ``REQUEUE_MESSAGE_WITH_DELAY``:

    consumer --(copy with per-message TTL)--> retry queue
    retry queue --(TTL expired, dead-lettered)--> work queue

The retry queue has no consumers. Each copy carries its own expiration, and
once it elapses the broker dead-letters the message through the default
exchange back to the work queue.

Usage:
    python scripts/init_retry_topology.py

Environment Variables:
    RABBITMQ_HOST_CONSUMER / RABBITMQ_HOST, RABBITMQ_PORT, RABBITMQ_USER,
    RABBITMQ_PASSWORD, RABBITMQ_VHOST, RABBITMQ_USER_QUEUE_CONSUMER,
    RABBITMQ_RETRY_QUEUE
"""

import asyncio
import sys

import aio_pika
from loguru import logger

from rmq_messaging.config import get_settings
from rmq_messaging.consumer import ConnectionParameters
from rmq_messaging.hosts import split_hosts


def retry_queue_arguments(work_queue: str) -> dict[str, str]:
    """Queue arguments that route expired retry copies back to ``work_queue``."""
    return {
        "x-dead-letter-exchange": "",
        "x-dead-letter-routing-key": work_queue,
    }


async def init_topology(params: ConnectionParameters, work_queue: str, retry_queue: str | None) -> None:
    """Declare the work queue and, when configured, its retry queue."""
    logger.info(f"Connecting to RabbitMQ: {params.hostname}:{params.port}")

    connection = await aio_pika.connect(**params.connect_kwargs())

    async with connection:
        channel = await connection.channel()

        await channel.declare_queue(work_queue, durable=True)
        logger.info(f"Work queue declared: {work_queue}")

        if retry_queue:
            await channel.declare_queue(
                retry_queue,
                durable=True,
                arguments=retry_queue_arguments(work_queue),
            )
            logger.info(f"Retry queue declared: {retry_queue} -> {work_queue}")
        else:
            logger.warning("RABBITMQ_RETRY_QUEUE is not set; delayed retries will be dropped")


def main() -> int:
    """Main entry point."""
    settings = get_settings()
    details = settings.consumer_connection_details()

    hosts = split_hosts(details.hostname)
    if not hosts:
        logger.error("No RabbitMQ host configured")
        return 1
    if not settings.rabbitmq_user_queue_consumer:
        logger.error("RABBITMQ_USER_QUEUE_CONSUMER is not set")
        return 1

    params = ConnectionParameters(
        hostname=hosts[0],
        port=details.port or 5672,
        username=details.username,
        password=details.password,
        vhost=details.vhost,
    )

    asyncio.run(init_topology(params, settings.rabbitmq_user_queue_consumer, details.retry_queue))
    return 0


if __name__ == "__main__":
    sys.exit(main())
