"""HTTP host for the messaging layer.

Handles:
- Sender connection and consumer startup on boot
- Graceful shutdown of consumers and the sender
- Prometheus metrics for the broker connections
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from prometheus_client import Gauge
from prometheus_fastapi_instrumentator import Instrumentator

from rmq_messaging import __version__
from rmq_messaging.client import MessagingClient
from rmq_messaging.config import Settings, get_settings
from rmq_messaging.consumer import ConsumerPool
from rmq_messaging.errors import ConfigurationError, MessagingError
from rmq_messaging.events import EventPublisher
from rmq_messaging.log import setup_logging
from rmq_messaging.routes import router
from rmq_messaging.sender import MessageSender


# Metrics
SENDER_STATUS = Gauge("rmq_messaging_sender_status", "Sender connection status (1=connected, 0=disconnected)")
RUNNING_CONSUMERS = Gauge("rmq_messaging_running_consumers", "Number of running consumers")
POOL_CONNECTIONS = Gauge("rmq_messaging_pool_connections", "Physical connections held by the consumer pool")


async def update_metrics(app: FastAPI) -> None:
    """Refresh the broker gauges every few seconds."""
    while True:
        sender: MessageSender | None = getattr(app.state, "sender", None)
        client: MessagingClient | None = getattr(app.state, "client", None)

        SENDER_STATUS.set(1 if sender is not None and sender.is_connected else 0)
        RUNNING_CONSUMERS.set(client.pool.total_running_consumers if client else 0)
        POOL_CONNECTIONS.set(client.pool.total_running_connections if client else 0)

        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            break


def build_sender(settings: Settings) -> MessageSender | None:
    try:
        return MessageSender(settings.sender_connection_details())
    except ConfigurationError as e:
        logger.warning(f"Sender disabled: {e}")
        return None


def build_client(settings: Settings) -> MessagingClient | None:
    try:
        pool = ConsumerPool(settings.consumer_connection_details())
    except ConfigurationError as e:
        logger.warning(f"Consumers disabled: {e}")
        return None
    return MessagingClient(settings, pool)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Connect the sender and start consumers; undo both on shutdown."""
    settings = get_settings()

    logger.info(
        "Starting RMQ Messaging",
        version=__version__,
        sender_url=settings.sender_url_masked,
    )

    sender = build_sender(settings)
    client = build_client(settings)

    app.state.sender = sender
    app.state.client = client
    app.state.events = EventPublisher(sender, settings.rabbitmq_events_queue)

    if sender is not None:
        await sender.connect()
    if client is not None:
        await client.start()

    metrics_task = asyncio.create_task(update_metrics(app))

    logger.info("RMQ Messaging started")

    yield

    logger.info("Shutting down RMQ Messaging")

    metrics_task.cancel()
    try:
        await metrics_task
    except asyncio.CancelledError:
        pass

    if client is not None:
        try:
            await client.stop()
            await client.pool.close()
        except Exception as e:
            logger.error(f"Error stopping consumers: {e}")

    if sender is not None:
        await sender.close()

    logger.info("RMQ Messaging shutdown complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the host application around the messaging layer."""
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description="RabbitMQ publisher and pooled consumers",
        version=__version__,
        lifespan=lifespan,
    )

    if not settings.disable_prometheus:
        Instrumentator().instrument(app).expose(app)

    app.include_router(router)

    @app.exception_handler(MessagingError)
    async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
        logger.error(f"Messaging error: {exc}")
        return JSONResponse(
            status_code=503,
            content={"error": "messaging_error", "detail": str(exc)},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "rmq_messaging.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
