"""HTTP endpoints of the messaging host application.

Provides:
- Publishing a JSON message through the sender
- Liveness and readiness checks
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger
from pydantic import BaseModel

from rmq_messaging.client import MessagingClient
from rmq_messaging.models import PublishRequest
from rmq_messaging.sender import MessageSender


# Bodies


class PublishResponse(BaseModel):
    """Body returned once the broker accepted a message."""

    status: str = "accepted"
    exchange: str
    routing_key: str


class HealthResponse(BaseModel):
    status: str
    service: str = "rmq-messaging"


class ReadyResponse(BaseModel):
    """Broker-side readiness details."""

    status: str
    service: str = "rmq-messaging"
    sender_connected: bool
    sender_state: str
    sender_host: str | None = None
    consumers_enabled: bool
    running_consumers: int
    open_connections: int


class ErrorResponse(BaseModel):
    """Error body used inside ``HTTPException.detail``."""

    error: str
    detail: str | None = None


# Dependencies


def get_sender(request: Request) -> MessageSender | None:
    return getattr(request.app.state, "sender", None)


def get_client(request: Request) -> MessagingClient | None:
    return getattr(request.app.state, "client", None)


# Routers

router = APIRouter()
v1_router = APIRouter(prefix="/v1", tags=["Messaging"])
health_router = APIRouter(tags=["Health"])


@v1_router.post(
    "/publish",
    response_model=PublishResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse, "description": "No destination given"},
        503: {"model": ErrorResponse, "description": "RabbitMQ unavailable"},
    },
)
async def publish_message(
    body: PublishRequest,
    sender: Annotated[MessageSender | None, Depends(get_sender)],
) -> PublishResponse:
    """Publish a persistent JSON message to an exchange or queue."""
    if sender is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=ErrorResponse(
                error="service_unavailable",
                detail="Sender is not configured",
            ).model_dump(),
        )

    result = await sender.send_message(body.routing_key, body.exchange, body.payload)

    if not result.success:
        if result.error_code == 400:
            status_code = status.HTTP_400_BAD_REQUEST
            error = "validation_error"
        else:
            status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            error = "service_unavailable"
        logger.warning(
            "Publish rejected",
            exchange=body.exchange,
            routing_key=body.routing_key,
            error_code=result.error_code,
        )
        raise HTTPException(
            status_code=status_code,
            detail=ErrorResponse(error=error, detail=result.error_description).model_dump(),
        )

    return PublishResponse(exchange=body.exchange, routing_key=body.routing_key)


@health_router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness check; does not touch the broker."""
    return HealthResponse(status="healthy")


@health_router.get(
    "/ready",
    response_model=ReadyResponse,
    responses={503: {"model": ErrorResponse, "description": "Not ready"}},
)
async def readiness_check(
    sender: Annotated[MessageSender | None, Depends(get_sender)],
    client: Annotated[MessagingClient | None, Depends(get_client)],
) -> ReadyResponse:
    """Readiness check: ready once the sender holds an open channel."""
    if sender is None or not sender.is_connected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=ErrorResponse(
                error="not_ready",
                detail=f"Sender state: {sender.state.value if sender else 'not configured'}",
            ).model_dump(),
        )

    return ReadyResponse(
        status="ready",
        sender_connected=True,
        sender_state=sender.state.value,
        sender_host=sender.current_host,
        consumers_enabled=client.is_enabled if client else False,
        running_consumers=client.pool.total_running_consumers if client else 0,
        open_connections=client.pool.total_running_connections if client else 0,
    )


router.include_router(health_router)
router.include_router(v1_router)
