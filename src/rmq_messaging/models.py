"""Pydantic V2 models and shared types for the messaging layer."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_PORT = 5672
DEFAULT_CONNECTION_DESCRIPTION = "Default Connection"
DEFAULT_MAX_CHANNELS_PER_CONNECTION = 3


class MessageProcessInstruction(str, Enum):
    """What the consumer pool does with a message once the handler returns."""

    OK = "OK"
    IGNORE_MESSAGE = "IGNORE_MESSAGE"
    IGNORE_MESSAGE_WITH_REQUEUE = "IGNORE_MESSAGE_WITH_REQUEUE"
    REQUEUE_MESSAGE_WITH_DELAY = "REQUEUE_MESSAGE_WITH_DELAY"


class ConnectionDetailsBase(BaseModel):
    """Broker coordinates shared by the sender and the consumer pool.

    ``hostname`` may hold several hosts separated by ``,`` or ``;``.
    A ``password`` of ``""`` is kept apart from ``None``: the former is still
    written to the broker URL.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    hostname: str
    port: Optional[int] = Field(default=DEFAULT_PORT, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[str] = None
    vhost: Optional[str] = None
    connection_description: Optional[str] = None
    connection_timeout_ms: int = Field(default=10_000, ge=0)

    @property
    def connection_timeout_seconds(self) -> float:
        return (self.connection_timeout_ms or 10_000) / 1000


class SenderConnectionDetails(ConnectionDetailsBase):
    """Connection details for the publisher."""

    select_random_host: bool = True
    select_sequential_host: bool = False
    connection_retry_delay_ms: int = 5000
    connection_retry_attempts: int = 10


class ConsumerConnectionDetails(ConnectionDetailsBase):
    """Connection details for the consumer pool."""

    max_channels_per_connection: int = DEFAULT_MAX_CHANNELS_PER_CONNECTION
    use_retry_count_for_requeued_messages: bool = False
    message_retry_ttl_seconds_min: int = 0
    message_retry_ttl_seconds_max: int = 0
    retry_queue: Optional[str] = None

    @field_validator("max_channels_per_connection", mode="before")
    @classmethod
    def _default_max_channels(cls, value: Any) -> Any:
        if value is None:
            return DEFAULT_MAX_CHANNELS_PER_CONNECTION
        return value

    @field_validator("max_channels_per_connection")
    @classmethod
    def _coerce_max_channels(cls, value: int) -> int:
        return value if value > 0 else DEFAULT_MAX_CHANNELS_PER_CONNECTION

    @field_validator(
        "message_retry_ttl_seconds_min",
        "message_retry_ttl_seconds_max",
        mode="before",
    )
    @classmethod
    def _coerce_ttl(cls, value: Any) -> Any:
        if value is None:
            return 0
        return value

    @field_validator("message_retry_ttl_seconds_min", "message_retry_ttl_seconds_max")
    @classmethod
    def _non_negative_ttl(cls, value: int) -> int:
        return max(value, 0)

    @field_validator("retry_queue")
    @classmethod
    def _blank_retry_queue(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


@dataclass
class SendResult:
    """Outcome of ``MessageSender.send_message``.

    Callers branch on ``success``; ``error_code`` follows HTTP conventions
    (400 for a bad destination, 500 for broker trouble).
    """

    success: bool = False
    error_code: int = 0
    error_description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "error_code": self.error_code,
            "error_description": self.error_description,
        }


class PublishRequest(BaseModel):
    """Request model for ``POST /v1/publish``."""

    model_config = ConfigDict(extra="forbid")

    exchange: str = Field(default="", description="Target exchange; empty means the default exchange")
    routing_key: str = Field(default="", description="Routing key, or queue name for the default exchange")
    payload: Dict[str, Any] = Field(..., description="JSON-serializable message body")
