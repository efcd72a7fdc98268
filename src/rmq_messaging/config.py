"""Environment settings for the publisher, the consumer pool and the host app.

Broker settings come in three flavours: a generic key (``RABBITMQ_HOST``) and
role-specific keys (``RABBITMQ_HOST_SENDER``, ``RABBITMQ_HOST_CONSUMER``).
A role-specific value wins; the generic key is the shared fallback.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from rmq_messaging.models import ConsumerConnectionDetails, SenderConnectionDetails


def _pick(*values):
    """Return the first value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None


class Settings(BaseSettings):
    """Settings read from the environment (and ``.env``).

    Keys are case-insensitive. Broker keys stay ``None`` when unset so the
    role/generic fallback can tell "missing" from "empty".
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Broker connection, generic and per role
    rabbitmq_host: Optional[str] = None
    rabbitmq_host_sender: Optional[str] = None
    rabbitmq_host_consumer: Optional[str] = None

    rabbitmq_port: Optional[int] = Field(default=None, ge=1, le=65535)
    rabbitmq_port_sender: Optional[int] = Field(default=None, ge=1, le=65535)
    rabbitmq_port_consumer: Optional[int] = Field(default=None, ge=1, le=65535)

    rabbitmq_user: Optional[str] = None
    rabbitmq_user_sender: Optional[str] = None
    rabbitmq_user_consumer: Optional[str] = None

    rabbitmq_password: Optional[str] = None
    rabbitmq_password_sender: Optional[str] = None
    rabbitmq_password_consumer: Optional[str] = None

    rabbitmq_vhost: Optional[str] = None
    rabbitmq_vhost_sender: Optional[str] = None
    rabbitmq_vhost_consumer: Optional[str] = None

    rabbitmq_connection_description: Optional[str] = None
    rabbitmq_connection_description_sender: Optional[str] = None
    rabbitmq_connection_description_consumer: Optional[str] = None

    rabbitmq_connection_timeout: Optional[int] = Field(
        default=None,
        ge=0,
        description="Connect timeout in milliseconds",
    )
    rabbitmq_connection_timeout_sender: Optional[int] = Field(default=None, ge=0)
    rabbitmq_connection_timeout_consumer: Optional[int] = Field(default=None, ge=0)

    # Sender host selection and reconnect policy
    rabbitmq_select_random_host: Optional[bool] = None
    rabbitmq_select_random_host_sender: Optional[bool] = None
    rabbitmq_select_sequencial_host: Optional[bool] = None
    rabbitmq_select_sequencial_host_sender: Optional[bool] = None
    rabbitmq_connection_retry_delay: Optional[int] = Field(
        default=None,
        description="Delay in milliseconds before the sender reconnects",
    )
    rabbitmq_connection_retry_delay_sender: Optional[int] = None
    rabbitmq_connection_retry_attempts: Optional[int] = Field(
        default=None,
        description="Maximum sender reconnect attempts (0 disables reconnects)",
    )
    rabbitmq_connection_retry_attempts_sender: Optional[int] = None

    # Consumer pool
    rabbitmq_max_channels_per_connection: int = Field(
        default=3,
        description="Channels opened on one physical connection before a new one is created",
    )
    rabbitmq_use_retry_count_for_requed_messages: bool = Field(
        default=False,
        description="Maintain a retry counter header on requeued messages",
    )
    rabbitmq_retry_queue_message_ttl_in_seconds_min: int = Field(default=0)
    rabbitmq_retry_queue_message_ttl_in_seconds_max: int = Field(default=0)
    rabbitmq_retry_queue: Optional[str] = Field(
        default=None,
        description="Queue receiving messages requeued with a delay",
    )

    # Consumer facade
    rabbitmq_consumer_enabled: bool = Field(
        default=False,
        description="Start consumers on application startup",
    )
    rabbitmq_user_queue_consumer: str = Field(
        default="",
        description="Queue consumed by the application",
    )
    rabbitmq_consumer_instances_to_start: int = Field(default=1, ge=0)
    rabbitmq_consumer_max_reconnect_attempts: int = Field(
        default=0,
        description="0 disables reconnects, a negative value retries forever",
    )
    rabbitmq_consumer_reconnect_delay: int = Field(
        default=10_000,
        ge=1,
        description="Interval in milliseconds between consumer reconnect attempts",
    )

    # Destination for domain events; empty means do not publish
    rabbitmq_events_queue: str = Field(default="")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format (json for production, text for development)",
    )
    log_file: str | None = Field(
        default=None,
        description="Path to log file. If None, logs only to stdout.",
    )
    log_rotation: str = Field(default="500 MB")
    log_retention: str = Field(default="10 days")

    # Host application
    app_name: str = Field(default="rmq-messaging")
    app_host: str = Field(
        default="0.0.0.0",  # nosec
        description="Host to bind the HTTP server",
    )
    app_port: int = Field(default=8000, ge=1, le=65535)
    disable_prometheus: bool = Field(default=False)

    def sender_connection_details(self) -> SenderConnectionDetails:
        """Build the publisher connection record, sender keys first."""
        return SenderConnectionDetails(
            hostname=_pick(self.rabbitmq_host_sender, self.rabbitmq_host) or "",
            port=_pick(self.rabbitmq_port_sender, self.rabbitmq_port, 5672),
            username=_pick(self.rabbitmq_user_sender, self.rabbitmq_user),
            password=_pick(self.rabbitmq_password_sender, self.rabbitmq_password),
            vhost=_pick(self.rabbitmq_vhost_sender, self.rabbitmq_vhost),
            connection_description=_pick(
                self.rabbitmq_connection_description_sender,
                self.rabbitmq_connection_description,
            ),
            connection_timeout_ms=_pick(
                self.rabbitmq_connection_timeout_sender,
                self.rabbitmq_connection_timeout,
                10_000,
            ),
            select_random_host=_pick(
                self.rabbitmq_select_random_host_sender,
                self.rabbitmq_select_random_host,
                True,
            ),
            select_sequential_host=_pick(
                self.rabbitmq_select_sequencial_host_sender,
                self.rabbitmq_select_sequencial_host,
                False,
            ),
            connection_retry_delay_ms=_pick(
                self.rabbitmq_connection_retry_delay_sender,
                self.rabbitmq_connection_retry_delay,
                5000,
            ),
            connection_retry_attempts=_pick(
                self.rabbitmq_connection_retry_attempts_sender,
                self.rabbitmq_connection_retry_attempts,
                10,
            ),
        )

    def consumer_connection_details(self) -> ConsumerConnectionDetails:
        """Build the consumer pool connection record, consumer keys first."""
        return ConsumerConnectionDetails(
            hostname=_pick(self.rabbitmq_host_consumer, self.rabbitmq_host) or "",
            port=_pick(self.rabbitmq_port_consumer, self.rabbitmq_port, 5672),
            username=_pick(self.rabbitmq_user_consumer, self.rabbitmq_user),
            password=_pick(self.rabbitmq_password_consumer, self.rabbitmq_password),
            vhost=_pick(self.rabbitmq_vhost_consumer, self.rabbitmq_vhost),
            connection_description=_pick(
                self.rabbitmq_connection_description_consumer,
                self.rabbitmq_connection_description,
            ),
            connection_timeout_ms=_pick(
                self.rabbitmq_connection_timeout_consumer,
                self.rabbitmq_connection_timeout,
                10_000,
            ),
            max_channels_per_connection=self.rabbitmq_max_channels_per_connection,
            use_retry_count_for_requeued_messages=self.rabbitmq_use_retry_count_for_requed_messages,
            message_retry_ttl_seconds_min=self.rabbitmq_retry_queue_message_ttl_in_seconds_min,
            message_retry_ttl_seconds_max=self.rabbitmq_retry_queue_message_ttl_in_seconds_max,
            retry_queue=self.rabbitmq_retry_queue,
        )

    @property
    def consumer_name(self) -> str:
        """Logical consumer name, taken from the consumer connection label."""
        return (
            _pick(
                self.rabbitmq_connection_description_consumer,
                self.rabbitmq_connection_description,
            )
            or "consumer"
        )

    @property
    def sender_url_masked(self) -> str:
        """Return the sender host list with credentials masked for logging."""
        details = self.sender_connection_details()
        user = details.username or ""
        auth = f"{user}:****@" if user else ""
        return f"amqp://{auth}{details.hostname}:{details.port}"


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings.

    The environment is read once; tests call ``get_settings.cache_clear()``.
    """
    return Settings()
