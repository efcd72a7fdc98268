"""Header-based redelivery bookkeeping.

A requeued message is never returned to the broker as-is. A copy is published
with three headers describing its retry history:

- ``x-first-requeued-at``: set on the first requeue and never overwritten
- ``x-requeued-at``: overwritten on every requeue
- ``x-retry-count``: incremented on every requeue, only when enabled

The headers are the only state of the protocol; nothing is stored elsewhere.
Everything in this module is pure and does not talk to the broker.
"""

import random
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from aio_pika import Message
from aio_pika.abc import AbstractIncomingMessage


RETRY_COUNT_HEADER = "x-retry-count"
FIRST_REQUEUE_TIMESTAMP_HEADER = "x-first-requeued-at"
REQUEUE_TIMESTAMP_HEADER = "x-requeued-at"

_KNOWN_HEADERS = (RETRY_COUNT_HEADER, FIRST_REQUEUE_TIMESTAMP_HEADER, REQUEUE_TIMESTAMP_HEADER)


def parse_date_header(value: Any) -> datetime | None:
    """Read a timestamp header written as ISO string, datetime or epoch millis."""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def parse_retry_count(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


@dataclass
class RetryHeaders:
    """Typed view of a message header bag.

    The three retry headers get their own fields; everything else, including
    retry headers that could not be parsed, is carried untouched in ``extra``.
    """

    retry_count: int | None = None
    first_requeued_at: datetime | None = None
    requeued_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_headers(cls, headers: Any) -> "RetryHeaders":
        if not isinstance(headers, Mapping):
            return cls()

        extra = {key: value for key, value in headers.items() if key not in _KNOWN_HEADERS}

        retry_count = parse_retry_count(headers.get(RETRY_COUNT_HEADER))
        first = parse_date_header(headers.get(FIRST_REQUEUE_TIMESTAMP_HEADER))
        last = parse_date_header(headers.get(REQUEUE_TIMESTAMP_HEADER))

        for name, parsed in (
            (RETRY_COUNT_HEADER, retry_count),
            (FIRST_REQUEUE_TIMESTAMP_HEADER, first),
            (REQUEUE_TIMESTAMP_HEADER, last),
        ):
            if parsed is None and headers.get(name) is not None:
                extra[name] = headers[name]

        return cls(
            retry_count=retry_count,
            first_requeued_at=first,
            requeued_at=last,
            extra=extra,
        )

    def to_headers(self) -> dict[str, Any]:
        headers = dict(self.extra)
        if self.retry_count is not None:
            headers[RETRY_COUNT_HEADER] = self.retry_count
        if self.first_requeued_at is not None:
            headers[FIRST_REQUEUE_TIMESTAMP_HEADER] = format_timestamp(self.first_requeued_at)
        if self.requeued_at is not None:
            headers[REQUEUE_TIMESTAMP_HEADER] = format_timestamp(self.requeued_at)
        return headers

    def copy(self) -> "RetryHeaders":
        return replace(self, extra=dict(self.extra))


@dataclass
class RetryInfo:
    """Retry metadata handed to the application handler with each message."""

    retry_count: int = 0
    first_retry_date: datetime | None = None
    last_retry_date: datetime | None = None
    elapsed_time_seconds: float | None = None

    @classmethod
    def from_headers(cls, headers: Any) -> "RetryInfo":
        parsed = headers if isinstance(headers, RetryHeaders) else RetryHeaders.from_headers(headers)

        elapsed = None
        if parsed.first_requeued_at and parsed.requeued_at:
            elapsed = (parsed.requeued_at - parsed.first_requeued_at).total_seconds()

        return cls(
            retry_count=parsed.retry_count or 0,
            first_retry_date=parsed.first_requeued_at,
            last_retry_date=parsed.requeued_at,
            elapsed_time_seconds=elapsed,
        )


@dataclass
class MessageProperties:
    """AMQP basic properties of a message, with typed retry headers.

    ``expiration_ms`` is the per-message TTL as it travels on the wire.
    """

    headers: RetryHeaders = field(default_factory=RetryHeaders)
    expiration_ms: int | None = None
    content_type: str | None = None
    content_encoding: str | None = None
    delivery_mode: int | None = None
    priority: int | None = None
    correlation_id: str | None = None
    reply_to: str | None = None
    message_id: str | None = None
    timestamp: datetime | None = None
    type: str | None = None
    user_id: str | None = None
    app_id: str | None = None

    @classmethod
    def from_message(cls, message: AbstractIncomingMessage) -> "MessageProperties":
        expiration = getattr(message, "expiration", None)
        expiration_ms = None
        if isinstance(expiration, (int, float)) and not isinstance(expiration, bool):
            expiration_ms = int(round(expiration * 1000))

        delivery_mode = getattr(message, "delivery_mode", None)

        return cls(
            headers=RetryHeaders.from_headers(getattr(message, "headers", None)),
            expiration_ms=expiration_ms,
            content_type=getattr(message, "content_type", None),
            content_encoding=getattr(message, "content_encoding", None),
            delivery_mode=int(delivery_mode) if delivery_mode is not None else None,
            priority=getattr(message, "priority", None),
            correlation_id=getattr(message, "correlation_id", None),
            reply_to=getattr(message, "reply_to", None),
            message_id=getattr(message, "message_id", None),
            timestamp=getattr(message, "timestamp", None),
            type=getattr(message, "type", None),
            user_id=getattr(message, "user_id", None),
            app_id=getattr(message, "app_id", None),
        )

    def copy(self) -> "MessageProperties":
        return replace(self, headers=self.headers.copy())

    def to_message(self, body: bytes) -> Message:
        """Build an outgoing aio-pika message carrying these properties."""
        return Message(
            body,
            headers=self.headers.to_headers(),
            content_type=self.content_type,
            content_encoding=self.content_encoding,
            delivery_mode=self.delivery_mode,
            priority=self.priority,
            correlation_id=self.correlation_id,
            reply_to=self.reply_to,
            expiration=(
                timedelta(milliseconds=self.expiration_ms)
                if self.expiration_ms is not None
                else None
            ),
            message_id=self.message_id,
            timestamp=self.timestamp,
            type=self.type,
            user_id=self.user_id,
            app_id=self.app_id,
        )


def prepare_requeue_properties(
    properties: MessageProperties,
    ttl_seconds: int = 0,
    use_retry_count: bool = False,
    now: datetime | None = None,
) -> tuple[MessageProperties, int]:
    """Stamp retry headers on a copy of ``properties``.

    Returns the new properties and the new retry count, which stays 0 when
    the retry counter is disabled. ``properties`` is not modified.
    """
    now = now or datetime.now(timezone.utc)
    stamped = properties.copy()

    if stamped.headers.first_requeued_at is None:
        stamped.headers.first_requeued_at = now
        stamped.headers.extra.pop(FIRST_REQUEUE_TIMESTAMP_HEADER, None)

    stamped.headers.requeued_at = now
    stamped.headers.extra.pop(REQUEUE_TIMESTAMP_HEADER, None)

    if ttl_seconds > 0:
        stamped.expiration_ms = ttl_seconds * 1000

    retry_count = 0
    if use_retry_count:
        retry_count = (stamped.headers.retry_count or 0) + 1
        stamped.headers.retry_count = retry_count
        stamped.headers.extra.pop(RETRY_COUNT_HEADER, None)

    return stamped, retry_count


def random_retry_ttl(min_seconds: int, max_seconds: int) -> int:
    """Pick a retry delay in whole seconds, uniformly in ``[min, max]``.

    When only the upper bound is set the lower bound becomes 1, so a delayed
    retry never degrades into an immediate one.
    """
    low = min(min_seconds, max_seconds)
    high = max(min_seconds, max_seconds)

    if low == 0 and high > 0:
        low = 1

    return random.randint(low, high)  # nosec
