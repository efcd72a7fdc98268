"""Shared broker doubles for unit tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest


def make_channel():
    channel = MagicMock()
    channel.is_closed = False
    channel.close = AsyncMock()
    channel.declare_queue = AsyncMock()
    channel.default_exchange.publish = AsyncMock()

    exchange = MagicMock()
    exchange.publish = AsyncMock()
    channel.get_exchange = AsyncMock(return_value=exchange)

    queue = MagicMock()
    queue.consume = AsyncMock(side_effect=lambda callback, consumer_tag=None: consumer_tag)
    channel.get_queue = AsyncMock(return_value=queue)
    channel.queue = queue

    underlay = MagicMock()
    channel.get_underlay_channel = AsyncMock(return_value=underlay)
    channel.underlay = underlay
    return channel


def cancel_callback(channel):
    """Return the broker-cancel hook registered on ``channel``."""
    return channel.underlay.on_consumer_cancel_callbacks.add.call_args[0][0]


def make_connection():
    connection = MagicMock()
    connection.is_closed = False
    connection.close = AsyncMock()
    connection.channel = AsyncMock(side_effect=lambda *args, **kwargs: make_channel())
    return connection


def close_callback(connection):
    """Return the callback registered on ``connection.close_callbacks``."""
    return connection.close_callbacks.add.call_args[0][0]


def make_message(body: bytes = b'{"x": 1}', headers=None):
    message = MagicMock()
    message.body = body
    message.headers = headers if headers is not None else {}
    message.delivery_tag = 1
    message.expiration = None
    message.content_type = "application/json"
    message.content_encoding = None
    message.delivery_mode = 2
    message.priority = None
    message.correlation_id = None
    message.reply_to = None
    message.message_id = None
    message.timestamp = None
    message.type = None
    message.user_id = None
    message.app_id = None
    message.ack = AsyncMock()
    message.nack = AsyncMock()
    return message


@pytest.fixture
def connections():
    """Connections handed out by the patched ``aio_pika.connect``, in order."""
    return []


@pytest.fixture
def fake_connect(connections):
    async def _connect(*args, **kwargs):
        connection = make_connection()
        connection.connect_args = args
        connection.connect_kwargs = kwargs
        connections.append(connection)
        return connection

    return AsyncMock(side_effect=_connect)
