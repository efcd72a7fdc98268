"""Unit tests for Pydantic data models."""

import pytest
from pydantic import ValidationError

from rmq_messaging.models import (
    ConsumerConnectionDetails,
    MessageProcessInstruction,
    PublishRequest,
    SendResult,
    SenderConnectionDetails,
)


class TestConnectionDetails:
    """Tests for the sender and consumer connection records."""

    def test_sender_defaults(self):
        details = SenderConnectionDetails(hostname="rabbit")
        assert details.port == 5672
        assert details.connection_timeout_ms == 10_000
        assert details.connection_retry_attempts == 10

    def test_frozen(self):
        details = SenderConnectionDetails(hostname="rabbit")
        with pytest.raises(ValidationError):
            details.hostname = "other"

    def test_invalid_port(self):
        with pytest.raises(ValidationError):
            SenderConnectionDetails(hostname="rabbit", port=70000)

    def test_unknown_field(self):
        with pytest.raises(ValidationError):
            ConsumerConnectionDetails(hostname="rabbit", select_random_host=True)

    def test_timeout_in_seconds(self):
        details = ConsumerConnectionDetails(hostname="rabbit", connection_timeout_ms=2500)
        assert details.connection_timeout_seconds == 2.5

    def test_ttl_bounds_are_not_negative(self):
        details = ConsumerConnectionDetails(
            hostname="rabbit",
            message_retry_ttl_seconds_min=-3,
            message_retry_ttl_seconds_max=None,
        )
        assert details.message_retry_ttl_seconds_min == 0
        assert details.message_retry_ttl_seconds_max == 0


class TestSendResult:
    def test_defaults_to_failure(self):
        assert SendResult().to_dict() == {
            "success": False,
            "error_code": 0,
            "error_description": None,
        }


class TestMessageProcessInstruction:
    def test_from_string(self):
        assert MessageProcessInstruction("REQUEUE_MESSAGE_WITH_DELAY") is (
            MessageProcessInstruction.REQUEUE_MESSAGE_WITH_DELAY
        )

    def test_unknown(self):
        with pytest.raises(ValueError):
            MessageProcessInstruction("RETRY")


class TestPublishRequest:
    """Tests for PublishRequest model."""

    def test_valid_minimal_request(self):
        model = PublishRequest(payload={"data": 1})
        assert model.exchange == ""
        assert model.routing_key == ""
        assert model.payload == {"data": 1}

    def test_payload_required(self):
        with pytest.raises(ValidationError):
            PublishRequest(exchange="ex", routing_key="rk")

    def test_payload_must_be_object(self):
        with pytest.raises(ValidationError):
            PublishRequest(routing_key="rk", payload="text")
