"""Unit tests for API routes."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from rmq_messaging.config import Settings
from rmq_messaging.main import create_app
from rmq_messaging.models import SendResult
from rmq_messaging.sender import ConnectionState


@pytest.fixture
def app():
    # No context manager: the lifespan (and its broker connections) never runs
    return create_app(Settings(_env_file=None, disable_prometheus=True, log_format="text"))


@pytest.fixture
def mock_sender():
    sender = MagicMock()
    sender.send_message = AsyncMock(return_value=SendResult(success=True))
    sender.is_connected = True
    sender.state = ConnectionState.CONNECTED
    sender.current_host = "rabbit-a"
    return sender


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.is_enabled = True
    client.pool.total_running_consumers = 3
    client.pool.total_running_connections = 2
    return client


@pytest.fixture
def http(app, mock_sender, mock_client):
    app.state.sender = mock_sender
    app.state.client = mock_client
    return TestClient(app)


class TestPublishRoute:
    """Tests for POST /v1/publish."""

    def test_publish_success(self, http, mock_sender):
        payload = {
            "exchange": "events",
            "routing_key": "orders.created",
            "payload": {"id": 7},
        }
        response = http.post("/v1/publish", json=payload)

        assert response.status_code == 202
        assert response.json() == {
            "status": "accepted",
            "exchange": "events",
            "routing_key": "orders.created",
        }
        mock_sender.send_message.assert_awaited_once_with("orders.created", "events", {"id": 7})

    def test_publish_to_queue_via_default_exchange(self, http, mock_sender):
        response = http.post("/v1/publish", json={"routing_key": "q1", "payload": {}})

        assert response.status_code == 202
        mock_sender.send_message.assert_awaited_once_with("q1", "", {})

    def test_missing_destination(self, http, mock_sender):
        mock_sender.send_message.return_value = SendResult(
            error_code=400,
            error_description="Queue name or routing key and exchange name must be provided",
        )

        response = http.post("/v1/publish", json={"payload": {"id": 7}})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "validation_error"

    def test_broker_unavailable(self, http, mock_sender):
        mock_sender.send_message.return_value = SendResult(
            error_code=500,
            error_description="Not connected to RabbitMQ",
        )

        response = http.post("/v1/publish", json={"routing_key": "q1", "payload": {}})

        assert response.status_code == 503
        assert response.json()["detail"]["detail"] == "Not connected to RabbitMQ"

    def test_sender_not_configured(self, app):
        app.state.sender = None
        response = TestClient(app).post("/v1/publish", json={"routing_key": "q1", "payload": {}})
        assert response.status_code == 503

    def test_validation_error(self, http):
        response = http.post("/v1/publish", json={"routing_key": "q1"})
        assert response.status_code == 422

    def test_unknown_field_rejected(self, http):
        response = http.post(
            "/v1/publish",
            json={"routing_key": "q1", "payload": {}, "headers": {"x": "1"}},
        )
        assert response.status_code == 422


class TestHealthRoutes:
    """Tests for health and readiness checks."""

    def test_health(self, http):
        response = http.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready(self, http):
        response = http.get("/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["sender_state"] == "connected"
        assert data["sender_host"] == "rabbit-a"
        assert data["consumers_enabled"] is True
        assert data["running_consumers"] == 3
        assert data["open_connections"] == 2

    def test_not_ready_while_disconnected(self, http, mock_sender):
        mock_sender.is_connected = False
        mock_sender.state = ConnectionState.CONNECTING

        response = http.get("/ready")

        assert response.status_code == 503
        assert response.json()["detail"]["detail"] == "Sender state: connecting"

    def test_ready_without_consumers(self, app, mock_sender):
        app.state.sender = mock_sender
        app.state.client = None

        data = TestClient(app).get("/ready").json()

        assert data["consumers_enabled"] is False
        assert data["running_consumers"] == 0
