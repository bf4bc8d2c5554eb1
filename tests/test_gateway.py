"""Tests for the API gateway HTTP surface."""

import time
from http import HTTPStatus

import pytest
from fastapi.testclient import TestClient

from billing_pipeline.errors import BrokerUnavailable
from billing_pipeline.main import create_app
from conftest import SpyPublisher


@pytest.fixture
def client(settings, spy_publisher):
    with TestClient(create_app(settings, publisher=spy_publisher)) as test_client:
        yield test_client


def test_lifespan_starts_and_closes_publisher(settings, spy_publisher):
    with TestClient(create_app(settings, publisher=spy_publisher)):
        assert spy_publisher.started
    assert spy_publisher.closed


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == HTTPStatus.OK
    assert response.json() == {"status": "healthy", "service": "api-gateway"}


def test_billing_accepted(client, spy_publisher, valid_body):
    response = client.post("/api/billing", content=valid_body, headers={"Content-Type": "application/json"})

    assert response.status_code == HTTPStatus.OK
    assert response.json() == {"message": "Message posted successfully", "status": "accepted"}
    assert spy_publisher.published == [valid_body]


def test_billing_publishes_raw_bytes_not_reserialized(client, spy_publisher):
    raw = b'{ "total_amount" : "29.97", "user_id":"u1",  "number_of_items":"3" }'
    response = client.post("/api/billing", content=raw)
    assert response.status_code == HTTPStatus.OK
    assert spy_publisher.published == [raw]


def test_billing_invalid_json(client, spy_publisher):
    response = client.post("/api/billing", content=b"{user_id: u1")
    assert response.status_code == HTTPStatus.BAD_REQUEST
    assert response.json() == {"detail": "Invalid JSON format"}
    assert spy_publisher.published == []


@pytest.mark.parametrize(
    "payload",
    [
        {"user_id": "", "number_of_items": "3", "total_amount": "29.97"},
        {"user_id": "u1", "number_of_items": "3"},
        {},
    ],
)
def test_billing_missing_fields(client, spy_publisher, payload):
    response = client.post("/api/billing", json=payload)
    assert response.status_code == HTTPStatus.BAD_REQUEST
    assert response.json() == {"detail": "Missing required fields: user_id, number_of_items, total_amount"}
    assert spy_publisher.published == []


def test_billing_publish_failure(settings, failing_publisher, valid_body):
    with TestClient(create_app(settings, publisher=failing_publisher)) as client:
        response = client.post("/api/billing", content=valid_body)
    assert response.status_code == HTTPStatus.INTERNAL_SERVER_ERROR
    assert response.json() == {"detail": "Error processing billing request"}


def test_billing_deadline_is_publish_timeout(settings, valid_body):
    """The publisher receives a deadline PUBLISH_TIMEOUT seconds after arrival."""
    seen = {}

    class DeadlineSpy(SpyPublisher):
        def publish(self, body, deadline):
            seen["remaining"] = deadline - time.monotonic()
            super().publish(body, deadline)

    with TestClient(create_app(settings.model_copy(update={"publish_timeout": 3.0}), publisher=DeadlineSpy())) as client:
        client.post("/api/billing", content=valid_body)

    assert 0 < seen["remaining"] <= 3.0


def test_broker_unavailable_aborts_startup(settings):
    class DownPublisher(SpyPublisher):
        def start(self):
            raise BrokerUnavailable("failed to connect to RabbitMQ after 10 attempts")

    with pytest.raises(BrokerUnavailable):
        with TestClient(create_app(settings, publisher=DownPublisher())):
            pass
