"""Tests for the billing worker entry points."""

import threading
from http import HTTPStatus
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from billing_pipeline.errors import BrokerUnavailable, StoreUnavailable
from billing_pipeline.lifecycle import Lifecycle
from billing_pipeline.schemas import Order
from billing_pipeline.worker import create_billing_app, main, run_consume


class QuietLifecycle(Lifecycle):
    """Lifecycle that leaves the test runner's signal handlers alone."""

    def install_signal_handlers(self):
        pass


class IdleConsumer:
    """Consumer stand-in that blocks until asked to stop."""

    instances = []

    def __init__(self, settings, store, stop_event=None, fail_start=None):
        self.store = store
        self.stop_event = stop_event or threading.Event()
        self.fail_start = fail_start
        self.closed = False
        IdleConsumer.instances.append(self)

    def start(self):
        if self.fail_start:
            raise self.fail_start

    def run(self):
        self.stop_event.wait(5)

    def get_metrics(self):
        return {}

    def close(self):
        self.closed = True


def test_billing_app_serves_orders_and_stops_consumer(settings, fake_store):
    fake_store.orders.append(Order(id="id-1", user_id="u1", number_of_items="3", total_amount="29.97"))
    lifecycle = QuietLifecycle()
    lifecycle.register("database pool", fake_store.close)
    app = create_billing_app(
        settings, lifecycle=lifecycle, store_factory=lambda: fake_store, consumer_factory=IdleConsumer
    )

    with TestClient(app) as client:
        health = client.get("/api/health")
        orders = client.get("/api/orders")

    assert health.status_code == HTTPStatus.OK
    assert health.json() == {"status": "healthy", "service": "billing-app", "database": True, "consumer": True}
    assert orders.json() == [{"id": "id-1", "user_id": "u1", "number_of_items": "3", "total_amount": "29.97"}]
    assert lifecycle.stopping
    assert fake_store.closed
    assert IdleConsumer.instances[-1].closed


def test_billing_app_orders_store_failure(settings, fake_store):
    def broken():
        raise StoreUnavailable("connection refused")

    fake_store.list_orders = broken
    app = create_billing_app(
        settings, lifecycle=QuietLifecycle(), store_factory=lambda: fake_store, consumer_factory=IdleConsumer
    )
    with TestClient(app) as client:
        response = client.get("/api/orders")
    assert response.status_code == HTTPStatus.INTERNAL_SERVER_ERROR
    assert response.json() == {"detail": "Internal error"}


def test_billing_app_refuses_to_start_without_broker(settings, fake_store):
    def down_consumer(settings, store, stop_event=None):
        return IdleConsumer(settings, store, stop_event, fail_start=BrokerUnavailable("gave up"))

    app = create_billing_app(
        settings, lifecycle=QuietLifecycle(), store_factory=lambda: fake_store, consumer_factory=down_consumer
    )
    with pytest.raises(BrokerUnavailable):
        with TestClient(app):
            pass


class DroppedConsumer(IdleConsumer):
    """Connects, then loses the broker for good while consuming."""

    def run(self):
        raise BrokerUnavailable("failed to reconnect to RabbitMQ after 10 attempts")


def test_billing_app_health_degraded_when_consumer_thread_dies(settings, fake_store):
    app = create_billing_app(
        settings, lifecycle=QuietLifecycle(), store_factory=lambda: fake_store, consumer_factory=DroppedConsumer
    )

    with TestClient(app) as client:
        app.state.consumer_thread.join(timeout=5)
        response = client.get("/api/health")

    assert response.status_code == HTTPStatus.OK
    assert response.json() == {"status": "degraded", "service": "billing-app", "database": True, "consumer": False}
    assert isinstance(app.state.consumer_thread.error, BrokerUnavailable)


@patch("billing_pipeline.worker.connect_store", side_effect=StoreUnavailable("database unavailable after 10 attempts"))
def test_run_consume_exits_1_without_database(mock_connect_store, settings):
    assert run_consume(settings, QuietLifecycle()) == 1


@patch("billing_pipeline.worker.BillingConsumer")
@patch("billing_pipeline.worker.connect_store")
def test_run_consume_exits_1_without_broker(mock_connect_store, mock_consumer_class, settings):
    mock_consumer_class.return_value.start.side_effect = BrokerUnavailable("gave up")
    lifecycle = QuietLifecycle()

    assert run_consume(settings, lifecycle) == 1

    mock_consumer_class.return_value.run.assert_not_called()
    mock_consumer_class.return_value.close.assert_called_once()
    mock_connect_store.return_value.close.assert_called_once()


@patch("billing_pipeline.worker.BillingConsumer")
@patch("billing_pipeline.worker.connect_store")
def test_run_consume_shuts_down_in_order(mock_connect_store, mock_consumer_class, settings):
    order = []
    mock_consumer_class.return_value.close.side_effect = lambda: order.append("consumer")
    mock_connect_store.return_value.close.side_effect = lambda: order.append("store")

    assert run_consume(settings, QuietLifecycle()) == 0

    mock_connect_store.return_value.init_schema.assert_called_once()
    mock_consumer_class.return_value.run.assert_called_once()
    assert order == ["consumer", "store"]


def test_main_rejects_unknown_mode(capsys):
    with patch("billing_pipeline.worker.configure_logging"):
        assert main(["bogus"]) == 2
    assert "Usage" in capsys.readouterr().out
