"""Shared fixtures and fakes for the billing pipeline tests."""

import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from billing_pipeline.config import Settings
from billing_pipeline.errors import PublishFailed, StoreUnavailable


class SpyPublisher:
    """Stands in for BillingPublisher and records every publish call."""

    def __init__(self, error=None):
        self.error = error
        self.published = []
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def publish(self, body, deadline):
        if self.error is not None:
            raise self.error
        self.published.append(body)

    def get_metrics(self):
        return {"published": len(self.published)}

    def close(self):
        self.closed = True


class FakeStore:
    """In-memory order store. ``failures`` errors are raised before writes succeed."""

    def __init__(self, failures=None):
        self.failures = list(failures or [])
        self.orders = []
        self.calls = 0
        self.closed = False

    def create_order(self, order):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.orders.append(order)

    def list_orders(self):
        return list(self.orders)

    def ping(self):
        return True

    def close(self):
        self.closed = True


class FakeChannel:
    """Minimal BlockingChannel: records acks/nacks and replays queued deliveries."""

    def __init__(self, deliveries=(), stop_event=None):
        self.deliveries = list(deliveries)
        self.stop_event = stop_event
        self.acks = []
        self.nacks = []
        self.qos = None
        self.cancelled = False
        self.is_open = True
        self.is_closed = False

    def basic_qos(self, prefetch_count):
        self.qos = prefetch_count

    def basic_ack(self, delivery_tag):
        self.acks.append(delivery_tag)

    def basic_nack(self, delivery_tag, requeue):
        self.nacks.append((delivery_tag, requeue))

    def consume(self, queue, auto_ack, inactivity_timeout):
        assert auto_ack is False
        while self.deliveries:
            yield self.deliveries.pop(0)
        if self.stop_event is not None:
            self.stop_event.set()
        yield None, None, None

    def cancel(self):
        self.cancelled = True
        return 0

    def close(self):
        self.is_open = False
        self.is_closed = True


def make_delivery(body, tag=1, redelivered=False):
    method = SimpleNamespace(delivery_tag=tag, redelivered=redelivered)
    properties = SimpleNamespace(content_type="application/json", delivery_mode=2)
    return method, properties, body


@pytest.fixture
def settings():
    """Settings with defaults, independent of the test process environment."""
    return Settings.from_env({})


@pytest.fixture
def valid_body():
    return b'{"user_id":"u1","number_of_items":"3","total_amount":"29.97"}'


@pytest.fixture
def spy_publisher():
    return SpyPublisher()


@pytest.fixture
def failing_publisher():
    return SpyPublisher(error=PublishFailed("broker down"))


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def flaky_store():
    return FakeStore(failures=[StoreUnavailable("connection refused")])


@pytest.fixture
def stop_event():
    return threading.Event()


@pytest.fixture
def mock_connection():
    connection = MagicMock()
    connection.is_open = True
    connection.is_closed = False
    return connection
