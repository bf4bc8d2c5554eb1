"""
Billing publisher - validates inbound billing payloads and publishes them as
persistent messages to the durable billing queue.
"""

import enum
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

import pika
from pika.adapters.blocking_connection import BlockingChannel

from .config import Settings
from .errors import BillingPipelineError, PublishFailed, PublishTimeout
from .rabbit import close_quietly, connect_with_retry
from .schemas import InvalidPayload, parse_billing_payload

logger = logging.getLogger(__name__)

Connector = Callable[[Settings], Tuple[pika.BlockingConnection, BlockingChannel]]


class BillingPublisher:
    """
    Owns one connection and one channel for the whole gateway process.

    - Publisher confirms: a return from ``publish`` means the broker has the message
    - Persistent delivery mode on every message
    - All pika calls run on a single publisher thread (pika channels are not
      thread-safe); callers wait for it no longer than their deadline
    - A lost connection is reopened once, without backoff, on the next publish
    """

    def __init__(self, settings: Settings, connector: Connector = connect_with_retry):
        self.settings = settings
        self._connector = connector
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rabbitmq-publisher")
        self._broken = False

        self.connection: Optional[pika.BlockingConnection] = None
        self.channel: Optional[BlockingChannel] = None

        self.metrics = {
            "published": 0,
            "failed": 0,
            "reconnects": 0,
        }

    def start(self) -> None:
        """
        Connect with the full retry budget. ``BrokerUnavailable`` and
        ``QueueConfigurationConflict`` propagate: the gateway must not serve
        traffic without a broker.
        """
        self._executor.submit(self._open, self.settings).result()

    def _open(self, settings: Settings) -> None:
        connection, channel = self._connector(settings)
        channel.confirm_delivery()
        self.connection, self.channel = connection, channel
        self._broken = False

    def _ensure_channel(self) -> None:
        if not self._broken and self.connection is not None and self.channel is not None:
            try:
                if self.connection.is_open and self.channel.is_open:
                    # services heartbeats and surfaces a dropped socket before we publish
                    self.connection.process_data_events(time_limit=0)
                    return
            except pika.exceptions.AMQPError as e:
                logger.warning(f"RabbitMQ connection lost: {e}")

        logger.warning("Reconnecting to RabbitMQ...")
        close_quietly(self.connection, self.channel)
        self.connection, self.channel = None, None
        self.metrics["reconnects"] += 1
        try:
            self._open(self.settings.model_copy(update={"connect_attempts": 1}))
        except BillingPipelineError as e:
            self._broken = True
            raise PublishFailed(f"RabbitMQ unavailable: {e}") from e

    def _send(self, body: bytes) -> None:
        """Runs on the publisher thread; blocks until the broker confirms."""
        self._ensure_channel()
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=2,  # persistent
            timestamp=int(time.time()),
        )
        try:
            self.channel.basic_publish(
                exchange="",
                routing_key=self.settings.queue_name,
                body=body,
                properties=properties,
                mandatory=True,
            )
        except (pika.exceptions.UnroutableError, pika.exceptions.NackError) as e:
            raise PublishFailed(f"broker did not accept the message: {e}") from e
        except pika.exceptions.AMQPError as e:
            self._broken = True
            raise PublishFailed(f"failed to publish message: {e}") from e

    def publish(self, body: bytes, deadline: float) -> None:
        """
        Publish ``body`` unchanged to the billing queue.

        Args:
            body: raw, already validated request bytes
            deadline: ``time.monotonic()`` value after which the call is a failure

        Raises:
            PublishTimeout: the deadline passed before the broker confirmed
            PublishFailed: broker nack, unroutable message or transport error
        """
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            self.metrics["failed"] += 1
            raise PublishTimeout("request deadline passed before publishing")

        future = self._executor.submit(self._send, body)
        try:
            future.result(timeout=remaining)
        except FutureTimeout:
            self.metrics["failed"] += 1
            if not future.cancel():
                # still waiting on the broker: reopen the connection for the next publish
                self._broken = True
            raise PublishTimeout(f"broker did not confirm within {self.settings.publish_timeout}s")
        except PublishFailed:
            self.metrics["failed"] += 1
            raise

        if time.monotonic() > deadline:
            # confirmed too late: the caller was told nothing was queued
            self.metrics["failed"] += 1
            raise PublishTimeout("broker confirmed the message after the request deadline")

        self.metrics["published"] += 1
        logger.info(f"Message published to queue '{self.settings.queue_name}': {body!r}")

    def get_metrics(self) -> Dict[str, int]:
        return self.metrics.copy()

    def _close(self) -> None:
        close_quietly(self.connection, self.channel)
        self.connection, self.channel = None, None

    def close(self) -> None:
        try:
            self._executor.submit(self._close).result(timeout=self.settings.publish_timeout)
        except FutureTimeout:
            logger.warning("Publisher thread is still blocked on the broker; abandoning its connection")
        self._executor.shutdown(wait=False)
        logger.info("Publisher connection closed")


class SubmitOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    REJECTED_INPUT = "rejected_input"
    PUBLISH_FAILED = "publish_failed"


@dataclass
class SubmitResult:
    outcome: SubmitOutcome
    detail: str = ""
    reason: str = ""


def submit(raw_body: Union[bytes, str], publisher: BillingPublisher, deadline: float) -> SubmitResult:
    """
    Validate a billing payload and hand it to the queue.

    Nothing is published unless the payload is valid JSON with all three
    fields present and non-empty. Publish errors are not retried here.
    """
    try:
        req = parse_billing_payload(raw_body)
    except InvalidPayload as e:
        logger.warning(f"Rejected billing request ({e.kind}): {e.detail}")
        return SubmitResult(SubmitOutcome.REJECTED_INPUT, detail=e.detail, reason=e.kind)

    body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
    try:
        publisher.publish(body, deadline)
    except PublishFailed as e:
        logger.error(f"Error publishing billing message for user {req.user_id}: {e}")
        return SubmitResult(SubmitOutcome.PUBLISH_FAILED, detail=str(e))

    logger.info(f"Billing message published successfully for user: {req.user_id}")
    return SubmitResult(SubmitOutcome.ACCEPTED)
