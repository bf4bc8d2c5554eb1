"""
Billing consumer - drains the billing queue and persists orders.

Each delivery goes through decode -> validate -> persist, and the outcome is
turned into exactly one acknowledgement:

- ack                   order stored
- nack, requeue=False   payload can never succeed (bad JSON, missing fields,
                        row rejected by the database)
- nack, requeue=True    transient storage failure, redeliver later
"""

import enum
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Set, Tuple

import pika
from pika.adapters.blocking_connection import BlockingChannel

from .config import Settings
from .errors import OrderRejected
from .rabbit import close_quietly, connect_with_retry
from .schemas import InvalidPayload, Order, decode_json_object, validate_billing

logger = logging.getLogger(__name__)

PREFETCH_COUNT = 1


class OrderWriter(Protocol):
    def create_order(self, order: Order) -> None: ...


class Decision(enum.Enum):
    ACK = "ack"
    NACK_DISCARD = "nack_discard"
    NACK_REQUEUE = "nack_requeue"

    @property
    def requeue(self) -> bool:
        return self is Decision.NACK_REQUEUE


@dataclass
class Outcome:
    decision: Decision
    order: Optional[Order] = None
    reason: str = ""


def _message_values(data: Dict[str, Any]) -> Set[str]:
    return {str(v) for v in data.values()} | {str(k) for k in data.keys()}


def new_order_id(taken: Iterable[str] = ()) -> str:
    """Fresh uuid4 that is guaranteed not to appear in ``taken``."""
    taken = set(taken)
    while True:
        candidate = str(uuid.uuid4())
        if candidate not in taken:
            return candidate


def decide(body: bytes, store: OrderWriter, id_factory: Callable[..., str] = new_order_id) -> Outcome:
    """
    Run one delivered payload through decode, validate and persist, and
    return what should be sent back to the broker. The only I/O is the
    ``store.create_order`` call.
    """
    # Decoding
    try:
        data = decode_json_object(body)
    except InvalidPayload as e:
        return Outcome(Decision.NACK_DISCARD, reason=f"decode failed: {e.detail}")

    # Validating
    try:
        req = validate_billing(data)
    except InvalidPayload as e:
        return Outcome(Decision.NACK_DISCARD, reason=f"validation failed: {e.detail}")

    # Persisting
    order = Order(
        id=id_factory(_message_values(data)),
        user_id=req.user_id,
        number_of_items=req.number_of_items,
        total_amount=req.total_amount,
    )
    try:
        store.create_order(order)
    except OrderRejected as e:
        return Outcome(Decision.NACK_DISCARD, order=order, reason=str(e))
    except Exception as e:
        return Outcome(Decision.NACK_REQUEUE, order=order, reason=str(e))

    return Outcome(Decision.ACK, order=order)


def apply_decision(channel: BlockingChannel, delivery_tag: int, decision: Decision) -> bool:
    """Send the ack/nack for ``decision``. Returns False if the broker could not be told."""
    try:
        if decision is Decision.ACK:
            channel.basic_ack(delivery_tag=delivery_tag)
        else:
            channel.basic_nack(delivery_tag=delivery_tag, requeue=decision.requeue)
        return True
    except pika.exceptions.AMQPError as e:
        logger.error(f"Failed to send {decision.value} for delivery {delivery_tag}: {e}")
        return False


Connector = Callable[[Settings], Tuple[pika.BlockingConnection, BlockingChannel]]


class BillingConsumer:
    """
    Single-instance consumer with:
    - Manual acknowledgments
    - Prefetch of one unacknowledged message (processing is serialised)
    - Stop requests honoured between messages, never in the middle of one
    - Reconnect with the bounded retry budget if the broker drops us
    """

    def __init__(
        self,
        settings: Settings,
        store: OrderWriter,
        connector: Connector = connect_with_retry,
        stop_event: Optional[threading.Event] = None,
        inactivity_timeout: float = 1.0,
    ):
        self.settings = settings
        self.store = store
        self._connector = connector
        self.stop_event = stop_event or threading.Event()
        self.inactivity_timeout = inactivity_timeout

        self.connection: Optional[pika.BlockingConnection] = None
        self.channel: Optional[BlockingChannel] = None

        self.metrics = {
            "received": 0,
            "processed": 0,
            "discarded": 0,
            "requeued": 0,
            "ack_failed": 0,
        }

    def start(self) -> None:
        """Connect (fatal on ``BrokerUnavailable``) and set the prefetch limit."""
        self.connection, self.channel = self._connector(self.settings)
        self.channel.basic_qos(prefetch_count=PREFETCH_COUNT)

    def handle_delivery(self, channel: BlockingChannel, method, properties, body: bytes) -> Outcome:
        self.metrics["received"] += 1
        redelivered = bool(getattr(method, "redelivered", False))
        logger.info(f"Message received (redelivered={redelivered}): {body!r}")

        outcome = decide(body, self.store)

        if outcome.decision is Decision.NACK_DISCARD:
            self.metrics["discarded"] += 1
            logger.error(f"Discarding message, {outcome.reason}: {body!r}")
        elif outcome.decision is Decision.NACK_REQUEUE:
            self.metrics["requeued"] += 1
            logger.warning(f"Database error, message requeued for retry: {outcome.reason}")

        if not apply_decision(channel, method.delivery_tag, outcome.decision):
            self.metrics["ack_failed"] += 1
            if outcome.decision is Decision.ACK:
                logger.error(
                    f"Order {outcome.order.id} is stored but was not acknowledged; "
                    "it may be stored again on redelivery"
                )
            return outcome

        if outcome.decision is Decision.ACK:
            self.metrics["processed"] += 1
            order = outcome.order
            logger.info(
                f"Order processed successfully: ID={order.id}, UserID={order.user_id}, "
                f"Items={order.number_of_items}, Total={order.total_amount}"
            )
        return outcome

    def _consume_until_stopped(self) -> None:
        channel = self.channel
        logger.info(
            f"Waiting for messages on queue '{self.settings.queue_name}' "
            f"with prefetch={PREFETCH_COUNT}"
        )
        try:
            for method, properties, body in channel.consume(
                queue=self.settings.queue_name,
                auto_ack=False,
                inactivity_timeout=self.inactivity_timeout,
            ):
                if method is not None:
                    self.handle_delivery(channel, method, properties, body)
                if self.stop_event.is_set():
                    break
        finally:
            if channel.is_open:
                # unacknowledged deliveries go back to the queue
                channel.cancel()

    def run(self) -> None:
        """
        Consume until ``stop()`` is called. A dropped connection is reopened
        with the full retry budget; ``BrokerUnavailable`` ends the loop.
        """
        if self.channel is None:
            self.start()

        while not self.stop_event.is_set():
            try:
                self._consume_until_stopped()
            except (pika.exceptions.AMQPConnectionError, pika.exceptions.AMQPChannelError) as e:
                if self.stop_event.is_set():
                    break
                logger.warning(f"Consumer loop error (will reconnect): {e}")
                close_quietly(self.connection, self.channel)
                self.start()

        logger.info("Consumer stopped")

    def stop(self) -> None:
        self.stop_event.set()

    def get_metrics(self) -> Dict[str, int]:
        return self.metrics.copy()

    def close(self) -> None:
        close_quietly(self.connection, self.channel)
        self.connection, self.channel = None, None
        logger.info("Consumer connection closed")
