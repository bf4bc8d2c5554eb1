"""
RabbitMQ plumbing shared by the gateway (publisher) and the billing worker
(consumer): connection parameters, bounded connect-with-retry and the
idempotent queue declaration.
"""

import logging
import time
from typing import Callable, Tuple

import pika
from pika.adapters.blocking_connection import BlockingChannel

from .config import Settings
from .errors import BrokerUnavailable, QueueConfigurationConflict
from .retry import RetryExhausted, linear_backoff, retry_with_backoff

logger = logging.getLogger(__name__)

PRECONDITION_FAILED = 406


def connection_parameters(settings: Settings) -> pika.connection.Parameters:
    if settings.rabbit_url:
        params = pika.URLParameters(settings.rabbit_url)
        params.heartbeat = settings.rabbit_heartbeat
        params.blocked_connection_timeout = settings.publish_timeout
        return params

    credentials = pika.PlainCredentials(settings.rabbit_user, settings.rabbit_password)
    return pika.ConnectionParameters(
        host=settings.rabbit_host,
        port=settings.rabbit_port,
        virtual_host=settings.rabbit_vhost,
        credentials=credentials,
        heartbeat=settings.rabbit_heartbeat,
        blocked_connection_timeout=settings.publish_timeout,
    )


def rabbit_connect(settings: Settings) -> Tuple[pika.BlockingConnection, BlockingChannel]:
    """Single connection attempt: open a connection and a channel on it."""
    connection = pika.BlockingConnection(connection_parameters(settings))
    try:
        channel = connection.channel()
    except Exception:
        close_quietly(connection)
        raise
    return connection, channel


def declare_queue(channel: BlockingChannel, queue_name: str) -> None:
    """
    Declare the durable billing queue. A no-op if it already exists with the
    same properties.

    Raises:
        QueueConfigurationConflict: the queue exists with other properties
    """
    try:
        channel.queue_declare(
            queue=queue_name,
            durable=True,
            exclusive=False,
            auto_delete=False,
        )
    except pika.exceptions.ChannelClosedByBroker as e:
        if e.reply_code == PRECONDITION_FAILED:
            raise QueueConfigurationConflict(
                f"queue '{queue_name}' exists with incompatible properties: {e.reply_text}"
            ) from e
        raise


def connect_with_retry(
    settings: Settings,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[pika.BlockingConnection, BlockingChannel]:
    """
    Connect with ``settings.connect_attempts`` attempts and a linear backoff,
    then declare the queue.

    Raises:
        BrokerUnavailable: every attempt was refused
        QueueConfigurationConflict: see ``declare_queue``
    """
    try:
        connection, channel = retry_with_backoff(
            lambda: rabbit_connect(settings),
            attempts=settings.connect_attempts,
            delay=linear_backoff(settings.connect_backoff_unit),
            retry_on=(pika.exceptions.AMQPConnectionError,),
            description="RabbitMQ connection",
            sleep=sleep,
        )
    except RetryExhausted as e:
        raise BrokerUnavailable(
            f"failed to connect to RabbitMQ after {e.attempts} attempts: {e.last_error}"
        ) from e.last_error

    try:
        declare_queue(channel, settings.queue_name)
    except Exception:
        close_quietly(connection)
        raise

    logger.info(
        f"Connected to RabbitMQ at {settings.rabbit_host}:{settings.rabbit_port}, "
        f"queue '{settings.queue_name}' ready"
    )
    return connection, channel


def close_quietly(connection, channel=None) -> None:
    """Close channel then connection, logging (not raising) transport errors."""
    for resource in (channel, connection):
        if resource is None:
            continue
        try:
            if not resource.is_closed:
                resource.close()
        except pika.exceptions.AMQPError as e:
            logger.warning(f"Error while closing {type(resource).__name__}: {e}")
