"""
Billing worker - consumes the billing queue and stores orders.

Usage:
  billing-worker consume   # consumer loop only, stops on SIGINT/SIGTERM
  billing-worker serve     # consumer loop + GET /api/health and GET /api/orders
"""

import logging
import sys
import threading
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import FastAPI
from starlette.concurrency import run_in_threadpool

from .config import Settings
from .consumer import BillingConsumer
from .db import OrderStore, connect_store
from .errors import BrokerUnavailable, QueueConfigurationConflict, StoreUnavailable
from .lifecycle import Lifecycle
from .logging_config import configure_logging
from .routers.health import router as health_router
from .routers.orders import router as orders_router

logger = logging.getLogger(__name__)

FATAL_STARTUP_ERRORS = (BrokerUnavailable, QueueConfigurationConflict, StoreUnavailable)


def open_store(settings: Settings, lifecycle: Lifecycle) -> OrderStore:
    store = connect_store(settings)
    lifecycle.register("database pool", store.close)
    store.init_schema()
    return store


def run_consume(settings: Settings, lifecycle: Optional[Lifecycle] = None) -> int:
    """Foreground consumer. Returns the process exit status."""
    lifecycle = lifecycle or Lifecycle()
    lifecycle.install_signal_handlers()
    consumer = None
    try:
        store = open_store(settings, lifecycle)
        consumer = BillingConsumer(settings, store, stop_event=lifecycle.stop_event)
        lifecycle.register("rabbitmq consumer", consumer.close)
        consumer.start()
        consumer.run()
    except FATAL_STARTUP_ERRORS as e:
        logger.error(f"Billing worker cannot start: {e}")
        return 1
    finally:
        lifecycle.shutdown()
        if consumer is not None:
            logger.info(f"Consumer metrics: {consumer.get_metrics()}")
    return 0


class ConsumerThread(threading.Thread):
    """
    Runs a BillingConsumer in a background thread. The pika connection is
    opened, used and closed on this thread only.
    """

    def __init__(self, consumer: BillingConsumer):
        super().__init__(name="billing-consumer", daemon=True)
        self.consumer = consumer
        self.ready = threading.Event()
        self.error: Optional[BaseException] = None

    def run(self):
        try:
            self.consumer.start()
            self.ready.set()
            self.consumer.run()
        except Exception as e:
            self.error = e
            logger.error(f"Consumer thread stopped with error: {e}")
        finally:
            self.ready.set()
            self.consumer.close()

    def wait_started(self) -> None:
        """Block until connected; re-raise the startup error if there was one."""
        self.ready.wait()
        if self.error is not None:
            raise self.error


def create_billing_app(
    settings: Settings,
    lifecycle: Optional[Lifecycle] = None,
    store_factory=None,
    consumer_factory=BillingConsumer,
) -> FastAPI:
    lifecycle = lifecycle or Lifecycle()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        factory = store_factory or (lambda: open_store(settings, lifecycle))
        store = await run_in_threadpool(factory)
        app.state.store = store

        consumer = consumer_factory(settings, store, stop_event=lifecycle.stop_event)
        thread = ConsumerThread(consumer)
        app.state.consumer_thread = thread
        thread.start()
        try:
            await run_in_threadpool(thread.wait_started)
        except Exception:
            lifecycle.shutdown()
            raise

        yield

        lifecycle.request_stop()
        await run_in_threadpool(thread.join, settings.shutdown_grace)
        if thread.is_alive():
            logger.warning("Consumer did not stop within the grace period; its message will be redelivered")
        logger.info(f"Consumer metrics: {consumer.get_metrics()}")
        lifecycle.shutdown()

    app = FastAPI(title="Billing App", lifespan=lifespan)
    app.state.settings = settings
    app.state.service_name = "billing-app"
    app.include_router(health_router)
    app.include_router(orders_router)
    return app


def run_serve(settings: Settings) -> int:
    logger.info(f"Starting billing app on port {settings.billing_app_port}")
    uvicorn.run(
        create_billing_app(settings),
        host="0.0.0.0",
        port=settings.billing_app_port,
        timeout_graceful_shutdown=int(settings.shutdown_grace),
        log_config=None,
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    mode = argv[0].strip().lower() if argv else "consume"

    settings = Settings.from_env()
    configure_logging(settings.log_level)

    if mode in ("consume", "worker"):
        return run_consume(settings)
    if mode in ("serve", "http"):
        return run_serve(settings)

    print("Usage:")
    print("  billing-worker consume   # consume the billing queue")
    print("  billing-worker serve     # consume + serve /api/health and /api/orders")
    return 2


if __name__ == "__main__":
    sys.exit(main())
