"""
API gateway - HTTP ingress for billing orders.

Run with ``billing-gateway`` or ``uvicorn --factory billing_pipeline.main:create_app``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from starlette.concurrency import run_in_threadpool

from .config import Settings
from .logging_config import configure_logging
from .publisher import BillingPublisher
from .routers.billing import router as billing_router
from .routers.health import router as health_router

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, publisher=None) -> FastAPI:
    settings = settings or Settings.from_env()
    publisher = publisher or BillingPublisher(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # BrokerUnavailable / QueueConfigurationConflict abort startup
        await run_in_threadpool(publisher.start)
        logger.info(f"API gateway ready, publishing to '{settings.queue_name}'")
        yield
        publisher.close()
        logger.info(f"Publisher metrics: {publisher.get_metrics()}")
        logger.info("API gateway stopped gracefully")

    app = FastAPI(title="Billing API Gateway", lifespan=lifespan)
    app.state.settings = settings
    app.state.publisher = publisher
    app.state.service_name = "api-gateway"

    app.include_router(health_router)
    app.include_router(billing_router)
    return app


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger.info(f"Starting API gateway on port {settings.gateway_port}")
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=settings.gateway_port,
        timeout_graceful_shutdown=int(settings.shutdown_grace),
        log_config=None,
    )


if __name__ == "__main__":
    main()
