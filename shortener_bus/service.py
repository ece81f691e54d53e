# shortener_bus/service.py

import logging

from fastapi import FastAPI

from shortener_bus.logging_config import setup_logging
from shortener_bus.messaging import BrokerClient, ConsumerRegistry

logger = logging.getLogger(__name__)


def create_service_app(title: str, broker: BrokerClient, registry: ConsumerRegistry = None, **state) -> FastAPI:
    """
    Builds the FastAPI process shell shared by every service.

    On startup the consumer table is recorded on the broker client and the
    connection is opened in the background, so the HTTP listener comes up even
    when RabbitMQ is unreachable. Extra keyword arguments are exposed on
    ``app.state`` for route handlers.
    """
    app = FastAPI(title=title)
    app.state.broker = broker
    for name, value in state.items():
        setattr(app.state, name, value)

    @app.on_event("startup")
    async def startup_event():
        setup_logging(broker.service_name)
        logger.info(f"{title} startup...")
        if registry is not None:
            await registry.install(broker)
        broker.start()
        logger.info("RabbitMQ connection task created.")

    @app.on_event("shutdown")
    async def shutdown_event():
        await broker.close()

    @app.get("/health", tags=["System"])
    def health_check():
        return {
            "status": "ok",
            "service": broker.service_name,
            "broker": "connected" if broker.is_connected else "disconnected",
        }

    return app
