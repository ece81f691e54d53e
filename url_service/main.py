# url_service/main.py

import uvicorn

from shortener_bus.messaging import BrokerClient
from shortener_bus.messaging import events
from shortener_bus.service import create_service_app
from url_service import config
from url_service.messaging.consumers import build_registry
from url_service.messaging.event_publisher import UrlEventPublisher
from url_service.repository import InMemoryUrlRepository

broker = BrokerClient(config.SERVICE_NAME, exchanges=[events.URL_EVENTS])
repository = InMemoryUrlRepository()

app = create_service_app(
    "URL Shortener Service",
    broker,
    build_registry(repository),
    event_publisher=UrlEventPublisher(broker),
    repository=repository,
)

if __name__ == "__main__":
    uvicorn.run("url_service.main:app", host="0.0.0.0", port=config.PORT)
