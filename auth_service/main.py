# auth_service/main.py

import uvicorn

from auth_service import config
from auth_service.engagement import EngagementTracker
from auth_service.messaging.consumers import build_registry
from auth_service.messaging.event_publisher import AuthEventPublisher
from shortener_bus.messaging import BrokerClient
from shortener_bus.messaging import events
from shortener_bus.service import create_service_app

broker = BrokerClient(config.SERVICE_NAME, exchanges=[events.USER_EVENTS])
engagement = EngagementTracker()

app = create_service_app(
    "Auth Service",
    broker,
    build_registry(engagement),
    event_publisher=AuthEventPublisher(broker),
    engagement=engagement,
)

if __name__ == "__main__":
    uvicorn.run("auth_service.main:app", host="0.0.0.0", port=config.PORT)
