# email_service/main.py

import uvicorn

from email_service import config
from email_service.mailer import Mailer
from email_service.messaging.consumers import NotificationConsumers, build_registry
from shortener_bus.messaging import BrokerClient
from shortener_bus.messaging import events
from shortener_bus.service import create_service_app

broker = BrokerClient(config.SERVICE_NAME, exchanges=[events.USER_EVENTS, events.URL_EVENTS])
mailer = Mailer()

app = create_service_app("Email Service", broker, build_registry(NotificationConsumers(mailer)), mailer=mailer)

if __name__ == "__main__":
    uvicorn.run("email_service.main:app", host="0.0.0.0", port=config.PORT)
