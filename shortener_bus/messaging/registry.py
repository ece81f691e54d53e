# shortener_bus/messaging/registry.py

import logging
from typing import NamedTuple, Optional

from shortener_bus.messaging.dispatcher import Handler
from shortener_bus.messaging.events import queue_name_for
from shortener_bus.messaging.rabbitmq_client import Subscription

logger = logging.getLogger(__name__)


class Registration(NamedTuple):
    exchange: str
    routing_pattern: str
    queue_name: str
    handler: Handler


class ConsumerRegistry:
    """
    The startup-time table of events a service consumes.
    Each row becomes one durable queue owned by the service, so every
    interested service receives its own copy of a matching event.
    """

    def __init__(self, service_name: str):
        self.service_name = service_name
        self._registrations = {}

    def add(self, exchange: str, routing_pattern: str, handler: Handler, queue_name: Optional[str] = None) -> Registration:
        queue_name = queue_name or queue_name_for(self.service_name, routing_pattern)
        if queue_name in self._registrations:
            raise ValueError(f"Queue '{queue_name}' is already registered for {self.service_name}")
        registration = Registration(exchange, routing_pattern, queue_name, handler)
        self._registrations[queue_name] = registration
        logger.debug(f"Registered consumer {queue_name} for {exchange}:{routing_pattern}")
        return registration

    @property
    def registrations(self):
        return tuple(self._registrations.values())

    def __len__(self):
        return len(self._registrations)

    async def install(self, client) -> int:
        """
        Subscribes every registration on the client. Rows that cannot be
        activated yet stay recorded on the client and start on its next connect.
        Returns how many are consuming right now.
        """
        active = 0
        for registration in self._registrations.values():
            if not client.is_connected:
                client.add_subscription(Subscription(*registration))
            elif await client.subscribe(*registration):
                active += 1
        logger.info(f"{self.service_name}: {active}/{len(self)} consumers active")
        return active
