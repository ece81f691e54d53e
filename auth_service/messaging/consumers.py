# auth_service/messaging/consumers.py

import logging

from auth_service import config
from auth_service.engagement import EngagementTracker
from shortener_bus.messaging import ConsumerRegistry
from shortener_bus.messaging import events

logger = logging.getLogger(__name__)


class UrlEventConsumers:
    """Keeps per-user URL engagement in step with the URL service."""

    def __init__(self, tracker: EngagementTracker):
        self.tracker = tracker

    async def handle_url_created(self, routing_key, data):
        logger.info(f"Processing {routing_key} event: URL {data['urlCode']} created")
        self.tracker.record_created(data.get("userId"), data["urlCode"])

    async def handle_url_clicked(self, routing_key, data):
        logger.info(f"Processing {routing_key} event: URL {data['urlCode']} clicked ({data['clicks']} total)")
        self.tracker.record_clicks(data["urlCode"], int(data["clicks"]))

    async def handle_url_deleted(self, routing_key, data):
        logger.info(f"Processing {routing_key} event: URL {data['urlCode']} deleted by {data.get('deletedBy')}")
        self.tracker.record_deleted(data["urlCode"])


def build_registry(tracker: EngagementTracker) -> ConsumerRegistry:
    consumers = UrlEventConsumers(tracker)
    registry = ConsumerRegistry(config.SERVICE_NAME)
    registry.add(events.URL_EVENTS, events.URL_CREATED, consumers.handle_url_created)
    registry.add(events.URL_EVENTS, events.URL_CLICKED, consumers.handle_url_clicked)
    registry.add(events.URL_EVENTS, events.URL_DELETED, consumers.handle_url_deleted)
    return registry
