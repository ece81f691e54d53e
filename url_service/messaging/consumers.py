# url_service/messaging/consumers.py

import logging

from shortener_bus.messaging import ConsumerRegistry
from shortener_bus.messaging import events
from url_service import config
from url_service.repository import UrlRepository

logger = logging.getLogger(__name__)


class UserEventConsumers:
    """
    Reacts to user lifecycle events from the auth service.
    Both handlers converge on a target state, so redelivery is harmless.
    """

    def __init__(self, repository: UrlRepository):
        self.repository = repository

    async def handle_user_deleted(self, routing_key, data):
        user_id = data.get("userId")
        if not user_id:
            raise ValueError(f"{routing_key} event without userId")
        count = self.repository.deactivate_by_owner(user_id, deleted_by="system:user_deleted")
        logger.info(f"Processing {routing_key} event: deactivated {count} URL(s) of user {user_id}")

    async def handle_user_role_updated(self, routing_key, data):
        user_id = data.get("userId")
        new_role = data.get("newRole")
        if not user_id or not new_role:
            raise ValueError(f"{routing_key} event without userId or newRole")
        count = self.repository.set_owner_role(user_id, new_role)
        logger.info(f"Processing {routing_key} event: user {user_id} is now '{new_role}' ({count} URL(s) updated)")


def build_registry(repository: UrlRepository) -> ConsumerRegistry:
    consumers = UserEventConsumers(repository)
    registry = ConsumerRegistry(config.SERVICE_NAME)
    registry.add(events.USER_EVENTS, events.USER_DELETED, consumers.handle_user_deleted)
    registry.add(events.USER_EVENTS, events.USER_ROLE_UPDATED, consumers.handle_user_role_updated)
    return registry
