# email_service/messaging/consumers.py

import logging

from email_service import config
from email_service.mailer import Mailer
from shortener_bus.messaging import ConsumerRegistry
from shortener_bus.messaging import events

logger = logging.getLogger(__name__)


def _require_email(routing_key, data) -> str:
    email = data.get("email")
    if not email:
        raise ValueError(f"{routing_key} event without email")
    return email


class NotificationConsumers:
    """
    Turns user and URL events into notification mails.
    Delivery is at-least-once: a redelivered event sends the mail again.
    """

    def __init__(self, mailer: Mailer, send_url_created_emails: bool = config.SEND_URL_CREATED_EMAILS):
        self.mailer = mailer
        self.send_url_created_emails = send_url_created_emails

    async def handle_user_registered(self, routing_key, data):
        email = _require_email(routing_key, data)
        logger.info(f"Processing {routing_key} event for user: {email}")
        await self.mailer.send_welcome_email(email, data.get("name"))

    async def handle_user_role_updated(self, routing_key, data):
        email = _require_email(routing_key, data)
        logger.info(f"Processing {routing_key} event for user: {email}")
        await self.mailer.send_role_update_email(email, data.get("oldRole"), data.get("newRole"))

    async def handle_user_deleted(self, routing_key, data):
        email = _require_email(routing_key, data)
        logger.info(f"Processing {routing_key} event for user: {email}")
        await self.mailer.send_account_deleted_email(email)

    async def handle_url_created(self, routing_key, data):
        logger.info(f"Processing {routing_key} event for URL: {data.get('urlCode')}")
        if not self.send_url_created_emails:
            return
        if not data.get("userEmail"):
            logger.warning(f"No owner email on {routing_key} event for URL {data.get('urlCode')}. Skipping.")
            return
        await self.mailer.send_url_created_email(data["userEmail"], data.get("shortUrl"), data.get("originalUrl"))


def build_registry(consumers: NotificationConsumers) -> ConsumerRegistry:
    registry = ConsumerRegistry(config.SERVICE_NAME)
    registry.add(events.USER_EVENTS, events.USER_REGISTERED, consumers.handle_user_registered)
    registry.add(events.USER_EVENTS, events.USER_ROLE_UPDATED, consumers.handle_user_role_updated)
    registry.add(events.USER_EVENTS, events.USER_DELETED, consumers.handle_user_deleted)
    registry.add(events.URL_EVENTS, events.URL_CREATED, consumers.handle_url_created)
    return registry
