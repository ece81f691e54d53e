# auth_service/messaging/event_publisher.py

from shortener_bus.messaging import BrokerClient
from shortener_bus.messaging import events


class AuthEventPublisher:
    """Publishes user lifecycle facts after the auth store has been written."""

    def __init__(self, client: BrokerClient):
        self.client = client

    async def _publish(self, routing_key: str, **fields) -> bool:
        payload = events.build_payload(routing_key, **fields)
        return await self.client.publish(events.USER_EVENTS, routing_key, payload)

    async def publish_user_registered(self, email: str, name: str) -> bool:
        return await self._publish(events.USER_REGISTERED, email=email, name=name)

    async def publish_user_role_updated(self, user_id: str, email: str, old_role: str, new_role: str) -> bool:
        return await self._publish(
            events.USER_ROLE_UPDATED,
            email=email,
            oldRole=old_role,
            newRole=new_role,
            userId=str(user_id),
        )

    async def publish_user_deleted(self, user_id: str, email: str) -> bool:
        return await self._publish(events.USER_DELETED, email=email, userId=str(user_id))
