# url_service/messaging/event_publisher.py

from datetime import datetime, timezone

from shortener_bus.messaging import BrokerClient
from shortener_bus.messaging import events
from url_service.repository import UrlRecord


class UrlEventPublisher:
    def __init__(self, client: BrokerClient):
        self.client = client

    async def _publish(self, routing_key: str, **fields) -> bool:
        payload = events.build_payload(routing_key, **fields)
        return await self.client.publish(events.URL_EVENTS, routing_key, payload)

    async def publish_url_created(self, record: UrlRecord) -> bool:
        return await self._publish(
            events.URL_CREATED,
            urlCode=record.url_code,
            originalUrl=record.original_url,
            shortUrl=record.short_url,
            userEmail=record.owner_email,
            userId=record.owner_id,
            expiresAt=record.expires_at,
        )

    async def publish_url_clicked(self, record: UrlRecord) -> bool:
        return await self._publish(events.URL_CLICKED, urlCode=record.url_code, clicks=record.clicks)

    async def publish_url_deleted(self, record: UrlRecord, deleted_by: str) -> bool:
        deleted_at = record.deleted_at or datetime.now(timezone.utc)
        return await self._publish(
            events.URL_DELETED,
            urlCode=record.url_code,
            originalUrl=record.original_url,
            clicks=record.clicks,
            deletedBy=deleted_by,
            deletedAt=events.utc_timestamp(deleted_at),
        )
