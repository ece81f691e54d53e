"""Tests for BrokerClient against the in-memory broker"""
import asyncio
import json

import aio_pika
import pytest

from conftest import wait_until
from shortener_bus.messaging import Subscription


URL_CREATED_PAYLOAD = {
    "urlCode": "abc123",
    "originalUrl": "https://x.com",
    "shortUrl": "https://short.ly/abc123",
    "userId": "u1",
    "expiresAt": "2025-01-01T00:00:00Z",
    "timestamp": "2024-12-01T00:00:00Z",
}


class Recorder:
    """Handler that records deliveries and can fail on demand"""

    def __init__(self, fail_when=None):
        self.calls = []
        self.fail_when = fail_when

    async def __call__(self, routing_key, payload):
        self.calls.append((routing_key, payload))
        if self.fail_when and self.fail_when(routing_key, payload):
            raise RuntimeError(f"cannot process {routing_key}")


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_declares_durable_topic_exchanges(self, fake_broker, make_client):
        client = make_client(exchanges=["user_events", "url_events"])

        try:
            assert await client.connect() is True

            assert client.is_connected
            assert client.get_channel() is not None
            for name in ("user_events", "url_events"):
                exchange = fake_broker.exchanges[name]
                assert exchange.type == aio_pika.ExchangeType.TOPIC
                assert exchange.durable is True
            assert client.get_channel().prefetch_count == client.prefetch_count
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_get_channel_is_none_before_connect(self, fake_broker, make_client):
        client = make_client()

        assert client.get_channel() is None
        assert client.is_connected is False

    @pytest.mark.asyncio
    async def test_initial_failure_is_retried_until_broker_is_up(self, fake_broker, make_client):
        fake_broker.fail_connects = 2
        client = make_client()

        try:
            assert await client.connect() is False
            await wait_until(lambda: client.is_connected)

            assert fake_broker.connect_attempts == 3
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_start_does_not_block_the_caller(self, fake_broker, make_client):
        client = make_client()

        try:
            task = client.start()
            assert client.is_connected is False

            assert await task is True
            assert client.is_connected
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_context_manager_closes_connection(self, fake_broker, make_client):
        async with make_client() as client:
            assert client.is_connected

        assert client.get_channel() is None
        assert fake_broker.open_connections == []


class TestPublish:
    @pytest.mark.asyncio
    async def test_publish_without_channel_fails_fast(self, fake_broker, make_client):
        client = make_client()

        result = await asyncio.wait_for(client.publish("url_events", "url.clicked", {"urlCode": "x"}), timeout=1)

        assert result is False
        assert fake_broker.published == []

    @pytest.mark.asyncio
    async def test_publish_sends_persistent_json(self, fake_broker, make_client):
        async with make_client() as client:
            result = await client.publish("url_events", "url.created", URL_CREATED_PAYLOAD)

        assert result is True
        exchange, routing_key, message = fake_broker.published[0]
        assert (exchange, routing_key) == ("url_events", "url.created")
        assert json.loads(message.body) == URL_CREATED_PAYLOAD
        assert message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT
        assert message.content_type == "application/json"

    @pytest.mark.asyncio
    async def test_unserializable_payload_returns_false(self, fake_broker, make_client):
        payload = {}
        payload["self"] = payload

        async with make_client() as client:
            assert await client.publish("url_events", "url.created", payload) is False

        assert fake_broker.published == []

    @pytest.mark.asyncio
    async def test_publish_on_dead_channel_returns_false(self, fake_broker, make_client):
        client = make_client()
        try:
            await client.connect()
            channel = client.get_channel()
            channel.is_closed = True  # simulate the channel dying under the client

            assert await client.publish("url_events", "url.clicked", {"urlCode": "x"}) is False
        finally:
            channel.is_closed = False
            await client.close()

    @pytest.mark.asyncio
    async def test_publish_confirmed_uses_confirm_channel(self, fake_broker, make_client):
        async with make_client() as client:
            assert await client.publish_confirmed("user_events", "user.deleted", {"userId": "u9"}) is True

            confirm_channels = [
                ch for ch in fake_broker.connections[0].channels if ch.publisher_confirms
            ]
            assert len(confirm_channels) == 1
            assert client.get_channel().publisher_confirms is False

    @pytest.mark.asyncio
    async def test_publish_confirmed_without_connection_returns_false(self, fake_broker, make_client):
        client = make_client()

        assert await client.publish_confirmed("user_events", "user.deleted", {"userId": "u9"}) is False

    @pytest.mark.asyncio
    async def test_datetimes_are_serialized_as_iso_8601(self, fake_broker, make_client):
        from datetime import datetime, timezone

        async with make_client() as client:
            await client.publish("url_events", "url.created", {"expiresAt": datetime(2025, 1, 1, tzinfo=timezone.utc)})

        _, _, message = fake_broker.published[0]
        assert json.loads(message.body) == {"expiresAt": "2025-01-01T00:00:00.000Z"}


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_pattern_subscriber_receives_url_created(self, fake_broker, make_client):
        handler = Recorder()
        async with make_client("email_service") as client:
            assert await client.subscribe("url_events", "url.*", "email_service_url_created", handler) is True
            await client.publish("url_events", "url.created", URL_CREATED_PAYLOAD)

            await wait_until(lambda: handler.calls)

        assert handler.calls == [("url.created", URL_CREATED_PAYLOAD)]
        queue = fake_broker.queues["email_service_url_created"]
        assert len(queue.acked) == 1
        assert queue.unacked == []

    @pytest.mark.asyncio
    async def test_wildcard_binding_filters_other_keys(self, fake_broker, make_client):
        handler = Recorder()
        async with make_client() as client:
            await client.subscribe("url_events", "url.*", "audit_url_any", handler)
            await client.subscribe("user_events", "user.deleted", "audit_user_deleted", Recorder())

            for key in ("url.created", "url.clicked", "url.deleted"):
                await client.publish("url_events", key, {"urlCode": "abc123"})
            await client.publish("user_events", "user.deleted", {"userId": "u1"})

            await wait_until(lambda: len(handler.calls) == 3)

        assert [key for key, _ in handler.calls] == ["url.created", "url.clicked", "url.deleted"]

    @pytest.mark.asyncio
    async def test_queue_is_durable_with_dead_letter_exchange(self, fake_broker, make_client):
        async with make_client(dead_letter_queues=False) as client:
            await client.subscribe("user_events", "user.deleted", "url_service_user_deleted", Recorder())

        queue = fake_broker.queues["url_service_user_deleted"]
        assert queue.durable is True
        assert queue.arguments == {"x-dead-letter-exchange": "user_events_dlx"}
        assert "user_events_dlx" not in fake_broker.exchanges

    @pytest.mark.asyncio
    async def test_subscribe_before_connect_activates_on_connect(self, fake_broker, make_client):
        handler = Recorder()
        client = make_client()
        try:
            assert await client.subscribe("user_events", "user.registered", "email_service_user_registered", handler) is False
            assert "email_service_user_registered" not in fake_broker.queues

            await client.connect()
            await client.publish("user_events", "user.registered", {"email": "a@b.com", "name": "Ann"})
            await wait_until(lambda: handler.calls)
        finally:
            await client.close()

        assert handler.calls == [("user.registered", {"email": "a@b.com", "name": "Ann"})]

    @pytest.mark.asyncio
    async def test_messages_on_one_queue_are_processed_in_order(self, fake_broker, make_client):
        handler = Recorder()
        async with make_client() as client:
            await client.subscribe("url_events", "url.clicked", "stats_url_clicked", handler)
            for clicks in range(1, 6):
                await client.publish("url_events", "url.clicked", {"urlCode": "abc123", "clicks": clicks})

            await wait_until(lambda: len(handler.calls) == 5)

        assert [payload["clicks"] for _, payload in handler.calls] == [1, 2, 3, 4, 5]


class TestFanOutAndDeadLetters:
    @pytest.mark.asyncio
    async def test_each_service_queue_gets_its_own_copy(self, fake_broker, make_client):
        email_handler = Recorder()
        url_handler = Recorder()
        email_client = make_client("email_service")
        url_client = make_client("url_service")
        try:
            await email_client.connect()
            await url_client.connect()
            await email_client.subscribe("user_events", "user.deleted", "email_service_user_deleted", email_handler)
            # Declared but not consuming yet, like a service that is still starting.
            channel = url_client.get_channel()
            queue = await channel.declare_queue(
                "url_service_user_deleted",
                durable=True,
                arguments={"x-dead-letter-exchange": "user_events_dlx"},
            )
            await queue.bind("user_events", routing_key="user.deleted")

            await email_client.publish("user_events", "user.deleted", {"userId": "u9", "email": "a@b.com"})
            await wait_until(lambda: email_handler.calls)

            # Acking on the email queue leaves the url service's copy in place.
            assert len(fake_broker.queues["url_service_user_deleted"].ready) == 1

            await url_client.subscribe("user_events", "user.deleted", "url_service_user_deleted", url_handler)
            await wait_until(lambda: url_handler.calls)
        finally:
            await email_client.close()
            await url_client.close()

        assert email_handler.calls == url_handler.calls == [("user.deleted", {"userId": "u9", "email": "a@b.com"})]

    @pytest.mark.asyncio
    async def test_failed_message_is_dead_lettered_and_consumer_continues(self, fake_broker, make_client):
        handler = Recorder(fail_when=lambda key, payload: payload["userId"] == "bad")
        async with make_client("email_service") as client:
            await client.subscribe("user_events", "user.role_updated", "email_service_user_role_updated", handler)

            await client.publish("user_events", "user.role_updated", {"userId": "bad", "newRole": "admin"})
            await client.publish("user_events", "user.role_updated", {"userId": "good", "newRole": "admin"})
            await wait_until(lambda: len(handler.calls) == 2)

        queue = fake_broker.queues["email_service_user_role_updated"]
        assert [json.loads(d.body)["userId"] for d in queue.nacked] == ["bad"]
        assert [json.loads(d.body)["userId"] for d in queue.acked] == ["good"]
        assert queue.arguments["x-dead-letter-exchange"] == "user_events_dlx"

        dead_letters = fake_broker.queues["email_service_user_role_updated_dlq"]
        assert [json.loads(d.body)["userId"] for d in dead_letters.ready] == ["bad"]
        assert fake_broker.exchanges["user_events_dlx"].durable is True

    @pytest.mark.asyncio
    async def test_dead_letter_names_the_rejecting_queue(self, fake_broker, make_client):
        always_fail = Recorder(fail_when=lambda key, payload: True)
        async with make_client() as client:
            await client.subscribe("user_events", "user.deleted", "email_service_user_deleted", always_fail)
            await client.subscribe("user_events", "user.deleted", "url_service_user_deleted", Recorder())

            await client.publish("user_events", "user.deleted", {"userId": "u9"})
            await wait_until(lambda: always_fail.calls)
            await wait_until(lambda: fake_broker.queues["url_service_user_deleted"].acked)

        # The dead-letter exchange is shared per source exchange; x-death tells the origin apart.
        dead_letters = fake_broker.queues["email_service_user_deleted_dlq"].ready
        assert [d.routing_key for d in dead_letters] == ["user.deleted"]
        assert dead_letters[0].headers["x-death"][0]["queue"] == "email_service_user_deleted"

    @pytest.mark.asyncio
    async def test_main_queue_arguments_do_not_depend_on_dead_letter_queues(self, fake_broker, make_client):
        async with make_client() as client:
            await client.subscribe("user_events", "user.deleted", "url_service_user_deleted", Recorder())

        assert fake_broker.queues["url_service_user_deleted"].arguments == {"x-dead-letter-exchange": "user_events_dlx"}
        assert ("url_service_user_deleted_dlq", "user.deleted") in fake_broker.exchanges["user_events_dlx"].bindings

    @pytest.mark.asyncio
    async def test_queue_declared_by_another_deployment_is_reused(self, fake_broker, make_client):
        fake_broker.declare_exchange("user_events", aio_pika.ExchangeType.TOPIC, durable=True)
        fake_broker.declare_queue("email_service_user_registered", True, {"x-dead-letter-exchange": "user_events_dlx"})
        fake_broker.bind("email_service_user_registered", "user_events", "user.registered")
        handler = Recorder()

        async with make_client("email_service") as client:
            assert await client.subscribe("user_events", "user.registered", "email_service_user_registered", handler) is True
            await client.publish("user_events", "user.registered", {"email": "a@b.com"})
            await wait_until(lambda: handler.calls)

        assert fake_broker.connect_attempts == 1

    @pytest.mark.asyncio
    async def test_malformed_body_does_not_stop_consumer(self, fake_broker, make_client):
        handler = Recorder()
        async with make_client() as client:
            await client.subscribe("url_events", "url.clicked", "stats_url_clicked", handler)
            fake_broker.route("url_events", _raw_delivery(b"not-json", "url.clicked"))
            await client.publish("url_events", "url.clicked", {"urlCode": "abc123", "clicks": 1})

            await wait_until(lambda: handler.calls)

        queue = fake_broker.queues["stats_url_clicked"]
        assert [d.body for d in queue.nacked] == [b"not-json"]
        assert handler.calls == [("url.clicked", {"urlCode": "abc123", "clicks": 1})]


class TestReconnect:
    @pytest.mark.asyncio
    async def test_dropped_connection_is_rebuilt_and_consumers_resume(self, fake_broker, make_client):
        handler = Recorder()
        client = make_client(exchanges=["user_events"])
        try:
            await client.connect()
            await client.subscribe("user_events", "user.deleted", "url_service_user_deleted", handler)

            fake_broker.drop_connections()
            assert client.get_channel() is None

            await wait_until(lambda: client.is_connected)
            assert len(fake_broker.connections) == 2
            assert "user_events" in fake_broker.exchanges

            await client.publish("user_events", "user.deleted", {"userId": "u9"})
            await wait_until(lambda: handler.calls)
        finally:
            await client.close()

        assert handler.calls == [("user.deleted", {"userId": "u9"})]

    @pytest.mark.asyncio
    async def test_unacked_message_is_redelivered_after_reconnect(self, fake_broker, make_client):
        release = asyncio.Event()
        calls = []

        async def slow_handler(routing_key, payload):
            calls.append(payload)
            if len(calls) == 1:
                await release.wait()

        client = make_client()
        try:
            await client.connect()
            await client.subscribe("user_events", "user.registered", "email_service_user_registered", slow_handler)
            await client.publish("user_events", "user.registered", {"email": "a@b.com"})
            await wait_until(lambda: calls)

            fake_broker.drop_connections()
            await wait_until(lambda: len(calls) == 2)
        finally:
            await client.close()

        # At-least-once: the handler saw the same event twice.
        assert calls == [{"email": "a@b.com"}, {"email": "a@b.com"}]
        assert len(fake_broker.queues["email_service_user_registered"].acked) == 1

    @pytest.mark.asyncio
    async def test_persistent_message_survives_broker_restart(self, fake_broker, make_client):
        handler = Recorder()
        consumer = make_client("email_service")
        producer = make_client("auth_service")
        try:
            # The consumer declares its queue, then goes offline.
            await consumer.connect()
            await consumer.subscribe("user_events", "user.registered", "email_service_user_registered", handler)
            await consumer.close()

            await producer.connect()
            await producer.publish("user_events", "user.registered", {"email": "a@b.com", "name": "Ann"})
            await producer.close()

            fake_broker.restart()

            await consumer.connect()
            await wait_until(lambda: handler.calls)
        finally:
            await consumer.close()
            await producer.close()

        assert handler.calls == [("user.registered", {"email": "a@b.com", "name": "Ann"})]

    @pytest.mark.asyncio
    async def test_close_stops_reconnecting(self, fake_broker, make_client):
        fake_broker.fail_connects = 100
        client = make_client()

        await client.connect()
        await client.close()
        attempts = fake_broker.connect_attempts
        await asyncio.sleep(0.1)

        assert fake_broker.connect_attempts == attempts
        assert client._reconnect_task is None

    @pytest.mark.asyncio
    async def test_close_returns_in_flight_message_to_queue(self, fake_broker, make_client):
        started = asyncio.Event()

        async def hanging_handler(routing_key, payload):
            started.set()
            await asyncio.Event().wait()

        client = make_client()
        await client.connect()
        await client.subscribe("url_events", "url.deleted", "auth_service_url_deleted", hanging_handler)
        await client.publish("url_events", "url.deleted", {"urlCode": "abc123"})
        await started.wait()

        await client.close()

        queue = fake_broker.queues["auth_service_url_deleted"]
        assert queue.acked == [] and queue.nacked == []
        assert len(queue.ready) == 1


class TestChannelErrors:
    @pytest.mark.asyncio
    async def test_mismatched_exchange_fails_connect_and_backs_off(self, fake_broker, make_client):
        fake_broker.declare_exchange("user_events", aio_pika.ExchangeType.FANOUT, durable=True)
        client = make_client(exchanges=["user_events"])
        try:
            assert await client.connect() is False
            await wait_until(lambda: fake_broker.connect_attempts >= 4)

            assert client.is_connected is False
            assert client._attempt >= 3
            assert fake_broker.exchanges["user_events"].type == aio_pika.ExchangeType.FANOUT
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_mismatched_queue_leaves_publishing_and_other_consumers_working(self, fake_broker, make_client):
        fake_broker.declare_exchange("user_events", aio_pika.ExchangeType.TOPIC, durable=True)
        fake_broker.declare_queue("email_service_user_registered", True, {"x-message-ttl": 60000})
        registered = Recorder()
        deleted = Recorder()
        client = make_client("email_service")
        client.add_subscription(Subscription("user_events", "user.registered", "email_service_user_registered", registered))
        client.add_subscription(Subscription("user_events", "user.deleted", "email_service_user_deleted", deleted))
        try:
            assert await client.connect() is True
            await wait_until(lambda: client._subscription_attempts.get("email_service_user_registered", 0) >= 3)

            results = [await client.publish("user_events", "user.deleted", {"userId": str(n)}) for n in range(5)]
            assert results == [True] * 5
            await wait_until(lambda: len(deleted.calls) == 5)
            assert fake_broker.connect_attempts == 1
            assert "email_service_user_registered" not in client._consumer_tasks

            # Once the conflicting queue is gone, the retry activates the subscription.
            del fake_broker.queues["email_service_user_registered"]
            await wait_until(lambda: "email_service_user_registered" in client._consumer_tasks)
            await client.publish("user_events", "user.registered", {"email": "a@b.com"})
            await wait_until(lambda: registered.calls)
        finally:
            await client.close()

        assert fake_broker.connect_attempts == 1
        assert registered.calls == [("user.registered", {"email": "a@b.com"})]

    @pytest.mark.asyncio
    async def test_channel_error_reopens_channel_on_same_connection(self, fake_broker, make_client):
        fake_broker.declare_exchange("audit_events", aio_pika.ExchangeType.FANOUT, durable=True)
        handler = Recorder()
        async with make_client() as client:
            await client.subscribe("user_events", "user.deleted", "url_service_user_deleted", handler)
            old_channel = client.get_channel()

            assert await client.publish("audit_events", "audit.any", {"id": 1}) is False
            assert old_channel.is_closed

            await wait_until(lambda: client.is_connected and not client._background_tasks)
            assert client.get_channel() is not old_channel
            assert fake_broker.connect_attempts == 1
            assert len(fake_broker.open_connections) == 1

            await client.publish("user_events", "user.deleted", {"userId": "u9"})
            await wait_until(lambda: handler.calls)

        assert handler.calls == [("user.deleted", {"userId": "u9"})]

    @pytest.mark.asyncio
    async def test_concurrent_confirmed_publishes_share_one_channel(self, fake_broker, make_client):
        async with make_client() as client:
            results = await asyncio.gather(
                *(client.publish_confirmed("user_events", "user.deleted", {"userId": str(n)}) for n in range(5))
            )

            assert results == [True] * 5
            confirm_channels = [ch for ch in fake_broker.connections[0].channels if ch.publisher_confirms]
            assert len(confirm_channels) == 1


def _raw_delivery(body, routing_key):
    from fakes import Delivery

    return Delivery(body, routing_key, aio_pika.DeliveryMode.PERSISTENT)
