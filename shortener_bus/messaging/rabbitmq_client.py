# shortener_bus/messaging/rabbitmq_client.py

import asyncio
import json
import logging
from datetime import date, datetime
from typing import Dict, Iterable, NamedTuple, Optional, Set

import aio_pika
from aio_pika.exceptions import AMQPException, ChannelInvalidStateError, DeliveryError

from shortener_bus import config
from shortener_bus.messaging.dispatcher import Handler, dispatch_message
from shortener_bus.messaging.events import (
    dead_letter_exchange_name,
    dead_letter_queue_name,
    utc_timestamp,
)
from shortener_bus.messaging.reconnect import ReconnectPolicy

logger = logging.getLogger(__name__)

BROKER_ERRORS = (AMQPException, ChannelInvalidStateError, OSError, asyncio.TimeoutError)


class Subscription(NamedTuple):
    exchange: str
    routing_pattern: str
    queue_name: str
    handler: Handler


def _json_default(value):
    if isinstance(value, datetime):
        return utc_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def encode_message(payload) -> aio_pika.Message:
    """Serializes a payload into a persistent JSON message."""
    body = json.dumps(payload, default=_json_default).encode("utf-8")
    return aio_pika.Message(
        body=body,
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )


class BrokerClient:
    """
    Owns one RabbitMQ connection and one channel for a service process.

    Publishers and consumers share the channel. The connection is opened in the
    background and rebuilt after any loss with exponential backoff; exchanges
    and every recorded subscription are declared again on each connect, so
    services never need to re-register after an outage. A channel the broker
    closes under a live connection is replaced without reconnecting, and a
    subscription whose queue cannot be declared is retried on its own.

    The channel may be absent at any moment (before the first connect, during
    a reconnect), so ``publish`` and ``subscribe`` report failure with a False
    return instead of raising into the caller.
    """

    def __init__(
        self,
        service_name: str,
        exchanges: Iterable[str] = (),
        url: str = None,
        reconnect_policy: ReconnectPolicy = None,
        prefetch_count: int = None,
        dead_letter_queues: bool = None,
        publish_timeout: float = None,
    ):
        self.service_name = service_name
        self.exchanges = tuple(exchanges)
        self.url = url or config.RABBITMQ_URL
        self.reconnect_policy = reconnect_policy or ReconnectPolicy()
        self.prefetch_count = config.PREFETCH_COUNT if prefetch_count is None else prefetch_count
        self.dead_letter_queues = config.DEAD_LETTER_QUEUES if dead_letter_queues is None else dead_letter_queues
        self.publish_timeout = config.PUBLISH_TIMEOUT if publish_timeout is None else publish_timeout

        self._connection = None
        self._channel = None
        self._confirm_channel = None
        self._exchange_cache: Dict[tuple, object] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._consumer_tasks: Dict[str, asyncio.Task] = {}
        self._connect_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._retry_tasks: Dict[str, asyncio.Task] = {}
        self._subscription_attempts: Dict[str, int] = {}
        self._background_tasks: Set[asyncio.Task] = set()
        self._connect_lock = asyncio.Lock()
        self._confirm_lock = asyncio.Lock()
        self._attempt = 0
        self._closing = False

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.get_channel() is not None

    @property
    def subscriptions(self):
        return tuple(self._subscriptions.values())

    def get_channel(self):
        """Returns the live channel, or None while disconnected."""
        channel = self._channel
        if channel is None or channel.is_closed:
            return None
        return channel

    def start(self) -> asyncio.Task:
        """Connects in the background so the caller (an HTTP server) is never blocked."""
        self._closing = False
        self._connect_task = asyncio.get_running_loop().create_task(self.connect())
        return self._connect_task

    async def connect(self) -> bool:
        """
        Opens the connection and channel, declares the service's exchanges and
        activates recorded subscriptions. A failure is logged and a reconnect
        is scheduled; this method never raises for broker errors.
        """
        self._closing = False
        return await self._connect()

    async def _connect(self) -> bool:
        async with self._connect_lock:
            if self._closing:
                return False
            if self.is_connected:
                return True

            logger.info(f"[{self.service_name}] Connecting to RabbitMQ at {self.url}...")
            try:
                connection = await aio_pika.connect(self.url)
            except BROKER_ERRORS as e:
                logger.error(f"[{self.service_name}] Failed to connect to RabbitMQ: {e}")
                self._schedule_reconnect()
                return False

            try:
                channel = await self._open_channel(connection)
            except BROKER_ERRORS as e:
                logger.error(f"[{self.service_name}] Failed to prepare RabbitMQ channel: {e}")
                await self._close_connection(connection)
                self._schedule_reconnect()
                return False

            if self._closing:
                # close() ran while the handshake was in flight.
                await self._close_connection(connection)
                return False

            self._connection = connection
            self._channel = channel
            connection.close_callbacks.add(self._on_connection_closed)
            logger.info(f"[{self.service_name}] RabbitMQ connected")

        await self._activate_all()
        if self.is_connected:
            self._attempt = 0
        return True

    async def _open_channel(self, connection):
        """Opens the shared channel, applies QoS and declares the service's exchanges."""
        channel = await connection.channel(publisher_confirms=False)
        if self.prefetch_count:
            await channel.set_qos(prefetch_count=self.prefetch_count)
        self._exchange_cache.clear()
        for exchange_name in self.exchanges:
            await self._declare_exchange(channel, exchange_name)
        channel.close_callbacks.add(self._on_channel_closed)
        return channel

    async def _activate_all(self):
        for subscription in list(self._subscriptions.values()):
            await self._activate(subscription)

    def _on_connection_closed(self, sender, exc=None):
        if sender is not self._connection:
            return
        self._reset_state()
        if self._closing:
            return
        if exc is not None:
            logger.error(f"[{self.service_name}] RabbitMQ connection error: {exc}")
        logger.warning(f"[{self.service_name}] RabbitMQ connection closed. Reconnecting...")
        self._schedule_reconnect()

    def _on_channel_closed(self, sender, exc=None):
        if sender is not self._channel or self._closing:
            return
        connection = self._connection
        if connection is None or connection.is_closed:
            return
        logger.error(f"[{self.service_name}] RabbitMQ channel closed: {exc}. Opening a new channel...")
        self._channel = None
        self._spawn(self._restore_channel(connection))

    async def _restore_channel(self, connection):
        """Replaces a channel the broker closed, keeping the connection."""
        async with self._connect_lock:
            if self._closing or connection is not self._connection or connection.is_closed:
                return
            try:
                self._channel = await self._open_channel(connection)
            except BROKER_ERRORS as e:
                logger.error(f"[{self.service_name}] Could not reopen RabbitMQ channel: {e}. Recycling connection...")
                await self._close_connection(connection)
                return
            logger.info(f"[{self.service_name}] RabbitMQ channel reopened")

        await self._activate_all()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def _reset_state(self):
        self._connection = None
        self._channel = None
        self._confirm_channel = None
        self._exchange_cache.clear()
        for task in self._consumer_tasks.values():
            task.cancel()
        self._consumer_tasks.clear()

    def _schedule_reconnect(self):
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        delay = self.reconnect_policy.delay_for(self._attempt)
        self._attempt += 1
        logger.info(f"[{self.service_name}] Retrying RabbitMQ connection in {delay:.1f} seconds (attempt {self._attempt})...")
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)
        self._reconnect_task = None
        await self._connect()

    async def _close_connection(self, connection):
        try:
            if not connection.is_closed:
                await connection.close()
        except BROKER_ERRORS as e:
            logger.warning(f"[{self.service_name}] Error while closing RabbitMQ connection: {e}")

    async def close(self):
        """Stops consumers, cancels pending reconnects and closes the connection."""
        self._closing = True

        pending = [task for task in (self._connect_task, self._reconnect_task) if task is not None]
        pending.extend(self._consumer_tasks.values())
        pending.extend(self._retry_tasks.values())
        pending.extend(self._background_tasks)
        self._connect_task = None
        self._reconnect_task = None
        self._consumer_tasks.clear()
        self._retry_tasks.clear()
        self._background_tasks.clear()

        current = asyncio.current_task()
        pending = [task for task in pending if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        connection = self._connection
        self._reset_state()
        if connection is not None:
            await self._close_connection(connection)
            logger.info(f"[{self.service_name}] RabbitMQ connection closed")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def _declare_exchange(self, channel, exchange_name: str):
        """Idempotent topic exchange declaration, cached per channel."""
        key = (id(channel), exchange_name)
        exchange = self._exchange_cache.get(key)
        if exchange is None:
            exchange = await channel.declare_exchange(
                exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
            )
            self._exchange_cache[key] = exchange
        return exchange

    async def publish(self, exchange_name: str, routing_key: str, payload) -> bool:
        """
        Fire-and-forget publish of a persistent JSON message.
        Returns False instead of raising when the channel is missing or the
        publish fails, so the caller's business operation is never affected.
        """
        channel = self.get_channel()
        if channel is None:
            logger.error(f"[{self.service_name}] RabbitMQ channel not initialized. Dropping '{routing_key}' event.")
            return False
        return await self._publish(channel, exchange_name, routing_key, payload)

    async def publish_confirmed(self, exchange_name: str, routing_key: str, payload) -> bool:
        """Like publish(), but returns True only once the broker confirms the message."""
        channel = await self._get_confirm_channel()
        if channel is None:
            logger.error(f"[{self.service_name}] RabbitMQ channel not initialized. Dropping '{routing_key}' event.")
            return False
        return await self._publish(channel, exchange_name, routing_key, payload)

    async def _get_confirm_channel(self):
        async with self._confirm_lock:
            if self._confirm_channel is not None and not self._confirm_channel.is_closed:
                return self._confirm_channel
            connection = self._connection
            if connection is None or connection.is_closed:
                return None
            try:
                self._confirm_channel = await connection.channel(publisher_confirms=True)
            except BROKER_ERRORS as e:
                logger.error(f"[{self.service_name}] Could not open confirm channel: {e}")
                return None
            return self._confirm_channel

    async def _publish(self, channel, exchange_name: str, routing_key: str, payload) -> bool:
        try:
            message = encode_message(payload)
        except (TypeError, ValueError) as e:
            logger.error(f"[{self.service_name}] Could not serialize '{routing_key}' event: {e}")
            return False

        try:
            exchange = await self._declare_exchange(channel, exchange_name)
            await exchange.publish(
                message,
                routing_key=routing_key,
                mandatory=False,
                timeout=self.publish_timeout,
            )
        except DeliveryError as e:
            logger.error(f"[{self.service_name}] Broker rejected event '{routing_key}' on {exchange_name}: {e}")
            return False
        except BROKER_ERRORS as e:
            logger.error(f"[{self.service_name}] Error publishing event to {exchange_name} with routing key {routing_key}: {e!r}")
            return False

        logger.info(f"[{self.service_name}] Event published to {exchange_name} with routing key {routing_key}")
        return True

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    def add_subscription(self, subscription: Subscription):
        """Records a subscription; it is declared and consumed on every connect."""
        self._cancel_consumer(subscription.queue_name)
        self._cancel_retry(subscription.queue_name)
        self._subscriptions[subscription.queue_name] = subscription

    async def subscribe(self, exchange_name: str, routing_pattern: str, queue_name: str, handler: Handler) -> bool:
        """
        Binds a durable queue to an exchange by pattern and consumes it with
        manual acknowledgement. The subscription is remembered either way and
        (re)activated on every connect; False means it is not consuming yet.
        """
        subscription = Subscription(exchange_name, routing_pattern, queue_name, handler)
        self.add_subscription(subscription)
        if self.get_channel() is None:
            logger.error(f"[{self.service_name}] RabbitMQ channel not initialized. Queue '{queue_name}' will subscribe once connected.")
            return False
        return await self._activate(subscription)

    async def _activate(self, subscription: Subscription) -> bool:
        connection, channel = self._connection, self.get_channel()
        if channel is None:
            return False

        try:
            await self._declare_topology(connection, subscription)
            queue = await channel.get_queue(subscription.queue_name)
        except BROKER_ERRORS as e:
            logger.error(f"[{self.service_name}] Error subscribing queue '{subscription.queue_name}' to {subscription.exchange}: {e}")
            self._schedule_subscription_retry(subscription)
            return False

        self._subscription_attempts.pop(subscription.queue_name, None)
        self._cancel_retry(subscription.queue_name)
        self._cancel_consumer(subscription.queue_name)
        self._consumer_tasks[subscription.queue_name] = asyncio.get_running_loop().create_task(
            self._consume(subscription, queue), name=f"consumer:{subscription.queue_name}"
        )
        logger.info(
            f"[{self.service_name}] Subscribed to {subscription.exchange} with pattern "
            f"{subscription.routing_pattern} on queue {subscription.queue_name}"
        )
        return True

    async def _declare_topology(self, connection, subscription: Subscription):
        """
        Declares the exchange, dead-letter plumbing, queue and binding of a
        subscription on a short-lived channel. The broker closes the channel
        that carried a rejected declaration (for example a queue that already
        exists with other arguments), so the shared channel is never used here.
        """
        channel = await connection.channel(publisher_confirms=False)
        try:
            exchange = await channel.declare_exchange(
                subscription.exchange, aio_pika.ExchangeType.TOPIC, durable=True
            )
            if self.dead_letter_queues:
                await self._declare_dead_letter_queue(channel, subscription)
            queue = await channel.declare_queue(
                subscription.queue_name,
                durable=True,
                arguments={"x-dead-letter-exchange": dead_letter_exchange_name(subscription.exchange)},
            )
            await queue.bind(exchange, routing_key=subscription.routing_pattern)
        finally:
            if not channel.is_closed:
                await channel.close()

    async def _declare_dead_letter_queue(self, channel, subscription: Subscription):
        dlx = await channel.declare_exchange(
            dead_letter_exchange_name(subscription.exchange), aio_pika.ExchangeType.TOPIC, durable=True
        )
        dlq = await channel.declare_queue(dead_letter_queue_name(subscription.queue_name), durable=True)
        # Dead letters keep their routing key, so the pattern picks them up.
        await dlq.bind(dlx, routing_key=subscription.routing_pattern)

    def _schedule_subscription_retry(self, subscription: Subscription):
        if self._closing:
            return
        queue_name = subscription.queue_name
        task = self._retry_tasks.get(queue_name)
        if task is not None and not task.done():
            return
        attempt = self._subscription_attempts.get(queue_name, 0)
        self._subscription_attempts[queue_name] = attempt + 1
        delay = self.reconnect_policy.delay_for(attempt)
        logger.warning(f"[{self.service_name}] Retrying subscription of queue '{queue_name}' in {delay:.1f} seconds (attempt {attempt + 1})...")
        self._retry_tasks[queue_name] = self._spawn(self._retry_subscription(subscription, delay))

    async def _retry_subscription(self, subscription: Subscription, delay: float):
        await asyncio.sleep(delay)
        queue_name = subscription.queue_name
        self._retry_tasks.pop(queue_name, None)
        if self._subscriptions.get(queue_name) is not subscription or self.get_channel() is None:
            # Replaced, or disconnected: the next connect activates it.
            return
        consumer = self._consumer_tasks.get(queue_name)
        if consumer is not None and not consumer.done():
            return
        await self._activate(subscription)

    def _cancel_retry(self, queue_name: str):
        task = self._retry_tasks.pop(queue_name, None)
        if task is None or task.done():
            return
        if task is not asyncio.current_task():
            task.cancel()

    async def _consume(self, subscription: Subscription, queue):
        """Receives deliveries one at a time and awaits each before the next."""
        try:
            async with queue.iterator() as queue_iter:
                async for message in queue_iter:
                    await dispatch_message(message, subscription.handler)
        except BROKER_ERRORS as e:
            logger.warning(f"[{self.service_name}] Consumer for queue '{subscription.queue_name}' stopped: {e}")

    def _cancel_consumer(self, queue_name: str):
        task = self._consumer_tasks.pop(queue_name, None)
        if task is not None and not task.done():
            task.cancel()
