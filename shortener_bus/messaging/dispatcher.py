# shortener_bus/messaging/dispatcher.py

import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Union

from aio_pika.exceptions import AMQPException, ChannelInvalidStateError

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], Union[Awaitable[None], None]]


async def _settle(message, routing_key: str, ack: bool) -> None:
    """Acks or rejects (without requeue) a delivery."""
    try:
        if ack:
            await message.ack()
        else:
            await message.nack(requeue=False)
    except (AMQPException, ChannelInvalidStateError, OSError) as e:
        # The channel is gone; the broker will redeliver the message after reconnect.
        logger.warning(f"Could not settle message with routing key '{routing_key}': {e}")


async def dispatch_message(message, handler: Handler) -> bool:
    """
    Processes a single delivery with manual acknowledgement.

    The body is decoded as JSON and handed to ``handler(routing_key, payload)``.
    A decode failure or a handler exception rejects the message without
    requeue, so it goes to the queue's dead-letter exchange or is dropped.
    Errors are logged and never raised, so one bad message cannot stop the
    consumer loop. Returns True when the message was acknowledged.
    """
    routing_key = message.routing_key

    try:
        payload = json.loads(message.body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error(f"Could not decode message with routing key '{routing_key}': {e}. Body: {message.body[:200]!r}")
        await _settle(message, routing_key, ack=False)
        return False

    logger.info(f"Received message with routing key '{routing_key}'")

    try:
        result = handler(routing_key, payload)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Error processing message with routing key '{routing_key}': {e}", exc_info=True)
        await _settle(message, routing_key, ack=False)
        return False

    await _settle(message, routing_key, ack=True)
    return True
