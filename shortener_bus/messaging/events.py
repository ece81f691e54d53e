# shortener_bus/messaging/events.py
"""
Domain event catalog shared by every producer and consumer.

Each event lives on a topic exchange under a fixed routing key and carries a
flat JSON payload plus an ISO-8601 ``timestamp``.
"""
from datetime import datetime, timezone
from typing import Dict, NamedTuple, Tuple

USER_EVENTS = "user_events"
URL_EVENTS = "url_events"

USER_REGISTERED = "user.registered"
USER_ROLE_UPDATED = "user.role_updated"
USER_DELETED = "user.deleted"

URL_CREATED = "url.created"
URL_CLICKED = "url.clicked"
URL_DELETED = "url.deleted"


class EventType(NamedTuple):
    exchange: str
    routing_key: str
    producer: str
    fields: Tuple[str, ...]


CATALOG: Dict[str, EventType] = {
    event.routing_key: event
    for event in (
        EventType(USER_EVENTS, USER_REGISTERED, "auth_service", ("email", "name")),
        EventType(USER_EVENTS, USER_ROLE_UPDATED, "auth_service", ("email", "oldRole", "newRole", "userId")),
        EventType(USER_EVENTS, USER_DELETED, "auth_service", ("email", "userId")),
        EventType(
            URL_EVENTS, URL_CREATED, "url_service",
            ("urlCode", "originalUrl", "shortUrl", "userEmail", "userId", "expiresAt"),
        ),
        EventType(URL_EVENTS, URL_CLICKED, "url_service", ("urlCode", "clicks")),
        EventType(
            URL_EVENTS, URL_DELETED, "url_service",
            ("urlCode", "originalUrl", "clicks", "deletedBy", "deletedAt"),
        ),
    )
}


def utc_timestamp(moment: datetime = None) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def get_event_type(routing_key: str) -> EventType:
    try:
        return CATALOG[routing_key]
    except KeyError:
        raise ValueError(f"Unknown routing key '{routing_key}'") from None


def build_payload(routing_key: str, **fields) -> dict:
    """
    Builds the envelope for a catalog event.
    All catalog fields must be supplied (None is an accepted value);
    ``timestamp`` is filled in when the caller does not provide one.
    """
    event_type = get_event_type(routing_key)
    missing = [name for name in event_type.fields if name not in fields]
    if missing:
        raise ValueError(f"Event '{routing_key}' is missing fields: {', '.join(missing)}")

    payload = dict(fields)
    payload.setdefault("timestamp", utc_timestamp())
    return payload


def topic_matches(pattern: str, routing_key: str) -> bool:
    """
    Topic exchange matching: ``*`` stands for exactly one dot-separated
    word, ``#`` for zero or more words.
    """
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern, words) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        # '#' may swallow any number of words, including none.
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


def dead_letter_exchange_name(exchange: str) -> str:
    return f"{exchange}_dlx"


def dead_letter_queue_name(queue_name: str) -> str:
    return f"{queue_name}_dlq"


def queue_name_for(service_name: str, routing_pattern: str) -> str:
    """``email_service`` + ``user.registered`` -> ``email_service_user_registered``."""
    words = []
    for word in routing_pattern.split("."):
        if word == "*":
            word = "any"
        elif word == "#":
            word = "all"
        words.append(word)
    return f"{service_name}_{'_'.join(words)}"
