"""Shared test fixtures"""
import asyncio

import aio_pika
import pytest

from fakes import FakeBroker
from shortener_bus.messaging import BrokerClient, ReconnectPolicy

FAST_RECONNECT = ReconnectPolicy(initial_delay=0.01, max_delay=0.05, multiplier=2, jitter=0)


@pytest.fixture
def fake_broker(monkeypatch):
    """In-memory broker wired in place of aio_pika.connect"""
    broker = FakeBroker()
    monkeypatch.setattr(aio_pika, "connect", broker.connect)
    return broker


@pytest.fixture
def make_client(fake_broker):
    """Factory for BrokerClients that are closed at teardown"""
    clients = []

    def factory(service_name="test_service", exchanges=("user_events", "url_events"), **kwargs):
        kwargs.setdefault("reconnect_policy", FAST_RECONNECT)
        client = BrokerClient(service_name, exchanges=exchanges, **kwargs)
        clients.append(client)
        return client

    yield factory

    for client in clients:
        if client._connection is not None or client._reconnect_task is not None:
            raise RuntimeError("BrokerClient left open; close it at the end of the test")


async def wait_until(predicate, timeout=2.0):
    """Polls the predicate until it holds or the timeout expires"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)
