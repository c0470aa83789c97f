"""
Shared fixtures for the device bridge tests.

The paho client is always a MagicMock; nothing here touches a real broker or
database server.
"""

from unittest.mock import MagicMock

import pytest

from devicebridge.context import build_context
from devicebridge.db import MemoryStore
from devicebridge.mqtt_handler import ConnectionManager
from devicebridge.settings import Settings


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings():
    return Settings(
        database_url=None,
        mqtt_host="broker.test",
        mqtt_port=1883,
        mqtt_keepalive=30,
        mqtt_reconnect_interval=5,
        mqtt_connect_timeout=10,
        enable_device_ack=False,
        default_actor="web_api",
    )


@pytest.fixture
def ack_settings(settings):
    return settings.model_copy(update={"enable_device_ack": True})


@pytest.fixture
def mock_paho_client():
    """
    Mock paho client.

    subscribe() returns paho's (result, mid) tuple and publish() a MessageInfo-like
    object whose rc is MQTT_ERR_SUCCESS.
    """
    client = MagicMock()
    client.subscribe.return_value = (0, 1)
    client.publish.return_value = MagicMock(rc=0)
    return client


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def connection(settings, mock_paho_client, fake_clock):
    return ConnectionManager(settings, client_factory=lambda s: mock_paho_client, clock=fake_clock)


@pytest.fixture
def ctx(settings, memory_store, mock_paho_client):
    return build_context(settings, store=memory_store, client_factory=lambda s: mock_paho_client)


@pytest.fixture
def ack_ctx(ack_settings, memory_store, mock_paho_client):
    return build_context(ack_settings, store=memory_store, client_factory=lambda s: mock_paho_client)


@pytest.fixture
def drain_messages():
    """Deliver every queued inbound message the way the consumer task would."""

    async def drain(connection):
        while not connection._messages.empty():
            topic, payload = connection._messages.get_nowait()
            await connection._deliver(topic, payload)

    return drain
