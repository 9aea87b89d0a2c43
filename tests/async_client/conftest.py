import asyncio
from types import SimpleNamespace
from typing import Any, Optional

import pytest
from aiomqtt import MqttError

from managed_mqtt_client.core.models import ConnectionOptions

AIOMQTT_CLIENT = "managed_mqtt_client.async_client.connection.Client"


class FakeAioClient:
    """Stands in for aiomqtt.Client: an async context manager with a message stream."""

    def __init__(self, broker: "FakeBroker", kwargs: dict[str, Any]):
        self.broker = broker
        self.kwargs = kwargs
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self):
        self.broker.connect_calls += 1
        if self.broker.connect_errors:
            error = self.broker.connect_errors.pop(0)
            try:
                raise error
            except OSError as exc:
                # aiomqtt reports socket failures as MqttError
                raise MqttError(str(exc)) from None
        self.broker.current = self
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.broker.current is self:
            self.broker.current = None
        return False

    async def subscribe(self, topic, qos=0, **kwargs):
        self.broker.subscribed.append((topic, qos))

    async def unsubscribe(self, topic, **kwargs):
        self.broker.unsubscribed.append(topic)

    async def publish(self, topic, payload=None, qos=0, retain=False, properties=None, **kwargs):
        if self.broker.publish_error is not None:
            raise self.broker.publish_error
        self.broker.published.append(
            {"topic": topic, "payload": payload, "qos": qos, "retain": retain, "properties": properties}
        )

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._inbox.get()
            if isinstance(item, BaseException):
                raise item
            yield item

    def push(self, item):
        self._inbox.put_nowait(item)


class FakeBroker:
    """Records what the manager did and lets tests inject broker behavior."""

    def __init__(self):
        self.clients: list[FakeAioClient] = []
        self.current: Optional[FakeAioClient] = None
        self.connect_errors: list[BaseException] = []
        self.connect_calls = 0
        self.subscribed: list[tuple[str, int]] = []
        self.unsubscribed: list[str] = []
        self.published: list[dict[str, Any]] = []
        self.publish_error: Optional[BaseException] = None

    def client_class(self, **kwargs) -> FakeAioClient:
        client = FakeAioClient(self, kwargs)
        self.clients.append(client)
        return client

    def deliver(self, topic: str, payload: bytes, qos: int = 1, retain: bool = False, properties=None):
        """Queue an inbound message on the live connection."""
        self.current.push(
            SimpleNamespace(topic=SimpleNamespace(value=topic), payload=payload, qos=qos, retain=retain, properties=properties)
        )

    def drop(self):
        """Break the live connection."""
        self.current.push(MqttError("Disconnected during message iteration"))

    def subscribed_patterns(self) -> list[str]:
        return [pattern for pattern, _ in self.subscribed]


async def _eventually(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll a predicate on the event loop until it holds or the timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def eventually():
    return _eventually


@pytest.fixture
def broker(monkeypatch) -> FakeBroker:
    fake = FakeBroker()
    monkeypatch.setattr(AIOMQTT_CLIENT, fake.client_class)
    return fake


@pytest.fixture
def plain_options() -> ConnectionOptions:
    return ConnectionOptions(
        broker_host="broker.local",
        client_id="raspi-01",
        use_secure_connection=False,
        auto_reconnect_delay_seconds=0.05,
        connect_timeout_seconds=1,
    )
