"""
Round trips through a real broker over a plain connection.

Skipped unless MQTT_BROKER_HOSTNAME is set (a ``.env`` file works too).
"""
import asyncio
import os
import uuid

import pytest

from managed_mqtt_client import AsyncManagedClient, ConnectionOptions, ManagedClient, QoS

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not os.getenv("MQTT_BROKER_HOSTNAME"), reason="MQTT_BROKER_HOSTNAME not set"),
]


def broker_options() -> ConnectionOptions:
    return ConnectionOptions(
        broker_host=os.getenv("MQTT_BROKER_HOSTNAME", "localhost"),
        port=int(os.getenv("MQTT_BROKER_PORT", 1883)),
        use_secure_connection=False,
        username=os.getenv("MQTT_BROKER_USERNAME") or None,
        password=os.getenv("MQTT_BROKER_PASSWORD") or None,
        auto_reconnect_delay_seconds=1,
    )


@pytest.fixture
def topic_root() -> str:
    return f"managed-mqtt-tests/{uuid.uuid4()}"


class TestLiveBroker:

    def test_sync_round_trip(self, topic_root, wait_until):
        received = []
        with ManagedClient(broker_options()) as client:
            client.subscribe(f"{topic_root}/inputs/+/isPressed", received.append)
            assert client.wait_until_connected(timeout=10)

            client.publish(f"{topic_root}/inputs/button1/isPressed", "true", qos=QoS.AT_LEAST_ONCE)

            assert wait_until(lambda: len(received) == 1, timeout=10)
        assert received[0].payload_text() == "true"

    @pytest.mark.asyncio
    async def test_async_round_trip(self, topic_root):
        received = asyncio.Queue()
        async with AsyncManagedClient(broker_options()) as client:
            await client.subscribe(f"{topic_root}/outputs/#", received.put_nowait)
            assert await client.wait_until_connected(timeout=10)

            assert await client.publish(f"{topic_root}/outputs/led1/isOn", "false") is True

            message = await asyncio.wait_for(received.get(), timeout=10)
        assert message.topic == f"{topic_root}/outputs/led1/isOn"
        assert message.payload == b"false"
