import threading
import time
from unittest.mock import MagicMock, patch

import pytest
from paho.mqtt.enums import MQTTErrorCode
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from managed_mqtt_client.core.models import ConnectionOptions

PAHO_CLIENT = "managed_mqtt_client.sync_client.connection.mqtt.Client"


def connack(name: str = "Success") -> ReasonCode:
    return ReasonCode(PacketTypes.CONNACK, name)


class FakePahoSession:
    """
    Drives a mocked paho client the way a broker would.

    connect() succeeds (firing on_connect) unless an exception is queued in
    ``connect_errors``; loop() keeps the session up until drop() is called.
    """

    def __init__(self, client: MagicMock):
        self.client = client
        self.connected = False
        self.connect_errors: list[BaseException] = []
        self.connect_calls = 0
        self._drop = threading.Event()

        client.connect.side_effect = self._connect
        client.loop.side_effect = self._loop
        client.is_connected.side_effect = lambda: self.connected
        client.disconnect.side_effect = self._disconnect
        client.subscribe.return_value = (MQTTErrorCode.MQTT_ERR_SUCCESS, 1)
        client.unsubscribe.return_value = (MQTTErrorCode.MQTT_ERR_SUCCESS, 2)

    def _connect(self, host, port, keepalive=60):
        self.connect_calls += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self.connected = True
        self._drop.clear()
        self.client.on_connect(self.client, None, MagicMock(), connack(), None)
        return MQTTErrorCode.MQTT_ERR_SUCCESS

    def _loop(self, timeout=1.0):
        time.sleep(0.005)
        if self._drop.is_set() and self.connected:
            self.connected = False
            self.client.on_disconnect(self.client, None, MagicMock(), ReasonCode(PacketTypes.DISCONNECT, "Unspecified error"), None)
        if not self.connected:
            return MQTTErrorCode.MQTT_ERR_CONN_LOST
        return MQTTErrorCode.MQTT_ERR_SUCCESS

    def _disconnect(self, *args, **kwargs):
        self.connected = False
        self.client.on_disconnect(self.client, None, MagicMock(), ReasonCode(PacketTypes.DISCONNECT, "Normal disconnection"), None)
        return MQTTErrorCode.MQTT_ERR_SUCCESS

    def drop(self):
        """Simulate the broker closing the connection."""
        self._drop.set()

    def deliver(self, topic: str, payload: bytes, qos: int = 1, retain: bool = False, properties=None):
        """Simulate an inbound PUBLISH."""
        msg = MagicMock(topic=topic, payload=payload, qos=qos, retain=retain, properties=properties)
        self.client.on_message(self.client, None, msg)

    def subscribed_patterns(self) -> list[str]:
        return [c.args[0] for c in self.client.subscribe.call_args_list]


@pytest.fixture
def paho_client_class():
    with patch(PAHO_CLIENT) as client_class:
        yield client_class


@pytest.fixture
def paho_session(paho_client_class) -> FakePahoSession:
    return FakePahoSession(paho_client_class.return_value)


@pytest.fixture
def plain_options() -> ConnectionOptions:
    return ConnectionOptions(
        broker_host="broker.local",
        client_id="raspi-01",
        use_secure_connection=False,
        auto_reconnect_delay_seconds=0.05,
        connect_timeout_seconds=1,
    )
