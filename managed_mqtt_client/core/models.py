"""
Data Models for the Managed MQTT Client.

This module defines the value types shared by the threaded and asyncio clients.
All models use Pydantic for validation and are immutable once built.

Key Models:
    - QoS: MQTT delivery guarantee levels
    - ProtocolVersion: MQTT protocol revisions understood by paho-mqtt and aiomqtt
    - ConnectionState: Lifecycle states owned by a connection manager
    - Message: A topic/payload pair, either received or built for publishing
    - Subscription: A topic pattern bound to an application handler
    - ConnectionOptions: Immutable snapshot of the broker connection settings

Example:
    >>> from managed_mqtt_client.core.models import Message, QoS
    >>> message = Message(topic="inputs/button1/isPressed", payload="true", qos=QoS.AT_LEAST_ONCE)
    >>> message.payload
    b'true'
"""
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any, Callable, Optional
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

if TYPE_CHECKING:
    from .config import MqttSettings


class QoS(IntEnum):
    """
    MQTT quality of service levels.

    - AT_MOST_ONCE (0): fire and forget
    - AT_LEAST_ONCE (1): acknowledged delivery, duplicates possible
    - EXACTLY_ONCE (2): four-step handshake, no duplicates
    """
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2

    def __str__(self):
        return self.name


class ProtocolVersion(IntEnum):
    """
    MQTT protocol revisions.

    Values match paho.mqtt.client.MQTTv31/MQTTv311/MQTTv5 and
    aiomqtt.ProtocolVersion so they can be handed to either library unchanged.
    """
    V31 = 3
    V311 = 4
    V5 = 5

    def __str__(self):
        return self.name


class ConnectionState(Enum):
    """
    Session lifecycle of a connection manager.

    DISCONNECTED -> CONNECTING -> CONNECTED; a lost connection moves to
    RECONNECTING until the next connect succeeds or the manager is stopped.
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"

    def __str__(self):
        return self.value


class Message(BaseModel):
    """
    An MQTT application message.

    Attributes:
        topic: Concrete topic name (never contains wildcards)
        payload: Raw payload bytes; str values are UTF-8 encoded
        content_type: Optional content type, transmitted with MQTT v5 only
        retain: Whether the broker should retain the message
        qos: Requested quality of service
    """
    model_config = ConfigDict(frozen=True)

    topic: str
    payload: bytes = b""
    content_type: str = ""
    retain: bool = False
    qos: QoS = QoS.AT_LEAST_ONCE

    @field_validator("payload", mode="before")
    @classmethod
    def encode_payload(cls, value: Any) -> Any:
        """Accept text and buffer payloads alongside bytes."""
        if value is None:
            return b""
        if isinstance(value, str):
            return value.encode("utf-8")
        if isinstance(value, (bytearray, memoryview)):
            return bytes(value)
        return value

    def payload_text(self) -> str:
        """Decode the payload as UTF-8, replacing undecodable bytes."""
        return self.payload.decode("utf-8", errors="replace")


class Subscription(BaseModel):
    """
    A subscription pattern bound to a handler.

    Keyed uniquely by ``pattern`` inside a SubscriptionRegistry. The ``label`` is
    an opaque name used in log records to identify the handler.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    pattern: str
    handler: Callable[[Message], Any]
    qos: QoS = QoS.AT_LEAST_ONCE
    label: str = ""


class ConnectionOptions(BaseModel):
    """
    Broker connection settings, built once at startup.

    The secure port is used iff ``use_secure_connection`` is set, and a client
    certificate is presented iff ``use_client_certificate`` is set on a secure
    connection.

    Example:
        >>> options = ConnectionOptions(
        ...     broker_host="mqtt.example.com",
        ...     client_id="raspi-01",
        ...     username="device",
        ...     password="secret",
        ... )
        >>> options.effective_port
        8883
    """
    model_config = ConfigDict(frozen=True)

    broker_host: str = "localhost"
    port: int = Field(default=1883, ge=1, le=65535)
    secure_port: int = Field(default=8883, ge=1, le=65535)
    use_secure_connection: bool = True
    use_client_certificate: bool = True
    client_id: str = ""
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    protocol_version: ProtocolVersion = ProtocolVersion.V311
    keep_alive_period_seconds: int = Field(default=15, gt=0)
    auto_reconnect_delay_seconds: float = Field(default=5, ge=0)
    connect_timeout_seconds: float = Field(default=10, gt=0)

    @property
    def effective_port(self) -> int:
        """Port matching the selected transport security."""
        return self.secure_port if self.use_secure_connection else self.port

    @property
    def presents_client_certificate(self) -> bool:
        """True when mutual TLS is requested on a secure connection."""
        return self.use_secure_connection and self.use_client_certificate

    def password_value(self) -> Optional[str]:
        """Unwrap the password for handing it to the transport."""
        if self.password is None:
            return None
        return self.password.get_secret_value()

    @classmethod
    def from_settings(
        cls,
        mqtt: "MqttSettings",
        protocol_version: Optional[ProtocolVersion] = None,
    ) -> "ConnectionOptions":
        """
        Build options from the ``mqtt`` section of the configuration file.

        Args:
            mqtt: Parsed ``mqtt`` settings section
            protocol_version: Override for the configured protocol version

        Returns:
            Immutable ConnectionOptions
        """
        return cls(
            broker_host=mqtt.broker_host,
            port=mqtt.broker_port,
            secure_port=mqtt.broker_secure_port,
            use_secure_connection=mqtt.use_secure_connection,
            use_client_certificate=mqtt.use_client_certificate,
            client_id=mqtt.client_id,
            username=mqtt.username or None,
            password=mqtt.password if mqtt.password.get_secret_value() else None,
            protocol_version=protocol_version or mqtt.protocol_version,
            keep_alive_period_seconds=mqtt.keep_alive_period,
            auto_reconnect_delay_seconds=mqtt.auto_reconnect_delay,
        )


__all__ = [
    "QoS",
    "ProtocolVersion",
    "ConnectionState",
    "Message",
    "Subscription",
    "ConnectionOptions",
]
