"""
Asyncio connection management on top of aiomqtt.

AsyncConnectionManager owns the aiomqtt client and reconnects it after
failures. aiomqtt reports socket errors, a rejected broker
certificate included, as MqttError; the rejection is recovered from the
exception chain so it is logged with its subject and reasons.
"""
import asyncio
import contextlib
import logging
import ssl
from typing import Any, Callable, Optional

from aiomqtt import Client, MqttError
from aiomqtt import ProtocolVersion as AioProtocolVersion
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from ..core.exceptions import CertificateValidationError
from ..core.models import ConnectionOptions, ConnectionState, Message, ProtocolVersion, QoS, Subscription
from .compatibility import ensure_compatible_event_loop

logger = logging.getLogger(__name__)


def _certificate_rejection(error: BaseException) -> Optional[CertificateValidationError]:
    """Find a CertificateValidationError that aiomqtt wrapped into an MqttError."""
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        if isinstance(current, CertificateValidationError):
            return current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return None


class AsyncConnectionManager:
    """
    Keeps an aiomqtt session alive from a single asyncio task.

    The task connects, restores every subscription, delivers inbound messages
    and, when the connection drops, waits the reconnect delay before starting
    over. stop() wakes the delay wait and cancels the task.
    """

    def __init__(
        self,
        options: ConnectionOptions,
        subscriptions: Callable[[], list[Subscription]],
        on_message: Callable[[Message], Any],
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.options = options
        self.logger = logger or logging.getLogger(__name__)
        self._subscriptions = subscriptions
        self._on_message = on_message

        self._client: Client | None = None
        self._task: asyncio.Task | None = None
        self._state = ConnectionState.DISCONNECTED
        self._stop_event: asyncio.Event | None = None
        self._connected = asyncio.Event()
        self._attempt_issued = asyncio.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        previous, self._state = self._state, state
        if previous is not state:
            self.logger.debug(f"Connection state {previous} -> {state}", extra={"state": str(state)})

    async def wait_until_connected(self, timeout: float | None = None) -> bool:
        """Wait until the session is connected; False if the timeout expired."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _create_client(self, tls_context: Optional[ssl.SSLContext]) -> Client:
        kwargs: dict[str, Any] = {
            "hostname": self.options.broker_host,
            "port": self.options.effective_port,
            "identifier": self.options.client_id,
            "protocol": AioProtocolVersion(int(self.options.protocol_version)),
            "keepalive": self.options.keep_alive_period_seconds,
            "timeout": self.options.connect_timeout_seconds,
        }
        if self.options.username:
            kwargs["username"] = self.options.username
            kwargs["password"] = self.options.password_value()
        if tls_context is not None:
            kwargs["tls_context"] = tls_context
            # hostname checks are replaced by the certificate validator
            kwargs["tls_insecure"] = True
        return Client(**kwargs)

    async def start(self, tls_context: Optional[ssl.SSLContext] = None) -> None:
        """
        Spawn the session task.

        Returns once the first connect attempt has been issued.
        """
        if self._task is not None and not self._task.done():
            self.logger.debug("Connection manager already started")
            return

        ensure_compatible_event_loop()
        self._stop_event = asyncio.Event()
        self._attempt_issued.clear()
        self._task = asyncio.create_task(self._run(tls_context), name=f"mqtt-session-{self.options.client_id}")
        await self._attempt_issued.wait()

    async def stop(self) -> None:
        """Disconnect and stop reconnecting. Idempotent."""
        task = self._task
        if task is None:
            return

        self.logger.debug(f"Stopping connection to broker {self.options.broker_host}")
        self._stop_event.set()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._task = None
        self._client = None
        self._connected.clear()
        self._set_state(ConnectionState.DISCONNECTED)

    async def _run(self, tls_context: Optional[ssl.SSLContext]) -> None:
        host = self.options.broker_host
        port = self.options.effective_port

        while not self._stop_event.is_set():
            if self._state is ConnectionState.DISCONNECTED:
                self._set_state(ConnectionState.CONNECTING)
            self.logger.info(f"Connecting to broker {host}:{port}", extra={"broker": host})
            self._attempt_issued.set()
            established = False

            try:
                async with self._create_client(tls_context) as client:
                    established = True
                    self._client = client
                    # must precede the subscription snapshot below
                    self._set_state(ConnectionState.CONNECTED)
                    self.logger.info(f"Connected to broker {host}:{port}", extra={"broker": host})

                    for subscription in self._subscriptions():
                        await client.subscribe(subscription.pattern, qos=int(subscription.qos))
                        self.logger.debug(
                            f"Subscribed to pattern {subscription.pattern}",
                            extra={"pattern": subscription.pattern},
                        )
                    self._connected.set()

                    async for message in client.messages:
                        self._deliver(message)
            except (MqttError, CertificateValidationError) as e:
                rejection = _certificate_rejection(e)
                if rejection is not None:
                    self.logger.error(
                        f"Broker certificate rejected: {rejection.detail}",
                        extra={"broker": host, "subject": rejection.subject, "reason": "; ".join(rejection.reasons)},
                    )
                elif established:
                    self.logger.warning(f"Connection to broker lost: {e}", extra={"broker": host})
                else:
                    self.logger.error(f"Failed to connect to broker {host}:{port}: {e}", extra={"broker": host})
            finally:
                self._client = None
                self._connected.clear()

            if self._stop_event.is_set():
                break

            self._set_state(ConnectionState.RECONNECTING)
            delay = self.options.auto_reconnect_delay_seconds
            self.logger.info(f"Reconnecting in {delay} seconds", extra={"broker": host})
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)

        self._set_state(ConnectionState.DISCONNECTED)

    def _deliver(self, message) -> None:
        try:
            properties = getattr(message, "properties", None)
            inbound = Message(
                topic=message.topic.value,
                payload=message.payload if isinstance(message.payload, (bytes, bytearray, str)) else str(message.payload),
                content_type=getattr(properties, "ContentType", "") or "",
                retain=bool(message.retain),
                qos=QoS(message.qos),
            )
            self.logger.debug(f"Received message on topic {inbound.topic}", extra={"topic": inbound.topic})
            self._on_message(inbound)
        except Exception as e:
            self.logger.error(f"Error in message callback: {e}", exc_info=True)

    def _publish_properties(self, message: Message) -> Optional[Properties]:
        if self.options.protocol_version is not ProtocolVersion.V5 or not message.content_type:
            return None
        properties = Properties(PacketTypes.PUBLISH)
        properties.ContentType = message.content_type
        return properties

    async def publish(self, message: Message) -> bool:
        """
        Publish a message and wait for the broker acknowledgement.

        Returns:
            True if the broker accepted the message, False if it was dropped
        """
        client = self._client
        if client is None or not self.is_connected:
            self.logger.warning(f"Failed to publish to {message.topic}: not connected", extra={"topic": message.topic})
            return False

        try:
            await client.publish(
                message.topic,
                message.payload,
                qos=int(message.qos),
                retain=message.retain,
                properties=self._publish_properties(message),
            )
        except MqttError as e:
            self.logger.warning(f"Failed to publish to {message.topic}: {e}", extra={"topic": message.topic})
            return False

        self.logger.info(f"Message published: {message.topic}", extra={"topic": message.topic})
        return True

    async def subscribe(self, pattern: str, qos: QoS | int = QoS.AT_LEAST_ONCE) -> None:
        """Subscribe at the broker now if connected; otherwise on the next connect."""
        client = self._client
        if client is None or not self.is_connected:
            self.logger.debug(f"Not connected, '{pattern}' is subscribed on next connect", extra={"pattern": pattern})
            return
        try:
            await client.subscribe(pattern, qos=int(qos))
        except MqttError as e:
            self.logger.warning(f"Failed to subscribe to '{pattern}': {e}", extra={"pattern": pattern})
            return
        self.logger.debug(f"Subscribed to pattern {pattern}", extra={"pattern": pattern})

    async def unsubscribe(self, pattern: str) -> None:
        """Unsubscribe at the broker if connected."""
        client = self._client
        if client is None or not self.is_connected:
            return
        try:
            await client.unsubscribe(pattern)
        except MqttError as e:
            self.logger.warning(f"Failed to unsubscribe from '{pattern}': {e}", extra={"pattern": pattern})
            return
        self.logger.debug(f"Unsubscribed from pattern {pattern}", extra={"pattern": pattern})


__all__ = ["AsyncConnectionManager"]
