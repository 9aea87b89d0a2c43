"""
Threaded connection manager using paho-mqtt directly.
No asyncio dependencies - a daemon thread owns the session.

The session thread connects (TCP, TLS handshake with certificate validation,
CONNECT), pumps paho's network loop until the connection drops, waits the
configured reconnect delay and starts over, until stop() is requested.
Inbound messages and handler calls run on the session thread.
"""
import ssl
import threading
import logging
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion, MQTTErrorCode, MQTTProtocolVersion
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from ..core.exceptions import CertificateValidationError
from ..core.models import ConnectionOptions, ConnectionState, Message, ProtocolVersion, QoS, Subscription

logger = logging.getLogger(__name__)

LOOP_TIMEOUT_SECONDS = 1.0


class ConnectionManager:
    """
    Owns one paho-mqtt client and keeps its session alive.

    Uses threading primitives (Event, RLock) for the stop request and for
    correlating publish completions. paho callbacks run on the session thread
    and never raise.

    Attributes:
        options: Broker connection options
        logger: Logger or LoggerAdapter receiving connection events
    """

    def __init__(
        self,
        options: ConnectionOptions,
        subscriptions: Callable[[], list[Subscription]],
        on_message: Callable[[Message], Any],
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        """
        Initialize the connection manager.

        Args:
            options: Broker connection options
            subscriptions: Provider of the subscriptions to restore on every connect
            on_message: Callback receiving every inbound message
            logger: Custom logger adapter (module logger if None)
        """
        self.options = options
        self.logger = logger or logging.getLogger(__name__)
        self._subscriptions = subscriptions
        self._on_message = on_message

        self._client: mqtt.Client | None = None
        self._thread: threading.Thread | None = None
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._connected_event = threading.Event()
        self._attempt_issued = threading.Event()

        self._inflight: dict[int, Message] = {}
        self._completed_early: set[int] = set()
        self._inflight_lock = threading.RLock()

    # === State ===

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            previous, self._state = self._state, state
        if previous is not state:
            self.logger.debug(f"Connection state {previous} -> {state}", extra={"state": str(state)})

    def wait_until_connected(self, timeout: float | None = None) -> bool:
        """
        Block until the session is connected.

        Returns:
            True if connected before the timeout expired
        """
        return self._connected_event.wait(timeout)

    # === Lifecycle ===

    def _create_client(self, tls_context: Optional[ssl.SSLContext]) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=CallbackAPIVersion.VERSION2,
            client_id=self.options.client_id,
            protocol=MQTTProtocolVersion(int(self.options.protocol_version)),
        )
        client.connect_timeout = self.options.connect_timeout_seconds

        if self.options.username:
            client.username_pw_set(self.options.username, self.options.password_value())

        if tls_context is not None:
            client.tls_set_context(tls_context)
            # hostname checks are replaced by the certificate validator
            client.tls_insecure_set(True)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message_received
        client.on_publish = self._on_publish
        return client

    def start(self, tls_context: Optional[ssl.SSLContext] = None) -> None:
        """
        Spawn the session thread.

        Returns once the first connect attempt has been issued; the connection
        itself is established in the background.

        Args:
            tls_context: TLS context for a secure connection, None for plain TCP
        """
        if self._thread is not None and self._thread.is_alive():
            self.logger.debug("Connection manager already started")
            return

        self._client = self._create_client(tls_context)
        self._stop_event.clear()
        self._attempt_issued.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"mqtt-session-{self.options.client_id}",
            daemon=True,
        )
        self._thread.start()
        self._attempt_issued.wait(timeout=self.options.connect_timeout_seconds)

    def stop(self, timeout: float | None = None) -> None:
        """
        Disconnect gracefully and join the session thread. Idempotent.

        Args:
            timeout: Maximum time to wait for the session thread
        """
        thread = self._thread
        if thread is None:
            return

        self.logger.debug(f"Stopping connection to broker {self.options.broker_host}")
        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout if timeout is not None else self.options.connect_timeout_seconds + 2 * LOOP_TIMEOUT_SECONDS)
            if thread.is_alive():
                self.logger.warning("Session thread did not stop in time")
        self._thread = None

    # === Session thread ===

    def _run(self) -> None:
        host = self.options.broker_host
        port = self.options.effective_port

        while not self._stop_event.is_set():
            if self.state is ConnectionState.DISCONNECTED:
                self._set_state(ConnectionState.CONNECTING)
            self.logger.info(f"Connecting to broker {host}:{port}", extra={"broker": host})
            self._attempt_issued.set()

            try:
                self._client.connect(host, port, keepalive=self.options.keep_alive_period_seconds)
            except CertificateValidationError as e:
                self.logger.error(
                    f"Broker certificate rejected: {e.detail}",
                    extra={"broker": host, "subject": e.subject, "reason": "; ".join(e.reasons)},
                )
            except (OSError, ValueError, mqtt.WebsocketConnectionError) as e:
                self.logger.error(f"Failed to connect to broker {host}:{port}: {e}", extra={"broker": host})
            else:
                self._pump()

            self._connected_event.clear()
            if self._stop_event.is_set():
                break

            self._set_state(ConnectionState.RECONNECTING)
            delay = self.options.auto_reconnect_delay_seconds
            self.logger.info(f"Reconnecting in {delay} seconds", extra={"broker": host})
            self._stop_event.wait(delay)

        self._set_state(ConnectionState.DISCONNECTED)
        self.logger.info(f"Disconnected from broker {host}:{port}", extra={"broker": host})

    def _pump(self) -> None:
        while not self._stop_event.is_set():
            rc = self._client.loop(timeout=LOOP_TIMEOUT_SECONDS)
            if rc != MQTTErrorCode.MQTT_ERR_SUCCESS:
                self.logger.debug(f"Network loop ended: {mqtt.error_string(rc)}")
                return

        if self._client.is_connected():
            self._client.disconnect()

    # === paho callbacks ===

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """Paho callback when the broker answered CONNECT."""
        if reason_code.is_failure:
            self.logger.error(f"Connection refused by broker: {reason_code}", extra={"broker": self.options.broker_host})
            return

        # must precede the subscription snapshot below
        self._set_state(ConnectionState.CONNECTED)
        self.logger.info(
            f"Connected to broker {self.options.broker_host}:{self.options.effective_port}",
            extra={"broker": self.options.broker_host},
        )

        for subscription in self._subscriptions():
            result, mid = client.subscribe(subscription.pattern, qos=int(subscription.qos))
            if result != MQTTErrorCode.MQTT_ERR_SUCCESS:
                self.logger.warning(
                    f"Failed to subscribe to '{subscription.pattern}': {mqtt.error_string(result)}",
                    extra={"pattern": subscription.pattern},
                )
                continue
            self.logger.debug(f"Subscribed to pattern {subscription.pattern}", extra={"pattern": subscription.pattern})
        self._connected_event.set()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        """Paho callback when the connection closed."""
        self._connected_event.clear()
        if self._stop_event.is_set():
            self.logger.debug("Disconnected on request")
            return
        self._set_state(ConnectionState.RECONNECTING)
        self.logger.warning(f"Connection to broker lost ({reason_code})", extra={"broker": self.options.broker_host})

    def _on_message_received(self, client, userdata, msg):
        """
        Paho callback for incoming messages.
        Runs on the session thread - handlers block the network loop.
        """
        try:
            properties = getattr(msg, "properties", None)
            message = Message(
                topic=msg.topic,
                payload=msg.payload,
                content_type=getattr(properties, "ContentType", "") or "",
                retain=bool(msg.retain),
                qos=QoS(msg.qos),
            )
            self.logger.debug(f"Received message on topic {message.topic}", extra={"topic": message.topic})
            self._on_message(message)
        except Exception as e:
            self.logger.error(f"Error in message callback: {e}", exc_info=True)

    def _on_publish(self, client, userdata, mid, reason_code, properties):
        """Paho callback when a publish completed (sent for QoS 0, acknowledged otherwise)."""
        with self._inflight_lock:
            message = self._inflight.pop(mid, None)
            if message is None:
                # fired before publish() registered the mid
                self._completed_early.add(mid)
                return
        self._log_published(message, mid, reason_code)

    def _log_published(self, message: Message, mid: int, reason_code: Any = None) -> None:
        if reason_code is not None and getattr(reason_code, "is_failure", False):
            self.logger.warning(
                f"Broker rejected message on topic {message.topic}: {reason_code}",
                extra={"topic": message.topic, "mid": mid},
            )
            return
        self.logger.info(f"Message published: {message.topic}", extra={"topic": message.topic, "mid": mid})

    # === Operations ===

    def _publish_properties(self, message: Message) -> Optional[Properties]:
        if self.options.protocol_version is not ProtocolVersion.V5 or not message.content_type:
            return None
        properties = Properties(PacketTypes.PUBLISH)
        properties.ContentType = message.content_type
        return properties

    def publish(self, message: Message) -> Optional[int]:
        """
        Hand a message to paho without waiting for delivery.

        Args:
            message: Message to publish

        Returns:
            The paho message id, or None if the message was dropped
        """
        if self._client is None:
            self.logger.warning(f"Failed to publish to {message.topic}: client not started", extra={"topic": message.topic})
            return None

        try:
            info = self._client.publish(
                message.topic,
                message.payload,
                qos=int(message.qos),
                retain=message.retain,
                properties=self._publish_properties(message),
            )
        except (ValueError, RuntimeError) as e:
            self.logger.warning(f"Failed to publish to {message.topic}: {e}", extra={"topic": message.topic})
            return None

        queued = info.rc == MQTTErrorCode.MQTT_ERR_NO_CONN and message.qos > QoS.AT_MOST_ONCE
        if info.rc != MQTTErrorCode.MQTT_ERR_SUCCESS and not queued:
            self.logger.warning(
                f"Failed to publish to {message.topic}: {mqtt.error_string(info.rc)}",
                extra={"topic": message.topic, "mid": info.mid},
            )
            return None

        with self._inflight_lock:
            completed = info.mid in self._completed_early
            if completed:
                self._completed_early.discard(info.mid)
            else:
                self._inflight[info.mid] = message

        if completed:
            self._log_published(message, info.mid)
        elif queued:
            self.logger.info(
                f"Not connected, message on {message.topic} queued until reconnect",
                extra={"topic": message.topic, "mid": info.mid},
            )
        else:
            self.logger.debug(f"Publishing to {message.topic}", extra={"topic": message.topic, "mid": info.mid})
        return info.mid

    def subscribe(self, pattern: str, qos: QoS | int = QoS.AT_LEAST_ONCE) -> None:
        """Subscribe at the broker now if connected; otherwise on the next connect."""
        if self._client is None or not self.is_connected:
            self.logger.debug(f"Not connected, '{pattern}' is subscribed on next connect", extra={"pattern": pattern})
            return
        result, _ = self._client.subscribe(pattern, qos=int(qos))
        if result != MQTTErrorCode.MQTT_ERR_SUCCESS:
            self.logger.warning(f"Failed to subscribe to '{pattern}': {mqtt.error_string(result)}", extra={"pattern": pattern})
            return
        self.logger.debug(f"Subscribed to pattern {pattern}", extra={"pattern": pattern})

    def unsubscribe(self, pattern: str) -> None:
        """Unsubscribe at the broker if connected."""
        if self._client is None or not self.is_connected:
            return
        result, _ = self._client.unsubscribe(pattern)
        if result != MQTTErrorCode.MQTT_ERR_SUCCESS:
            self.logger.warning(f"Failed to unsubscribe from '{pattern}': {mqtt.error_string(result)}", extra={"pattern": pattern})
            return
        self.logger.debug(f"Unsubscribed from pattern {pattern}", extra={"pattern": pattern})


__all__ = ["ConnectionManager"]
