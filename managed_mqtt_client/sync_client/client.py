"""
Threaded managed MQTT client.
No asyncio dependencies - paho-mqtt on a background session thread.
"""
import logging
from pathlib import Path
from typing import Any, Optional

from ..core.base import ManagedClientBase
from ..core.certificates import CertificateBundle
from ..core.config import CertificateSettings
from ..core.models import ConnectionOptions, ConnectionState, QoS
from ..core.subscription_registry import Handler
from .connection import ConnectionManager

logger = logging.getLogger(__name__)


class ManagedClient(ManagedClientBase):
    """
    Managed MQTT client backed by a threaded ConnectionManager.

    Subscriptions may be registered before or after start(); patterns
    registered before start() are subscribed during the first connect, so
    retained messages are not missed. Handlers run on the session thread.

    Example:
        >>> client = ManagedClient.from_settings(load_settings())
        >>> client.subscribe("inputs/+/isPressed", on_button_state, label="on_button_state")
        >>> with client:
        ...     client.publish("outputs/led1/isOn", "true")
    """

    def __init__(
        self,
        options: ConnectionOptions,
        certificates: Optional[CertificateBundle] = None,
        certificate_settings: Optional[CertificateSettings] = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        base_dir: Optional[Path] = None,
    ):
        super().__init__(
            options,
            certificates=certificates,
            certificate_settings=certificate_settings,
            logger=logger,
            base_dir=base_dir,
        )
        self._connection = ConnectionManager(
            self.options,
            subscriptions=self.registry.snapshot,
            on_message=self.registry.dispatch,
            logger=self.logger,
        )

    def start(self):
        """
        Start the session thread (non-blocking).

        Returns:
            self for chaining

        Raises:
            ConfigurationError: If the certificates cannot be loaded
        """
        self._connection.start(self._build_tls_context())
        return self

    def stop(self):
        """Disconnect from the broker and stop reconnecting."""
        self._connection.stop()

    def wait_until_connected(self, timeout: float | None = None) -> bool:
        """Block until connected or the timeout expires."""
        return self._connection.wait_until_connected(timeout)

    def publish(
        self,
        topic: str,
        payload: Any,
        content_type: str = "",
        retain: bool = False,
        qos: QoS | int = QoS.AT_LEAST_ONCE,
    ) -> Optional[int]:
        """
        Publish a message without waiting for delivery.

        Completion is logged once paho reports the message as published.

        Returns:
            The paho message id, or None if the message was dropped

        Raises:
            InvalidArgumentError: If the topic or message is invalid
        """
        message = self._build_message(topic, payload, content_type=content_type, retain=retain, qos=qos)
        self.logger.debug(
            f"Publishing '{self._truncate_str(message.payload_text())}' to {topic}",
            extra={"topic": topic},
        )
        return self._connection.publish(message)

    def subscribe(
        self,
        pattern: str,
        handler: Handler,
        qos: QoS | int = QoS.AT_LEAST_ONCE,
        label: str | None = None,
    ):
        """
        Register a handler for a pattern and subscribe at the broker.

        Replacing the handler of a registered pattern unsubscribes the pattern
        at the broker before subscribing it again.

        Raises:
            InvalidArgumentError: If the pattern is invalid or the handler is not callable
        """
        replaced = self.registry.add(pattern, handler, qos=qos, label=label)
        if replaced is not None:
            self._connection.unsubscribe(pattern)
        self._connection.subscribe(pattern, qos)

    def unsubscribe(self, pattern: str) -> bool:
        """
        Remove a pattern's handler and unsubscribe at the broker.

        Returns:
            True if the pattern was registered
        """
        if self.registry.remove(pattern) is None:
            return False
        self._connection.unsubscribe(pattern)
        return True

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    def __enter__(self):
        """Context manager entry."""
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.stop()


__all__ = ["ManagedClient"]
