"""
Asyncio managed MQTT client.
Same contract as the threaded client, with coroutines and async with.
"""
import logging
from pathlib import Path
from typing import Any, Optional

from ..core.base import ManagedClientBase
from ..core.certificates import CertificateBundle
from ..core.config import CertificateSettings
from ..core.models import ConnectionOptions, ConnectionState, QoS
from ..core.subscription_registry import Handler
from .connection import AsyncConnectionManager

logger = logging.getLogger(__name__)


class AsyncManagedClient(ManagedClientBase):
    """
    Managed MQTT client backed by an asyncio AsyncConnectionManager.

    Same contract as the threaded ManagedClient with coroutines; handlers are
    plain callables invoked from the session task.

    Example:
        >>> async with AsyncManagedClient.from_settings(load_settings()) as client:
        ...     await client.subscribe("inputs/#", on_input)
        ...     await client.publish("outputs/led1/isOn", "true")
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
        self._connection = AsyncConnectionManager(
            self.options,
            subscriptions=self.registry.snapshot,
            on_message=self.registry.dispatch,
            logger=self.logger,
        )

    async def start(self):
        """
        Start the session task.

        Raises:
            ConfigurationError: If the certificates cannot be loaded
        """
        await self._connection.start(self._build_tls_context())
        return self

    async def stop(self):
        await self._connection.stop()

    async def wait_until_connected(self, timeout: float | None = None) -> bool:
        return await self._connection.wait_until_connected(timeout)

    async def publish(
        self,
        topic: str,
        payload: Any,
        content_type: str = "",
        retain: bool = False,
        qos: QoS | int = QoS.AT_LEAST_ONCE,
    ) -> bool:
        """
        Publish a message and wait for the broker acknowledgement.

        Returns:
            True if the broker accepted the message

        Raises:
            InvalidArgumentError: If the topic or message is invalid
        """
        message = self._build_message(topic, payload, content_type=content_type, retain=retain, qos=qos)
        self.logger.debug(
            f"Publishing '{self._truncate_str(message.payload_text())}' to {topic}",
            extra={"topic": topic},
        )
        return await self._connection.publish(message)

    async def subscribe(
        self,
        pattern: str,
        handler: Handler,
        qos: QoS | int = QoS.AT_LEAST_ONCE,
        label: str | None = None,
    ):
        replaced = self.registry.add(pattern, handler, qos=qos, label=label)
        if replaced is not None:
            await self._connection.unsubscribe(pattern)
        await self._connection.subscribe(pattern, qos)

    async def unsubscribe(self, pattern: str) -> bool:
        if self.registry.remove(pattern) is None:
            return False
        await self._connection.unsubscribe(pattern)
        return True

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    async def __aenter__(self):
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()


__all__ = ["AsyncManagedClient"]
