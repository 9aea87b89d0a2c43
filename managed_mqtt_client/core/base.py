"""
Abstract Base Class for Managed MQTT Clients.

This module provides the foundational abstract base class (ManagedClientBase)
shared by the threaded (paho-mqtt) and asyncio (aiomqtt) managed clients.

Key Components:
    - ManagedClientBase: Abstract base class defining the client interface
    - MessageLogger: Logger adapter attaching the client id to every record
    - ClientFormatter: Log formatter appending extra fields as key=value pairs
    - Utility functions: configure_logging(), configure_logging_from_settings(),
      generate_unique_id()

The base class handles:
    - Connection options and the generated client identifier
    - Loading certificates and building the TLS context
    - The subscription registry shared with the connection manager
    - Message construction and validation for publishing

Subclasses own the connection manager and decide whether the public operations
are blocking calls or coroutines.
"""
import uuid
import logging
import logging.config
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Mapping, Optional, Self
from pydantic import ValidationError

from .certificates import CertificateBundle
from .config import CertificateSettings, LoggingSettings, Settings
from .exceptions import ConfigurationError, InvalidArgumentError
from .models import ConnectionOptions, ConnectionState, Message, QoS
from .subscription_registry import SubscriptionRegistry
from .tls import build_tls_context
from .topic_matcher import TopicMatcher


logger = logging.getLogger(__name__)

_STANDARD_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
DETAILED_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s.%(funcName)s:%(lineno)d: %(message)s"


class ClientFormatter(logging.Formatter):
    """
    Log formatter that appends contextual metadata to log messages.

    Any attribute set on the record through ``extra`` (client_id, topic,
    pattern, handler, ...) is appended to the formatted message as key=value
    pairs, before a traceback if one is present.

    Example:
        >>> handler.setFormatter(ClientFormatter())
        >>> logger.info("Connected", extra={"client_id": "raspi-01", "broker": "broker.local"})
        # Output: "... Connected client_id=raspi-01 broker=broker.local"
    """

    def formatMessage(self, record: logging.LogRecord) -> str:
        message = super().formatMessage(record)
        extra_info = " ".join(
            f"{k}={v}"
            for k, v in vars(record).items()
            if k not in _STANDARD_RECORD_ATTRIBUTES and not k.startswith("_")
        )
        if extra_info:
            return f"{message} {extra_info}"
        return message


class MessageLogger(logging.LoggerAdapter):
    """
    Logger adapter that provides contextual logging with flexible extra field management.

    Attributes:
        logger: The underlying Logger instance
        extra: Base context dictionary attached to all log records
        merge_extra: If True, merge call-time extras with base extras; if False, replace
        exclude_extras: List of field names to exclude from the extra context

    Example:
        >>> logger = MessageLogger(
        ...     logging.getLogger(__name__),
        ...     extra={"client_id": "raspi-01"},
        ...     merge_extra=True
        ... )
        >>> logger.info("Subscribed", extra={"pattern": "inputs/#"})
        # Logs with both client_id and pattern in the context
    """

    def __init__(
        self,
        logger: logging.Logger,
        extra: dict[str, Any] | None = None,
        merge_extra: bool = False,
        exclude_extras: list[str] | None = None
    ):
        super().__init__(logger, extra or {})
        self.logger = logger
        self.extra = dict(extra or {})
        self.merge_extra = merge_extra
        self.exclude_extras = exclude_extras or []

    def process(self, msg, kwargs):
        """
        Inject the base context into the logging call.

        The base ``extra`` is copied per call, so exclusions and call-time
        fields never leak into later records.
        """
        if self.merge_extra and "extra" in kwargs:
            extra = {**self.extra, **kwargs["extra"]}
        else:
            extra = dict(self.extra)

        for key in self.exclude_extras:
            extra.pop(key, None)

        kwargs["extra"] = extra
        return msg, kwargs


def configure_logging(
    level: int | str = logging.INFO,
    fmt: str = DEFAULT_LOG_FORMAT,
    levels: Mapping[str, int | str] | None = None,
) -> logging.Handler:
    """
    Install a stream handler with ClientFormatter on the root logger.

    Args:
        level: Root log level
        fmt: Format string passed to ClientFormatter
        levels: Per-logger levels, e.g. {"managed_mqtt_client.core": "DEBUG"}

    Returns:
        The installed handler
    """
    handler = logging.StreamHandler()
    handler.setFormatter(ClientFormatter(fmt))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)
    for name, logger_level in (levels or {}).items():
        logging.getLogger(name).setLevel(logger_level)
    return handler


def configure_logging_from_settings(settings: LoggingSettings) -> Optional[logging.Handler]:
    """
    Apply the ``logging`` settings section.

    A ``config`` mapping goes to logging.config.dictConfig as is and no default
    handler is installed. Otherwise configure_logging() installs one with the
    configured levels; ``format: "detailed"`` adds function and line number.

    Returns:
        The installed handler, or None when dictConfig was used
    """
    if settings.config:
        logging.config.dictConfig(settings.config)
        return None

    fmt = settings.log_format or DEFAULT_LOG_FORMAT
    if fmt.lower() == "detailed":
        fmt = DETAILED_LOG_FORMAT
    return configure_logging(settings.level, fmt, settings.levels)


def generate_unique_id(prefix: str | None = "managed-mqtt") -> str:
    """
    Generate a globally unique identifier with an optional prefix.

    Used for the MQTT client identifier when none is configured.

    Example:
        >>> generate_unique_id("raspi")
        "raspi-a7f3c8d9-1234-5678-9abc-def012345678"
        >>> generate_unique_id(None)
        "a7f3c8d9-1234-5678-9abc-def012345678"
    """
    if prefix is None:
        return str(uuid.uuid4())
    return f"{prefix}-{uuid.uuid4()}"


class ManagedClientBase(ABC):
    """
    Abstract base class for managed MQTT clients.

    Provides shared functionality for both threaded and asyncio implementations:
    - Connection options and client identity
    - Certificate loading and TLS context construction
    - The subscription registry
    - Message validation for publishing

    Subclasses must implement the lifecycle, messaging and subscription operations.
    """

    def __init__(
        self,
        options: ConnectionOptions,
        certificates: Optional[CertificateBundle] = None,
        certificate_settings: Optional[CertificateSettings] = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        base_dir: Optional[Path] = None,
    ):
        """
        Initialize the managed client.

        Args:
            options: Broker connection options
            certificates: Preloaded certificates; takes precedence over certificate_settings
            certificate_settings: ``certificates`` settings section to load from
            logger: Custom logger adapter (creates default if None)
            base_dir: Directory relative certificate paths resolve against

        Certificates are loaded by start(), so configuration errors surface there.
        """
        if not options.client_id:
            options = options.model_copy(update={"client_id": generate_unique_id()})
        self.options = options
        self.identifier = options.client_id

        self.logger = logger or MessageLogger(
            logging.getLogger(__name__),
            extra={"client_id": self.identifier},
            merge_extra=True
        )
        self.registry = SubscriptionRegistry(logger=self.logger)
        self.certificates = certificates
        self._certificate_settings = certificate_settings
        self._base_dir = base_dir

        self.logger.debug(
            f"Initialized managed client for broker {self.options.broker_host}:{self.options.effective_port} "
            f"with identifier '{self.identifier}'"
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> Self:
        """
        Build a client from loaded application settings.

        Example:
            >>> client = ManagedClient.from_settings(load_settings("appsettings.json"))
        """
        return cls(
            ConnectionOptions.from_settings(settings.mqtt),
            certificate_settings=settings.certificates,
            **kwargs,
        )

    def _resolve_certificates(self) -> Optional[CertificateBundle]:
        """
        Load the certificate bundle on first use.

        Returns:
            The bundle, or None for a plain connection

        Raises:
            ConfigurationError: If a secure connection is requested without
                certificates, or the certificate files are invalid
        """
        if not self.options.use_secure_connection:
            if self.options.use_client_certificate:
                self.logger.warning("Client certificate ignored: secure connection is disabled")
            return None
        if self.certificates is None:
            if self._certificate_settings is None:
                self.logger.critical("Secure connection requested without certificate settings")
                raise ConfigurationError("Secure connection requires certificate settings", source="client")
            self.certificates = CertificateBundle.load(self._certificate_settings, self.options, self._base_dir)
        return self.certificates

    def _build_tls_context(self):
        """Build the TLS context, or None for a plain connection."""
        bundle = self._resolve_certificates()
        if bundle is None:
            return None
        return build_tls_context(self.options, bundle, logger=self.logger)

    def _build_message(
        self,
        topic: str,
        payload: Any,
        content_type: str = "",
        retain: bool = False,
        qos: QoS | int = QoS.AT_LEAST_ONCE,
    ) -> Message:
        TopicMatcher.validate_topic(topic)
        try:
            return Message(topic=topic, payload=payload, content_type=content_type or "", retain=retain, qos=qos)
        except ValidationError as e:
            raise InvalidArgumentError(f"Invalid message: {e.errors()[0]['msg']}", topic=topic, source="client") from e

    def _truncate_str(self, input_string: str, output_length: int = 50) -> str:
        if len(input_string) > output_length:
            return input_string[:output_length] + "..."
        return input_string

    # Abstract methods that subclasses must implement

    @abstractmethod
    def start(self):
        """
        Start the connection manager.

        Returns without waiting for the first connection; connecting and
        reconnecting happen in the background until stop() is called.
        """
        pass

    @abstractmethod
    def stop(self):
        """Stop reconnecting and disconnect from the broker."""
        pass

    @abstractmethod
    def publish(
        self,
        topic: str,
        payload: Any,
        content_type: str = "",
        retain: bool = False,
        qos: QoS | int = QoS.AT_LEAST_ONCE,
    ):
        """
        Hand a message to the transport without waiting for delivery.

        Args:
            topic: Concrete topic name
            payload: Message payload (str is UTF-8 encoded)
            content_type: Content type, transmitted with MQTT v5 only
            retain: Whether the broker should retain the message
            qos: Quality of Service level
        """
        pass

    @abstractmethod
    def subscribe(self, pattern: str, handler, qos: QoS | int = QoS.AT_LEAST_ONCE, label: str | None = None):
        """
        Register a handler for a pattern and subscribe at the broker.

        Args:
            pattern: MQTT topic pattern
            handler: Callable invoked with each matching Message
            qos: Quality of Service level
            label: Name of the handler in log records
        """
        pass

    @abstractmethod
    def unsubscribe(self, pattern: str):
        """Remove a pattern's handler and unsubscribe at the broker."""
        pass

    @property
    @abstractmethod
    def state(self) -> ConnectionState:
        """Current connection state."""
        pass

    @property
    def is_connected(self) -> bool:
        """Check if client is currently connected to broker."""
        return self.state is ConnectionState.CONNECTED


__all__ = [
    "ClientFormatter",
    "MessageLogger",
    "configure_logging",
    "configure_logging_from_settings",
    "generate_unique_id",
    "ManagedClientBase",
]
