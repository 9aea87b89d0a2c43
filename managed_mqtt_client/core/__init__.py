"""
Shared core of the managed MQTT client: models, topic matching, dispatch,
certificate validation, TLS and configuration.
"""
from .base import (
    ClientFormatter,
    ManagedClientBase,
    MessageLogger,
    configure_logging,
    configure_logging_from_settings,
    generate_unique_id,
)
from .certificates import (
    CertificateBundle,
    CertificateValidator,
    compute_fingerprint,
    validate_server_certificate,
)
from .config import CertificateSettings, LoggingSettings, MqttSettings, OutputSettings, Settings, load_settings
from .exceptions import (
    BrokerConnectionError,
    CertificateValidationError,
    ConfigurationError,
    HandlerError,
    InvalidArgumentError,
    ManagedClientError,
)
from .models import ConnectionOptions, ConnectionState, Message, ProtocolVersion, QoS, Subscription
from .subscription_registry import SubscriptionRegistry
from .tls import build_tls_context
from .topic_matcher import TopicMatcher

__all__ = [
    "ClientFormatter",
    "ManagedClientBase",
    "MessageLogger",
    "configure_logging",
    "configure_logging_from_settings",
    "generate_unique_id",
    "CertificateBundle",
    "CertificateValidator",
    "compute_fingerprint",
    "validate_server_certificate",
    "CertificateSettings",
    "MqttSettings",
    "OutputSettings",
    "LoggingSettings",
    "Settings",
    "load_settings",
    "BrokerConnectionError",
    "CertificateValidationError",
    "ConfigurationError",
    "HandlerError",
    "InvalidArgumentError",
    "ManagedClientError",
    "ConnectionOptions",
    "ConnectionState",
    "Message",
    "ProtocolVersion",
    "QoS",
    "Subscription",
    "SubscriptionRegistry",
    "build_tls_context",
    "TopicMatcher",
]
