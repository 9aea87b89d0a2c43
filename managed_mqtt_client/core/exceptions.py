from typing import Optional, Sequence


class ManagedClientError(Exception):
    """
    Base for all managed-client errors. Carries:
      - detail: human readable description of what went wrong
      - topic: the topic involved, if any
      - pattern: the subscription pattern involved, if any
      - source: the component that reported it (e.g. 'registry', 'tls')
    """
    retryable: bool = False

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        topic: Optional[str] = None,
        pattern: Optional[str] = None,
        source: Optional[str] = None,
    ):
        self.detail = detail
        self.topic = topic
        self.pattern = pattern
        self.source = source

        parts = []
        if topic:
            parts.append(f"topic={topic!r}")
        if pattern:
            parts.append(f"pattern={pattern!r}")
        if source:
            parts.append(f"source={source!r}")

        message = f"{self.__class__.__name__}: {detail}"
        if parts:
            message += " (" + ", ".join(parts) + ")"
        super().__init__(message)

    def __repr__(self):
        return (
            f"{self.__class__.__name__}("
            f"detail={self.detail!r}, "
            f"topic={self.topic!r}, "
            f"pattern={self.pattern!r}, "
            f"source={self.source!r}"
            f")"
        )


class ConfigurationError(ManagedClientError):
    """Missing or invalid settings or certificate files. Fatal at startup."""


class BrokerConnectionError(ManagedClientError, ConnectionError):
    """
    Transport or authentication failure. Retried by the connection manager.

    Derives from ConnectionError so paho-mqtt and aiomqtt handle it like any
    other socket failure.
    """

    retryable = True


class CertificateValidationError(BrokerConnectionError):
    """The broker's certificate failed chain or fingerprint validation."""

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        subject: Optional[str] = None,
        reasons: Sequence[str] = (),
        source: Optional[str] = "tls",
    ):
        self.subject = subject
        self.reasons = list(reasons)
        super().__init__(detail, source=source)


class InvalidArgumentError(ManagedClientError, ValueError):
    """Empty or malformed argument passed to subscribe or publish."""


class HandlerError(ManagedClientError):
    """An application handler raised while a message was being dispatched."""

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        label: Optional[str] = None,
        topic: Optional[str] = None,
        pattern: Optional[str] = None,
    ):
        self.label = label
        super().__init__(detail, topic=topic, pattern=pattern, source=label)


__all__ = [
    "ManagedClientError",
    "ConfigurationError",
    "BrokerConnectionError",
    "CertificateValidationError",
    "InvalidArgumentError",
    "HandlerError",
]
