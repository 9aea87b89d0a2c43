"""
Subscription Registry and Message Dispatch.

This module maps subscription patterns to application handlers and routes every
inbound message to all handlers whose pattern matches the message topic.

Dispatch Rules:
    - Patterns are unique; adding a registered pattern replaces its handler and
      moves it to the end of the dispatch order
    - Handlers run in registration order on the caller's thread
    - A message may match zero, one or many patterns; all matching handlers run
    - A failing handler is logged as a HandlerError and never stops the others

Thread Safety:
    Mutations and snapshots are serialized by an RLock. Dispatch iterates a
    snapshot taken under the lock, so handlers may add or remove subscriptions
    while a message is being dispatched.

Example:
    >>> registry = SubscriptionRegistry()
    >>> registry.add("inputs/+/isPressed", on_button_state, label="on_button_state")
    >>> registry.dispatch(Message(topic="inputs/button1/isPressed", payload="true"))
    1
"""
import logging
import threading
from typing import Any, Callable, Optional

from .exceptions import HandlerError, InvalidArgumentError
from .models import Message, QoS, Subscription
from .topic_matcher import TopicMatcher

logger = logging.getLogger(__name__)

Handler = Callable[[Message], Any]


class SubscriptionRegistry:
    """
    Ordered pattern -> handler mapping with isolated fan-out dispatch.

    Attributes:
        logger: Logger or LoggerAdapter receiving dispatch events
    """

    def __init__(self, logger: logging.Logger | logging.LoggerAdapter | None = None):
        self.logger = logger or logging.getLogger(__name__)
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.RLock()

    def add(
        self,
        pattern: str,
        handler: Handler,
        qos: QoS = QoS.AT_LEAST_ONCE,
        label: Optional[str] = None,
    ) -> Optional[Subscription]:
        """
        Register a handler for a pattern, replacing any existing registration.

        Args:
            pattern: Subscription pattern, may contain '+' and a final '#'
            handler: Callable invoked with each matching Message
            qos: Requested quality of service for the broker subscription
            label: Name used for the handler in log records (defaults to the pattern)

        Returns:
            The replaced Subscription, or None if the pattern was new. The caller
            must unsubscribe the replaced pattern at the broker before subscribing
            the new one.

        Raises:
            InvalidArgumentError: If the pattern is empty or invalid, or the
                handler is missing or not callable
        """
        TopicMatcher.validate_pattern(pattern)
        if handler is None or not callable(handler):
            raise InvalidArgumentError("Handler must be a callable", pattern=pattern, source="registry")

        subscription = Subscription(
            pattern=pattern,
            handler=handler,
            qos=QoS(qos),
            label=label or pattern,
        )

        with self._lock:
            replaced = self._subscriptions.pop(pattern, None)
            self._subscriptions[pattern] = subscription

        if replaced is not None:
            self.logger.debug(
                f"Replaced handler for pattern '{pattern}'",
                extra={"pattern": pattern, "handler": subscription.label},
            )
        else:
            self.logger.debug(
                f"Registered handler for pattern '{pattern}'",
                extra={"pattern": pattern, "handler": subscription.label},
            )
        return replaced

    def remove(self, pattern: str) -> Optional[Subscription]:
        """
        Remove the registration for a pattern.

        Returns:
            The removed Subscription, or None if the pattern was not registered
        """
        with self._lock:
            removed = self._subscriptions.pop(pattern, None)
        if removed is None:
            self.logger.warning(f"No handler registered for pattern '{pattern}'", extra={"pattern": pattern})
        return removed

    def get(self, pattern: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(pattern)

    def snapshot(self) -> list[Subscription]:
        """Return the current subscriptions in registration order."""
        with self._lock:
            return list(self._subscriptions.values())

    def patterns(self) -> list[str]:
        with self._lock:
            return list(self._subscriptions)

    def dispatch(self, message: Message) -> int:
        """
        Invoke every handler whose pattern matches the message topic.

        Handlers run in registration order. Exceptions raised by a handler are
        wrapped in HandlerError, logged with their traceback and swallowed so the
        remaining handlers still run.

        Args:
            message: Inbound message

        Returns:
            Number of handlers whose pattern matched
        """
        matched = 0
        for subscription in self.snapshot():
            if not TopicMatcher.matches(message.topic, subscription.pattern):
                continue
            matched += 1
            self.logger.info(
                f"Received {message.topic} = '{_truncate(message.payload_text())}'. "
                f"Calling handler {subscription.label}",
                extra={"topic": message.topic, "pattern": subscription.pattern, "handler": subscription.label},
            )
            try:
                subscription.handler(message)
            except Exception as e:
                error = HandlerError(
                    f"Handler failed: {e}",
                    label=subscription.label,
                    topic=message.topic,
                    pattern=subscription.pattern,
                )
                self.logger.error(
                    str(error),
                    exc_info=e,
                    extra={"topic": message.topic, "pattern": subscription.pattern, "handler": subscription.label},
                )

        if not matched:
            self.logger.debug(f"No handler matched topic {message.topic}", extra={"topic": message.topic})
        return matched

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def __contains__(self, pattern: object) -> bool:
        with self._lock:
            return pattern in self._subscriptions


def _truncate(text: str, output_length: int = 100) -> str:
    if len(text) > output_length:
        return text[:output_length] + "..."
    return text


__all__ = ["SubscriptionRegistry", "Handler"]
