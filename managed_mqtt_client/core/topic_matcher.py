"""
MQTT Topic Matching.

This module provides the TopicMatcher class that decides whether a concrete topic
name matches a subscription pattern, and validates patterns and topic names
before they are handed to the broker.

Matching rules (MQTT 3.1.1 section 4.7):
    - Topics and patterns are '/'-delimited level sequences
    - '+' matches exactly one level, including an empty one
    - '#' matches the remaining levels (zero or more) and is only valid as the
      final level, so "inputs/#" also matches "inputs"
    - Every other level must be equal, case-sensitively; empty levels are
      compared literally
    - Patterns starting with a wildcard do not match topics starting with '$'

Example:
    >>> TopicMatcher.matches("inputs/button1/isPressed", "inputs/+/isPressed")
    True
    >>> TopicMatcher.matches("inputs/button1/lastChangedAt", "inputs/+/isPressed")
    False
    >>> TopicMatcher.matches("inputs", "inputs/#")
    True
"""
import logging

from .exceptions import InvalidArgumentError

logger = logging.getLogger(__name__)

LEVEL_SEPARATOR = "/"
SINGLE_LEVEL_WILDCARD = "+"
MULTI_LEVEL_WILDCARD = "#"
MAX_TOPIC_BYTES = 65535


class TopicMatcher:
    """
    Stateless topic/pattern matcher and validator.

    All methods are static; the class only groups the topic rules in one place.
    """

    @staticmethod
    def matches(topic: str, pattern: str) -> bool:
        """
        Check whether a topic name matches a subscription pattern.

        The comparison is a single pass over the pattern levels and is anchored
        to the whole topic. A pattern with '#' anywhere but the last level never
        matches.

        Args:
            topic: Concrete topic, e.g. "inputs/button1/isPressed"
            pattern: Subscription pattern, e.g. "inputs/+/isPressed" or "inputs/#"

        Returns:
            True if the pattern matches the topic
        """
        topic_levels = topic.split(LEVEL_SEPARATOR)
        pattern_levels = pattern.split(LEVEL_SEPARATOR)
        last_index = len(pattern_levels) - 1

        if topic.startswith("$") and pattern_levels[0] in (SINGLE_LEVEL_WILDCARD, MULTI_LEVEL_WILDCARD):
            return False

        for index, level in enumerate(pattern_levels):
            if level == MULTI_LEVEL_WILDCARD:
                return index == last_index
            if index >= len(topic_levels):
                return False
            if level == SINGLE_LEVEL_WILDCARD:
                continue
            if level != topic_levels[index]:
                return False

        return len(topic_levels) == len(pattern_levels)

    @staticmethod
    def validate_pattern(pattern: str) -> str:
        """
        Validate a subscription pattern.

        Args:
            pattern: Subscription pattern to check

        Returns:
            The unchanged pattern

        Raises:
            InvalidArgumentError: If the pattern is empty, too long, uses '#'
                before the last level, or mixes a wildcard into a level
        """
        if not isinstance(pattern, str) or not pattern:
            raise InvalidArgumentError("Subscription pattern must be a non-empty string", source="topic")
        if len(pattern.encode("utf-8")) > MAX_TOPIC_BYTES:
            raise InvalidArgumentError("Subscription pattern exceeds 65535 bytes", source="topic")

        levels = pattern.split(LEVEL_SEPARATOR)
        for index, level in enumerate(levels):
            if MULTI_LEVEL_WILDCARD in level:
                if level != MULTI_LEVEL_WILDCARD:
                    raise InvalidArgumentError(
                        "'#' must occupy an entire level", pattern=pattern, source="topic"
                    )
                if index != len(levels) - 1:
                    raise InvalidArgumentError(
                        "'#' is only valid as the final level", pattern=pattern, source="topic"
                    )
            if SINGLE_LEVEL_WILDCARD in level and level != SINGLE_LEVEL_WILDCARD:
                raise InvalidArgumentError(
                    "'+' must occupy an entire level", pattern=pattern, source="topic"
                )
        return pattern

    @staticmethod
    def validate_topic(topic: str) -> str:
        """
        Validate a topic name used for publishing.

        Raises:
            InvalidArgumentError: If the topic is empty, too long or contains wildcards
        """
        if not isinstance(topic, str) or not topic:
            raise InvalidArgumentError("Topic must be a non-empty string", source="topic")
        if len(topic.encode("utf-8")) > MAX_TOPIC_BYTES:
            raise InvalidArgumentError("Topic exceeds 65535 bytes", topic=topic[:50], source="topic")
        if SINGLE_LEVEL_WILDCARD in topic or MULTI_LEVEL_WILDCARD in topic:
            raise InvalidArgumentError(
                "Wildcards are not allowed in published topic names", topic=topic, source="topic"
            )
        return topic

    @staticmethod
    def is_valid_pattern(pattern: str) -> bool:
        """Return True if ``validate_pattern`` would accept the pattern."""
        try:
            TopicMatcher.validate_pattern(pattern)
        except InvalidArgumentError as e:
            logger.debug(f"Rejected subscription pattern: {e}")
            return False
        return True


__all__ = [
    "TopicMatcher",
    "LEVEL_SEPARATOR",
    "SINGLE_LEVEL_WILDCARD",
    "MULTI_LEVEL_WILDCARD",
]
