"""
MQTT topic names and filters.

Publish topics never contain wildcards. Filters may use "+" for exactly one
level and "#" as the final level to match the remainder.
"""

from __future__ import annotations

DEMO_FILTER = "sample/+"
DEMO_TOPIC = "sample/topic1"
DEMO_PAYLOAD = "hello world"
DEMO_QOS = 1

_MAX_TOPIC_BYTES = 65535


class TopicError(ValueError):
    """Raised when a topic name or filter is malformed."""


def _check_common(value: str, what: str) -> None:
    if not isinstance(value, str) or not value:
        raise TopicError(f"{what} must be a non-empty string")
    if "\x00" in value:
        raise TopicError(f"{what} '{value!r}' contains NUL")
    if len(value.encode("utf-8")) > _MAX_TOPIC_BYTES:
        raise TopicError(f"{what} exceeds {_MAX_TOPIC_BYTES} bytes")


def validate_topic(topic: str) -> str:
    _check_common(topic, "topic")
    if "+" in topic or "#" in topic:
        raise TopicError(f"topic '{topic}' must not contain wildcards")
    return topic


def validate_filter(topic_filter: str) -> str:
    _check_common(topic_filter, "topic filter")
    levels = topic_filter.split("/")
    for i, level in enumerate(levels):
        if "#" in level and (level != "#" or i != len(levels) - 1):
            raise TopicError(
                f"topic filter '{topic_filter}': '#' must be the whole last level"
            )
        if "+" in level and level != "+":
            raise TopicError(
                f"topic filter '{topic_filter}': '+' must occupy a whole level"
            )
    return topic_filter


def validate_qos(qos: int) -> int:
    if qos not in (0, 1, 2):
        raise TopicError(f"qos must be 0, 1 or 2, got {qos!r}")
    return qos


def topic_matches(topic_filter: str, topic: str) -> bool:
    """Return True if topic is matched by topic_filter."""
    f_levels = topic_filter.split("/")
    t_levels = topic.split("/")

    # wildcards at the first level never match $SYS-style topics
    if topic.startswith("$") and f_levels[0] in ("+", "#"):
        return False

    for i, f in enumerate(f_levels):
        if f == "#":
            return True
        if i >= len(t_levels):
            return False
        if f != "+" and f != t_levels[i]:
            return False
    return len(f_levels) == len(t_levels)
