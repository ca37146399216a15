"""Lightweight event bus for publishing attempt lifecycle events.

Downstream collaborators (notifications, gamification) consume these topics.
When `KAFKA_BOOTSTRAP` is configured the payloads go to Kafka through
`confluent_kafka.Producer` (installed with the `kafka` extra); otherwise the
event is only logged so dev/test runs need no broker.
"""

from __future__ import annotations

from typing import Any, Optional
import json, logging

log = logging.getLogger(__name__)


class EventBus:
    """Thin Kafka publisher that logs every event it emits."""

    def __init__(self, bootstrap: Optional[str] = None, topic_prefix: str = "assessment") -> None:
        """Create the producer when a bootstrap address is given.

        Args:
            bootstrap: Kafka bootstrap servers, or None for log-only mode.
            topic_prefix: Prefix joined to every topic name with a dot.
        """
        self.topic_prefix = topic_prefix
        self._producer = None
        if bootstrap:
            from confluent_kafka import Producer

            self._producer = Producer({"bootstrap.servers": bootstrap})

    def topic(self, name: str) -> str:
        return f"{self.topic_prefix}.{name}" if self.topic_prefix else name

    def publish(self, topic: str, key: str, value: dict[str, Any]) -> None:
        """Publish a message to Kafka (when configured) and log it.

        Args:
            topic: Topic name without the prefix, e.g. "attempt.graded".
            key: Message key (used for partitioning).
            value: JSON-serializable payload dictionary.
        """
        full_topic = self.topic(topic)
        payload = json.dumps(value, default=str).encode("utf-8")
        if self._producer is not None:
            self._producer.produce(full_topic, key=key, value=payload)
            self._producer.flush()
        log.info(f"PUBLISH topic={full_topic} key={key}", extra={"ctx": value})
