"""Kafka producer and consumer wrappers for audit delivery.

The producer side publishes outbox payloads for the retry processor; the
consumer side only logs what it receives.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from typing import Any, Protocol

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer

logger = logging.getLogger(__name__)

DEFAULT_PUBLISH_TIMEOUT_SECONDS = 5.0


class PublishError(RuntimeError):
    """Raised when a payload could not be delivered to the broker."""


class Publisher(Protocol):
    """Message-queue publish capability used by the retry processor."""

    def publish(self, topic: str, payload: bytes) -> None:
        ...


class KafkaPublisher:
    """Synchronous Kafka publisher.

    Each :meth:`publish` call produces one message and waits for its delivery
    report, so a successful return means the broker acknowledged the write.
    """

    def __init__(
        self,
        brokers: Sequence[str],
        timeout: float = DEFAULT_PUBLISH_TIMEOUT_SECONDS,
        producer: Any | None = None,
    ) -> None:
        """Initialize the publisher.

        Args:
            brokers: Bootstrap broker addresses.
            timeout: Seconds to wait for a delivery report.
            producer: Optional pre-built producer, mainly for tests.
        """
        self.timeout = timeout
        self._producer = producer or Producer(
            {
                "bootstrap.servers": ",".join(brokers),
                "acks": "all",
                "message.timeout.ms": int(timeout * 1000),
            }
        )

    def publish(self, topic: str, payload: bytes) -> None:
        """Publish ``payload`` to ``topic``.

        Raises:
            PublishError: If the message was rejected, timed out or could not
                be queued locally.
        """
        outcome: dict[str, Any] = {}

        def _on_delivery(err: KafkaError | None, msg: Any) -> None:
            outcome["error"] = err
            outcome["message"] = msg

        try:
            self._producer.produce(topic, value=payload, on_delivery=_on_delivery)
        except (KafkaException, BufferError) as exc:
            logger.warning("Failed to send message to topic %s: %s", topic, exc)
            raise PublishError(f"failed to enqueue message for {topic}: {exc}") from exc

        remaining = self._producer.flush(self.timeout)
        if remaining or "error" not in outcome:
            logger.warning("Timed out publishing to topic %s after %.1fs", topic, self.timeout)
            raise PublishError(f"delivery to {topic} timed out")

        err = outcome["error"]
        if err is not None:
            logger.warning("Failed to send message to topic %s: %s", topic, err)
            raise PublishError(f"delivery to {topic} failed: {err}")

        msg = outcome["message"]
        logger.info(
            "Message stored in topic(%s)/partition(%d)/offset(%d)",
            msg.topic(),
            msg.partition(),
            msg.offset(),
        )

    def close(self) -> None:
        """Flush outstanding messages."""
        remaining = self._producer.flush(self.timeout)
        if remaining:
            logger.warning("%d Kafka messages were not delivered before close", remaining)


class AuditConsumer:
    """Consumer-group member that logs every audit message it receives."""

    def __init__(
        self,
        brokers: Sequence[str],
        group_id: str,
        topics: Sequence[str],
        consumer: Any | None = None,
    ) -> None:
        self.topics = list(topics)
        self._consumer = consumer or Consumer(
            {
                "bootstrap.servers": ",".join(brokers),
                "group.id": group_id,
                "auto.offset.reset": "latest",
                "enable.auto.commit": True,
            }
        )

    def handle(self, msg: Any) -> None:
        value = msg.value()
        text = value.decode("utf-8", errors="replace") if value is not None else ""
        logger.info(
            "Consumed message: topic=%s partition=%d offset=%d value=%s",
            msg.topic(),
            msg.partition(),
            msg.offset(),
            text,
        )

    def run(self, stop_event: threading.Event, poll_timeout: float = 1.0) -> int:
        """Poll until ``stop_event`` is set and return the number of messages handled."""
        handled = 0
        self._consumer.subscribe(self.topics)
        logger.info("Audit consumer subscribed to %s", ", ".join(self.topics))
        try:
            while not stop_event.is_set():
                msg = self._consumer.poll(poll_timeout)
                if msg is None:
                    continue
                err = msg.error()
                if err is not None:
                    if err.code() == KafkaError._PARTITION_EOF:
                        continue
                    logger.error("Error from consumer: %s", err)
                    continue
                self.handle(msg)
                handled += 1
        finally:
            self._consumer.close()
            logger.info("Audit consumer closed after %d messages", handled)
        return handled
