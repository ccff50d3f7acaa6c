"""Run the log-only Kafka consumer for delivered audit tasks."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from confluent_kafka import KafkaException

from pickup_audit.core.logging import configure_logging
from pickup_audit.core.settings import settings
from pickup_audit.services.kafka import AuditConsumer

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Consume and log audit messages from Kafka")
    parser.add_argument(
        "--brokers",
        default=settings.kafka_brokers,
        help="Comma-separated bootstrap brokers (defaults to KAFKA_BROKERS)",
    )
    parser.add_argument(
        "--group-id",
        default=settings.kafka_group_id,
        help="Consumer group id (defaults to KAFKA_GROUP_ID)",
    )
    parser.add_argument(
        "--topic",
        action="append",
        dest="topics",
        default=None,
        help="Topic to subscribe to; repeatable (defaults to KAFKA_TOPIC)",
    )
    parser.add_argument(
        "--poll-timeout",
        type=float,
        default=1.0,
        help="Seconds to block in each poll",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level)

    brokers = [broker.strip() for broker in args.brokers.split(",") if broker.strip()]
    topics = args.topics or [settings.kafka_topic]
    stop_event = threading.Event()

    def _request_stop(signum: int, _frame: object) -> None:
        logger.info("Received signal %d, stopping consumer", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    try:
        consumer = AuditConsumer(brokers, args.group_id, topics)
        consumer.run(stop_event, poll_timeout=args.poll_timeout)
    except KafkaException as exc:
        logger.error("Kafka consumer failed: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
