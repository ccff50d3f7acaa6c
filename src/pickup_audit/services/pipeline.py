"""Construction of the audit pipeline from settings."""

from __future__ import annotations

from datetime import timedelta

from pickup_audit.audit.dispatcher import BatchingDispatcher, SinkConfig
from pickup_audit.audit.sinks import DatabaseSink, StdoutSink
from pickup_audit.core.settings import Settings
from pickup_audit.repositories.task_repo import TaskRepository
from pickup_audit.services.kafka import KafkaPublisher, Publisher
from pickup_audit.services.task_processor import TaskRetryProcessor


def build_sink_configs(config: Settings, repository: TaskRepository) -> list[SinkConfig]:
    """Return the ordered sink list enabled in ``config``."""
    configs: list[SinkConfig] = []
    if config.audit_stdout_enabled:
        configs.append(
            SinkConfig(
                sink=StdoutSink(filter=config.audit_stdout_filter),
                batch_size=config.audit_batch_size,
                timeout=config.audit_flush_timeout_seconds,
                queue_size=config.audit_queue_size,
                name="stdout",
            )
        )
    if config.audit_db_enabled:
        configs.append(
            SinkConfig(
                sink=DatabaseSink(repository),
                batch_size=config.audit_batch_size,
                timeout=config.audit_flush_timeout_seconds,
                queue_size=config.audit_queue_size,
                name="database",
            )
        )
    return configs


def build_dispatcher(config: Settings, repository: TaskRepository) -> BatchingDispatcher:
    return BatchingDispatcher(build_sink_configs(config, repository))


def build_processor(
    config: Settings,
    repository: TaskRepository,
    publisher: Publisher | None = None,
) -> TaskRetryProcessor:
    """Build the retry processor, creating a Kafka publisher unless one is given."""
    if publisher is None:
        publisher = KafkaPublisher(
            config.kafka_broker_list, timeout=config.kafka_publish_timeout_seconds
        )
    return TaskRetryProcessor(
        repository,
        publisher,
        topic=config.kafka_topic,
        poll_interval=config.task_poll_interval_seconds,
        limit=config.task_batch_limit,
        max_attempts=config.task_max_attempts,
        retry_delay=timedelta(seconds=config.task_retry_delay_seconds),
        claim=config.task_claim_locking,
        stale_after=timedelta(seconds=config.task_stale_after_seconds),
    )

