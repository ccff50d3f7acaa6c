"""Service layer: message queue wrappers, retry processor and pipeline wiring."""

from .kafka import AuditConsumer, KafkaPublisher, Publisher, PublishError
from .task_processor import ProcessResult, TaskRetryProcessor

__all__ = [
    "AuditConsumer",
    "KafkaPublisher",
    "ProcessResult",
    "PublishError",
    "Publisher",
    "TaskRetryProcessor",
]
