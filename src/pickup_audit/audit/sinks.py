"""Audit sinks: pluggable consumers of audit record batches."""

from __future__ import annotations

import logging
import sys
from collections.abc import Sequence
from typing import Protocol, TextIO, runtime_checkable

from pickup_audit.repositories.task_repo import TaskRepository
from pickup_audit.schemas.audit import AuditRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class AuditSink(Protocol):
    """Consumer of audit batches.

    ``process`` is called from a worker thread with the records of one batch
    in enqueue order. Raising marks the whole batch as unflushed for this sink;
    the dispatcher logs the error and moves on.
    """

    def process(self, batch: Sequence[AuditRecord]) -> None:
        ...


class StdoutSink:
    """Print audit records whose message matches an optional filter."""

    def __init__(self, filter: str = "", stream: TextIO | None = None) -> None:  # noqa: A002
        self.filter = filter
        self._needle = filter.lower()
        self._stream = stream

    def matches(self, record: AuditRecord) -> bool:
        """Return True if ``record`` passes the case-insensitive message filter."""
        return not self._needle or self._needle in record.message.lower()

    @staticmethod
    def format_record(record: AuditRecord) -> str:
        return (
            f"STDOUT: {record.timestamp.isoformat(timespec='seconds')} | "
            f"Order: {record.order_id} | {record.old_state} -> {record.new_state} | "
            f"Msg: {record.message}"
        )

    def process(self, batch: Sequence[AuditRecord]) -> None:
        stream = self._stream or sys.stdout
        lines = [self.format_record(record) for record in batch if self.matches(record)]
        if lines:
            stream.write("\n".join(lines) + "\n")
            stream.flush()


class DatabaseSink:
    """Persist each audit record as one outbox task.

    The whole batch is written with a single multi-row INSERT; any storage
    failure propagates as :class:`~pickup_audit.repositories.OutboxError`.
    """

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def process(self, batch: Sequence[AuditRecord]) -> None:
        if not batch:
            return
        self.repository.create_tasks([record.to_payload() for record in batch])
        logger.debug("Stored %d audit records in the task outbox", len(batch))
