"""Batching dispatcher for audit records.

The dispatcher decouples request handlers from sink latency. Every configured
sink gets its own bounded queue and worker task; a worker accumulates records
into a batch and hands the batch to its sink when either

- the batch reaches ``batch_size`` records, or
- ``timeout`` seconds have passed since the last flush (or worker startup),

whichever comes first. Sinks run in a worker thread so blocking I/O (printing,
database inserts) never stalls the event loop, and a failing sink never
affects the others.

Producers call :meth:`BatchingDispatcher.log` from any thread. The call never
blocks and never raises: when a sink queue is full the record is dropped for
that sink and a warning is logged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from pickup_audit.audit.sinks import AuditSink
from pickup_audit.schemas.audit import AuditRecord

logger = logging.getLogger(__name__)

# Queue marker telling a worker to flush and exit.
_STOP = object()


@dataclass(frozen=True)
class SinkConfig:
    """Batching parameters for one sink."""

    sink: AuditSink
    batch_size: int = 10
    timeout: float = 1.0
    queue_size: int = 100
    name: str | None = None

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.queue_size < 1:
            raise ValueError("queue_size must be at least 1")

    @property
    def label(self) -> str:
        return self.name or type(self.sink).__name__


class _SinkWorker:
    """Queue, batch and flush loop for a single sink."""

    def __init__(self, config: SinkConfig) -> None:
        self.config = config
        self.queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=config.queue_size)
        self.task: asyncio.Task[None] | None = None
        self.dropped = 0
        self.flushed_batches = 0
        self.failed_batches = 0

    @property
    def name(self) -> str:
        return self.config.label

    def offer(self, record: AuditRecord) -> bool:
        try:
            self.queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Audit queue for sink %s is full (%d), dropping record for order %r",
                self.name,
                self.config.queue_size,
                record.order_id,
            )
            return False
        return True

    def drain(self) -> list[AuditRecord]:
        records: list[AuditRecord] = []
        while True:
            try:
                item = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                return records
            if item is not _STOP:
                records.append(item)

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        timeout = self.config.timeout
        batch: list[AuditRecord] = []
        deadline = loop.time() + timeout
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    # Timer fired: flush whatever we have, then re-arm.
                    if batch:
                        pending, batch = batch, []
                        await self._flush(pending)
                    deadline = loop.time() + timeout
                    continue

                try:
                    item = await asyncio.wait_for(self.queue.get(), timeout=remaining)
                except TimeoutError:
                    continue

                if item is _STOP:
                    break

                batch.append(item)
                if len(batch) >= self.config.batch_size:
                    pending, batch = batch, []
                    await self._flush(pending)
                    deadline = loop.time() + timeout
        except asyncio.CancelledError:
            batch.extend(self.drain())
            if batch:
                await self._flush(batch)
            raise

        # Records that raced in behind the stop marker still belong to this shutdown.
        batch.extend(self.drain())
        if batch:
            await self._flush(batch)

    async def _flush(self, batch: list[AuditRecord]) -> None:
        try:
            await asyncio.to_thread(self.config.sink.process, tuple(batch))
        except Exception:
            self.failed_batches += 1
            logger.exception(
                "Audit sink %s failed to process a batch of %d records", self.name, len(batch)
            )
        else:
            self.flushed_batches += 1
            logger.debug("Audit sink %s flushed %d records", self.name, len(batch))


class BatchingDispatcher:
    """Fan audit records out to batching sink workers.

    Construct one instance at startup and pass it to every component that
    emits audit records.
    """

    def __init__(self, configs: Iterable[SinkConfig]) -> None:
        self._workers = [_SinkWorker(config) for config in configs]
        self._loop: asyncio.AbstractEventLoop | None = None
        self._started = False
        self._closed = False
        self.rejected = 0

    @property
    def sink_names(self) -> list[str]:
        return [worker.name for worker in self._workers]

    @property
    def dropped(self) -> int:
        """Records dropped because a sink queue was full."""
        return sum(worker.dropped for worker in self._workers)

    @property
    def running(self) -> bool:
        return self._started and not self._closed

    def stats(self) -> dict[str, dict[str, int]]:
        """Return per-sink queue and flush counters."""
        return {
            worker.name: {
                "queued": worker.queue.qsize(),
                "dropped": worker.dropped,
                "flushed_batches": worker.flushed_batches,
                "failed_batches": worker.failed_batches,
            }
            for worker in self._workers
        }

    async def start(self) -> None:
        """Launch one worker task per sink on the running event loop."""
        if self._closed:
            raise RuntimeError("audit dispatcher has been shut down")
        if self._started:
            return

        self._loop = asyncio.get_running_loop()
        for worker in self._workers:
            worker.task = asyncio.create_task(worker.run(), name=f"audit-sink-{worker.name}")
        self._started = True
        logger.info("Audit dispatcher started with sinks: %s", ", ".join(self.sink_names))

    def log(self, record: AuditRecord) -> None:
        """Enqueue ``record`` for every sink without blocking the caller."""
        if self._closed:
            self.rejected += 1
            logger.warning(
                "Audit dispatcher is shut down, dropping record for order %r", record.order_id
            )
            return

        loop = self._loop
        if loop is None or _running_loop() is loop:
            self._enqueue(record)
            return

        try:
            loop.call_soon_threadsafe(self._enqueue, record)
        except RuntimeError:
            self.rejected += 1
            logger.warning("Audit event loop is closed, dropping record for order %r", record.order_id)

    def _enqueue(self, record: AuditRecord) -> None:
        # Handoffs from other threads can land after a worker already exited.
        live = [w for w in self._workers if w.task is None or not w.task.done()]
        if len(live) < len(self._workers):
            self.rejected += 1
            logger.warning(
                "Audit record for order %r arrived after shutdown, not delivered to all sinks",
                record.order_id,
            )
        for worker in live:
            worker.offer(record)

    async def shutdown(self) -> None:
        """Stop accepting records, flush partial batches and wait for workers.

        Calling it more than once is harmless.
        """
        if self._closed:
            await self._wait_workers()
            return

        if not self._started:
            # Records logged before start are still waiting in the queues.
            await self.start()
        self._closed = True

        # Let enqueues already handed over from other threads land first.
        await asyncio.sleep(0)
        for worker in self._workers:
            if worker.task is not None and not worker.task.done():
                await worker.queue.put(_STOP)
        await self._wait_workers()
        logger.info("Audit dispatcher stopped (dropped=%d)", self.dropped)

    async def _wait_workers(self) -> None:
        tasks = [worker.task for worker in self._workers if worker.task is not None]
        if not tasks:
            return
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for worker, result in zip(self._workers, results):
            if isinstance(result, BaseException) and not isinstance(
                result, asyncio.CancelledError
            ):
                logger.error("Audit sink worker %s crashed: %r", worker.name, result)

    async def __aenter__(self) -> BatchingDispatcher:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
