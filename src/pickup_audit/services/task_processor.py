"""Background delivery of outbox tasks to the message queue.

This module provides the TaskRetryProcessor class that periodically polls the
task outbox, publishes due payloads and reschedules failed deliveries with a
bounded attempt budget and a fixed retry delay.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from pickup_audit.db.time import utcnow
from pickup_audit.models.task import Task, TaskStatus
from pickup_audit.repositories.task_repo import OutboxError, TaskRepository
from pickup_audit.services.kafka import Publisher

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = timedelta(seconds=2)

# Configure logger for this module
logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome counters of one poll cycle."""

    published: int = 0
    failed: int = 0
    abandoned: int = 0

    @property
    def handled(self) -> int:
        return self.published + self.failed + self.abandoned


class TaskRetryProcessor:
    """Polls the outbox and publishes due tasks.

    Task lifecycle as driven by this processor:

    - CREATED/FAILED -> PROCESSING when picked up by a poll
    - PROCESSING -> deleted when the publish succeeds
    - PROCESSING -> FAILED when the publish fails and attempts remain
    - PROCESSING -> NO_ATTEMPTS_LEFT when the attempt budget is spent; such
      rows are never polled again and are left for an operator
    """

    def __init__(
        self,
        repository: TaskRepository,
        publisher: Publisher,
        topic: str,
        poll_interval: float = 1.0,
        limit: int = 10,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: timedelta = DEFAULT_RETRY_DELAY,
        claim: bool = False,
        stale_after: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the processor.

        Args:
            repository: Task outbox.
            publisher: Message-queue publisher.
            topic: Destination topic for every payload.
            poll_interval: Seconds between poll cycles.
            limit: Maximum tasks handled per cycle.
            max_attempts: Publish attempts before a task is abandoned.
            retry_delay: Fixed delay before a failed task becomes due again.
            claim: Lock and claim rows in one transaction instead of a plain
                select followed by a status update.
            stale_after: Age after which PROCESSING rows left by a crashed
                process are released on start and again every ``stale_after``
                while the loop runs. ``None`` disables the sweep.
            clock: Source of the current UTC time.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.repository = repository
        self.publisher = publisher
        self.topic = topic
        self.poll_interval = poll_interval
        self.limit = limit
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.claim = claim
        self.stale_after = stale_after
        self._clock = clock
        self._next_sweep: datetime | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background polling loop."""
        if self.running:
            return

        await self._release_stale()

        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="task-retry-processor")

    async def stop(self) -> None:
        """Stop the loop after the publish in flight, if any, completes."""
        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        interval = max(0.01, float(self.poll_interval))

        while not self._stopping.is_set():
            if self._next_sweep is not None and self._clock() >= self._next_sweep:
                await self._release_stale()

            try:
                await self.process_pending_tasks()
            except Exception:
                logger.exception("Task retry processor cycle failed")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except TimeoutError:
                continue

    async def process_pending_tasks(self) -> ProcessResult:
        """Run one poll cycle and return what happened to the picked tasks."""
        result = ProcessResult()
        now = self._clock()
        try:
            if self.claim:
                tasks = await asyncio.to_thread(
                    self.repository.claim_pending_tasks, self.limit, self.max_attempts, now
                )
            else:
                tasks = await asyncio.to_thread(
                    self.repository.get_pending_tasks, self.limit, self.max_attempts, now
                )
        except OutboxError as e:
            logger.error("Error fetching pending tasks: %s", e)
            return result

        logger.debug("Found %d pending tasks", len(tasks))
        for index, task in enumerate(tasks):
            if self._stopping.is_set():
                if self.claim:
                    await self._release_claimed(tasks[index:])
                break
            await self._process_task(task, result)
        return result

    async def _release_stale(self) -> None:
        """Return rows stuck in PROCESSING longer than ``stale_after`` to the poller."""
        if self.stale_after is None:
            return
        now = self._clock()
        self._next_sweep = now + self.stale_after
        try:
            await asyncio.to_thread(
                self.repository.release_stale_processing, now - self.stale_after
            )
        except OutboxError as e:
            logger.warning("Could not release stale tasks: %s", e)

    async def _release_claimed(self, tasks: list[Task]) -> None:
        try:
            released = await asyncio.to_thread(
                self.repository.release_tasks, [task.id for task in tasks]
            )
        except OutboxError as e:
            logger.error("Error releasing %d claimed tasks on stop: %s", len(tasks), e)
            return
        logger.info("Released %d claimed tasks on stop", released)

    async def _process_task(self, task: Task, result: ProcessResult) -> None:
        if not self.claim:
            try:
                await asyncio.to_thread(self.repository.mark_task_processing, task.id)
            except OutboxError as e:
                logger.error("Error marking task %d as PROCESSING: %s", task.id, e)
                return

        try:
            await asyncio.to_thread(self.publisher.publish, self.topic, task.audit_data)
        except Exception as e:
            status = await self._record_failure(task, e)
            if status is TaskStatus.NO_ATTEMPTS_LEFT:
                result.abandoned += 1
            else:
                result.failed += 1
            return

        logger.info("Task %d processed and published to %s", task.id, self.topic)
        result.published += 1
        try:
            await asyncio.to_thread(self.repository.delete_task, task.id)
        except OutboxError as e:
            logger.error("Error deleting task %d after successful publish: %s", task.id, e)

    async def _record_failure(self, task: Task, error: Exception) -> TaskStatus:
        attempt_count = task.attempt_count + 1
        if attempt_count >= self.max_attempts:
            status = TaskStatus.NO_ATTEMPTS_LEFT
        else:
            status = TaskStatus.FAILED
        next_attempt_at = self._clock() + self.retry_delay

        logger.warning(
            "Failed to publish task %d (attempt %d/%d): %s",
            task.id,
            attempt_count,
            self.max_attempts,
            error,
        )
        try:
            await asyncio.to_thread(
                self.repository.update_task_failure,
                task.id,
                attempt_count,
                status,
                next_attempt_at,
            )
        except OutboxError as e:
            logger.error("Error updating task %d on failure: %s", task.id, e)
        if status is TaskStatus.NO_ATTEMPTS_LEFT:
            logger.error("Task %d abandoned after %d attempts", task.id, attempt_count)
        return status
