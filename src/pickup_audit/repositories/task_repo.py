"""Data access helpers for the audit task outbox."""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime

from sqlalchemy import case, delete, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pickup_audit.db.time import utcnow
from pickup_audit.models.task import POLLABLE_STATUSES, Task, TaskStatus

__all__ = ["OutboxError", "TaskRepository"]

logger = logging.getLogger(__name__)


class OutboxError(RuntimeError):
    """Raised when a statement against the task outbox fails."""


class TaskRepository:
    """Durable staging area for audit payloads awaiting queue delivery.

    Every operation runs in its own short-lived session and commits before
    returning, so the repository can be shared by the dispatcher worker
    threads and the retry processor. Atomicity is per statement; no
    application-level locking is layered on top.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize the repository with a SQLAlchemy session factory."""
        self._session_factory = session_factory

    def create_task(self, payload: bytes, now: datetime | None = None) -> int:
        """Insert one CREATED task and return its identifier.

        Raises:
            OutboxError: If the insert cannot complete.
        """
        now = now or utcnow()
        task = Task(
            created_at=now,
            updated_at=now,
            audit_data=payload,
            status=TaskStatus.CREATED.value,
            attempt_count=0,
        )
        try:
            with self._session_factory() as db:
                db.add(task)
                db.commit()
                return task.id
        except SQLAlchemyError as exc:
            raise OutboxError(f"failed to create task: {exc}") from exc

    def create_tasks(self, payloads: Sequence[bytes], now: datetime | None = None) -> None:
        """Insert one CREATED task per payload using a single multi-row INSERT.

        Raises:
            OutboxError: If the insert cannot complete; no row is written then.
        """
        if not payloads:
            return
        now = now or utcnow()
        rows = [
            {
                "created_at": now,
                "updated_at": now,
                "audit_data": payload,
                "status": TaskStatus.CREATED.value,
                "attempt_count": 0,
            }
            for payload in payloads
        ]
        try:
            with self._session_factory() as db:
                db.execute(insert(Task).values(rows))
                db.commit()
        except SQLAlchemyError as exc:
            raise OutboxError(f"failed to create {len(rows)} tasks: {exc}") from exc

    @staticmethod
    def _pending_query(limit: int, max_attempts: int, now: datetime):
        return (
            select(Task)
            .where(
                Task.status.in_(POLLABLE_STATUSES),
                Task.attempt_count < max_attempts,
                (Task.next_attempt_at.is_(None)) | (Task.next_attempt_at <= now),
            )
            .order_by(Task.created_at.asc(), Task.id.asc())
            .limit(limit)
        )

    def get_pending_tasks(
        self, limit: int, max_attempts: int, now: datetime | None = None
    ) -> list[Task]:
        """Return up to ``limit`` due tasks, oldest first.

        A task is due when its status is CREATED or FAILED, it has attempts
        left and its ``next_attempt_at`` is unset or not in the future. The
        retry delay is applied when a failure is recorded, through
        ``next_attempt_at``.
        """
        try:
            with self._session_factory() as db:
                result = db.execute(self._pending_query(limit, max_attempts, now or utcnow()))
                return list(result.scalars())
        except SQLAlchemyError as exc:
            raise OutboxError(f"failed to fetch pending tasks: {exc}") from exc

    def claim_pending_tasks(
        self, limit: int, max_attempts: int, now: datetime | None = None
    ) -> list[Task]:
        """Lock due tasks and flip them to PROCESSING in one transaction.

        Uses ``SELECT ... FOR UPDATE SKIP LOCKED`` so concurrent processors
        never pick the same row. Dialects without row locks (SQLite) run the
        plain select.
        """
        now = now or utcnow()
        try:
            with self._session_factory() as db:
                stmt = self._pending_query(limit, max_attempts, now).with_for_update(
                    skip_locked=True
                )
                tasks = list(db.execute(stmt).scalars())
                for task in tasks:
                    task.status = TaskStatus.PROCESSING.value
                    task.updated_at = now
                db.commit()
                return tasks
        except SQLAlchemyError as exc:
            raise OutboxError(f"failed to claim pending tasks: {exc}") from exc

    def mark_task_processing(self, task_id: int) -> None:
        """Set a task to PROCESSING. Repeating the call changes nothing."""
        self._execute(
            update(Task)
            .where(Task.id == task_id)
            .values(status=TaskStatus.PROCESSING.value, updated_at=utcnow()),
            f"failed to mark task {task_id} as processing",
        )

    def delete_task(self, task_id: int) -> None:
        """Remove a task after its payload has been published."""
        self._execute(
            delete(Task).where(Task.id == task_id),
            f"failed to delete task {task_id}",
        )

    def update_task_failure(
        self,
        task_id: int,
        attempt_count: int,
        status: TaskStatus,
        next_attempt_at: datetime,
    ) -> None:
        """Record a failed publish attempt.

        Args:
            task_id: Task identifier.
            attempt_count: Attempt count including the failed attempt.
            status: FAILED while attempts remain, NO_ATTEMPTS_LEFT otherwise.
            next_attempt_at: Earliest instant the task may be polled again.
        """
        status = TaskStatus(status)
        now = utcnow()
        values: dict[str, object] = {
            "status": status.value,
            "attempt_count": attempt_count,
            "next_attempt_at": next_attempt_at,
            "updated_at": now,
        }
        if status is TaskStatus.NO_ATTEMPTS_LEFT:
            values["finished_at"] = now
        self._execute(
            update(Task).where(Task.id == task_id).values(**values),
            f"failed to record failure for task {task_id}",
        )

    def release_stale_processing(self, updated_before: datetime) -> int:
        """Return tasks stuck in PROCESSING to FAILED so they are polled again.

        A task stays in PROCESSING only if the process died between claiming
        and finishing it. Returns the number of released rows.
        """
        try:
            with self._session_factory() as db:
                result = db.execute(
                    update(Task)
                    .where(
                        Task.status == TaskStatus.PROCESSING.value,
                        Task.updated_at < updated_before,
                    )
                    .values(status=TaskStatus.FAILED.value, updated_at=utcnow())
                )
                db.commit()
                released = result.rowcount or 0
        except SQLAlchemyError as exc:
            raise OutboxError(f"failed to release stale tasks: {exc}") from exc
        if released:
            logger.warning("Released %d tasks stuck in PROCESSING", released)
        return released

    def release_tasks(self, task_ids: Sequence[int]) -> int:
        """Hand claimed PROCESSING tasks back to the poller untouched.

        Tasks that were never attempted go back to CREATED, the rest to
        FAILED. Attempt counts and retry times are kept.
        """
        if not task_ids:
            return 0
        try:
            with self._session_factory() as db:
                result = db.execute(
                    update(Task)
                    .where(
                        Task.id.in_(list(task_ids)),
                        Task.status == TaskStatus.PROCESSING.value,
                    )
                    .values(
                        status=case(
                            (Task.attempt_count == 0, TaskStatus.CREATED.value),
                            else_=TaskStatus.FAILED.value,
                        ),
                        updated_at=utcnow(),
                    )
                )
                db.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise OutboxError(f"failed to release tasks: {exc}") from exc

    def get_task(self, task_id: int) -> Task | None:
        """Return a task by identifier."""
        try:
            with self._session_factory() as db:
                return db.get(Task, task_id)
        except SQLAlchemyError as exc:
            raise OutboxError(f"failed to load task {task_id}: {exc}") from exc

    def count_by_status(self) -> dict[str, int]:
        """Return the number of tasks per status."""
        try:
            with self._session_factory() as db:
                rows = db.execute(select(Task.status, func.count()).group_by(Task.status)).all()
        except SQLAlchemyError as exc:
            raise OutboxError(f"failed to count tasks: {exc}") from exc
        counts = {status.value: 0 for status in TaskStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def _execute(self, stmt, error_message: str) -> None:
        try:
            with self._session_factory() as db:
                db.execute(stmt)
                db.commit()
        except SQLAlchemyError as exc:
            raise OutboxError(f"{error_message}: {exc}") from exc
