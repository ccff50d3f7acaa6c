"""SQLAlchemy model for audit payloads awaiting delivery to the message queue."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import VARCHAR, BigInteger, DateTime, Index, Integer, LargeBinary
from sqlalchemy.orm import Mapped, mapped_column

from pickup_audit.db.session import Base
from pickup_audit.db.time import utcnow


class TaskStatus(str, Enum):
    """Delivery states of an outbox task."""

    CREATED = "CREATED"
    PROCESSING = "PROCESSING"
    FAILED = "FAILED"
    NO_ATTEMPTS_LEFT = "NO_ATTEMPTS_LEFT"


# Statuses the retry processor is allowed to pick up.
POLLABLE_STATUSES = (TaskStatus.CREATED.value, TaskStatus.FAILED.value)


class Task(Base):
    """Outbox row holding one serialized audit record."""

    __tablename__ = "tasks"
    __table_args__ = (Index("ix_tasks_status_created_at", "status", "created_at"),)

    # SQLite only autoincrements INTEGER primary keys
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    audit_data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    status: Mapped[str] = mapped_column(
        VARCHAR(20), nullable=False, default=TaskStatus.CREATED.value
    )  # see TaskStatus
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"Task(id={self.id!r}, status={self.status!r}, "
            f"attempt_count={self.attempt_count!r})"
        )
