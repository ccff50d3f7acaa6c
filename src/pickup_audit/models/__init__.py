"""SQLAlchemy models for the pickup audit service."""

from .task import POLLABLE_STATUSES, Task, TaskStatus

__all__ = ["POLLABLE_STATUSES", "Task", "TaskStatus"]
