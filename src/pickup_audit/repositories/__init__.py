"""Repositories wrapping database access."""

from .task_repo import OutboxError, TaskRepository

__all__ = ["OutboxError", "TaskRepository"]
