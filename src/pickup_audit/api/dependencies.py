"""Shared API dependencies for the audit pipeline."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from pickup_audit.audit.dispatcher import BatchingDispatcher
from pickup_audit.repositories.task_repo import TaskRepository


def get_audit_dispatcher(request: Request) -> BatchingDispatcher:
    """Return the dispatcher created at application startup.

    Raises:
        HTTPException: If the pipeline has not been started
    """
    dispatcher = getattr(request.app.state, "audit_dispatcher", None)
    if dispatcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audit pipeline is not running",
        )
    return dispatcher


def get_task_repository(request: Request) -> TaskRepository:
    """Return the task outbox created at application startup."""
    repository = getattr(request.app.state, "task_repository", None)
    if repository is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Task outbox is not configured",
        )
    return repository


DispatcherDep = Annotated[BatchingDispatcher, Depends(get_audit_dispatcher)]
TaskRepositoryDep = Annotated[TaskRepository, Depends(get_task_repository)]
