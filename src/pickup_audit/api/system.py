"""System endpoints exposing audit pipeline state to operators."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from pickup_audit.api.dependencies import DispatcherDep, TaskRepositoryDep
from pickup_audit.repositories.task_repo import OutboxError

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/audit")
def get_audit_status(
    dispatcher: DispatcherDep,
    repository: TaskRepositoryDep,
) -> dict[str, object]:
    """Return dispatcher counters and outbox task counts per status.

    Tasks in ``NO_ATTEMPTS_LEFT`` need operator attention; they are never
    retried automatically.
    """
    try:
        tasks = repository.count_by_status()
    except OutboxError as err:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Task outbox is unavailable",
        ) from err

    return {
        "dispatcher": {
            "running": dispatcher.running,
            "dropped": dispatcher.dropped,
            "rejected": dispatcher.rejected,
            "sinks": dispatcher.stats(),
        },
        "tasks": tasks,
    }
