"""Application services."""

from .batches import BatchService, WorkerCorrection, get_batch_service, get_repository
from .ledger import AttemptLedger, Decision, WorkflowOutcome
from .rosters import RosterPreview, RosterService, WorkerEdit, get_roster_service


def reset_workflow_state() -> None:
    """Reset the in-memory store (used in tests)."""

    get_repository().reset()


__all__ = [
    "AttemptLedger",
    "BatchService",
    "Decision",
    "RosterPreview",
    "RosterService",
    "WorkerCorrection",
    "WorkerEdit",
    "WorkflowOutcome",
    "get_batch_service",
    "get_repository",
    "get_roster_service",
    "reset_workflow_state",
]
