"""Domain layer definitions."""

from .errors import (
    ConcurrentModification,
    EmptyIngestion,
    FileTooLarge,
    IngestionError,
    IngestionTimeout,
    InvalidTransition,
    NoMatchingSheet,
    NotFoundError,
    PermissionDenied,
    ReferentialIntegrityError,
    RosterWorkflowError,
    StorageError,
    UnreadableWorkbook,
    WorkflowValidationError,
)
from .models import (
    AttemptRecord,
    Batch,
    BatchStatus,
    ChangeEvent,
    ChangeType,
    InsurerStatus,
    PricePlanEntry,
    Sex,
    Worker,
    WorkerStatus,
)
from .roles import SYSTEM_CONTEXT, CallerContext, Role

__all__ = [
    "AttemptRecord",
    "Batch",
    "BatchStatus",
    "CallerContext",
    "ChangeEvent",
    "ChangeType",
    "ConcurrentModification",
    "EmptyIngestion",
    "FileTooLarge",
    "IngestionError",
    "IngestionTimeout",
    "InsurerStatus",
    "InvalidTransition",
    "NoMatchingSheet",
    "NotFoundError",
    "PermissionDenied",
    "PricePlanEntry",
    "ReferentialIntegrityError",
    "Role",
    "RosterWorkflowError",
    "SYSTEM_CONTEXT",
    "Sex",
    "StorageError",
    "UnreadableWorkbook",
    "Worker",
    "WorkerStatus",
    "WorkflowValidationError",
]
