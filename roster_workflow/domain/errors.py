"""Error taxonomy shared by every layer of the workflow.

Per-row validation problems are *not* exceptions: they are aggregated into
``RowError`` values by the ingestion pipeline.  Everything below aborts the
operation that raised it and is handed back to the caller, which decides
whether to retry.
"""
from __future__ import annotations


class RosterWorkflowError(Exception):
    """Base class for all workflow errors."""

    code = "workflow_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class IngestionError(RosterWorkflowError):
    """Structural problem with an uploaded file; the user must fix the file."""

    code = "ingestion_error"


class NoMatchingSheet(IngestionError):
    code = "no_matching_sheet"

    def __init__(self, message: str, *, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class EmptyIngestion(IngestionError):
    code = "empty_ingestion"


class FileTooLarge(IngestionError):
    code = "file_too_large"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"file has {size} bytes, limit is {limit}")
        self.size = size
        self.limit = limit


class UnreadableWorkbook(IngestionError):
    code = "unreadable_workbook"


class WorkflowValidationError(RosterWorkflowError):
    """Operation input rejected before touching storage."""

    code = "validation_error"


class ConcurrentModification(RosterWorkflowError):
    """A concurrent writer got there first; re-read and retry."""

    code = "concurrent_modification"


class InvalidTransition(RosterWorkflowError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str, detail: str | None = None) -> None:
        message = f"cannot move batch from {current} to {target}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.current = current
        self.target = target


class ReferentialIntegrityError(RosterWorkflowError):
    code = "referential_integrity"


class NotFoundError(RosterWorkflowError):
    code = "not_found"


class PermissionDenied(RosterWorkflowError):
    code = "permission_denied"


class StorageError(RosterWorkflowError):
    """Failure reported by the storage collaborator."""

    code = "storage_error"

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class IngestionTimeout(IngestionError):
    """Parsing did not finish within the configured time budget."""

    code = "ingestion_timeout"
