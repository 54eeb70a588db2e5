"""Domain entities for roster batches and their insurer attempts."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkerStatus(str, Enum):
    ACTIVE = "active"
    TERMINATED = "terminated"


class Sex(str, Enum):
    MASCULINE = "Masculino"
    FEMININE = "Feminino"
    OTHER = "Outro"


class BatchStatus(str, Enum):
    DRAFT = "draft"
    AWAITING_PROCESSING = "awaiting_processing"
    PENDING_QUOTE = "pending_quote"
    QUOTED = "quoted"
    EMPLOYER_APPROVED = "employer_approved"
    EMPLOYER_REJECTED = "employer_rejected"
    SUBMITTED_TO_INSURER = "submitted_to_insurer"
    AWAITING_CORRECTION = "awaiting_correction"
    AWAITING_FINALIZATION = "awaiting_finalization"
    FINALIZED = "finalized"
    INVOICED = "invoiced"


class InsurerStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    APPROVED = "approved"
    REJECTED = "rejected"


class ChangeType(str, Enum):
    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    CORRECTION = "correction"


@dataclass(slots=True)
class Worker:
    """Authoritative roster entry, unique per (employer_id, national_id)."""

    worker_id: str
    employer_id: str
    site_id: str
    national_id: str
    name: str
    sex: Sex | None = None
    birth_date: date | None = None
    salary: Decimal | None = None
    salary_bracket: str | None = None
    retired: bool = False
    on_leave: bool = False
    status: WorkerStatus = WorkerStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status is WorkerStatus.ACTIVE


@dataclass(slots=True)
class Batch:
    """Monthly roster batch for one (employer, site, period)."""

    batch_id: str
    employer_id: str
    site_id: str
    period: str
    status: BatchStatus = BatchStatus.DRAFT
    total_workers: int = 0
    total_approved: int = 0
    total_rejected: int = 0
    total_new: int = 0
    total_changed: int = 0
    total_terminated: int = 0
    total_value: Decimal | None = None
    rejection_reason: str | None = None
    notes: str | None = None
    source_file: str | None = None
    status_history: dict[str, datetime] = field(default_factory=dict)
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class AttemptRecord:
    """Snapshot of one worker as submitted to the insurer in one attempt."""

    record_id: str
    batch_id: str
    attempt_number: int
    national_id: str
    name: str
    worker_id: str | None = None
    sex: Sex | None = None
    birth_date: date | None = None
    salary: Decimal | None = None
    salary_bracket: str | None = None
    retired: bool = False
    on_leave: bool = False
    change_type: ChangeType = ChangeType.NEW
    insurer_status: InsurerStatus = InsurerStatus.PENDING
    rejection_reason: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    adjudicated_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.batch_id, self.national_id, self.attempt_number)


@dataclass(slots=True)
class PricePlanEntry:
    batch_id: str
    plan_name: str
    age_band: str
    unit_value: Decimal
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """Emitted after a write so that callers can fan out notifications."""

    entity_type: str
    entity_id: str
    action: str = "updated"

    def as_dict(self) -> dict[str, str]:
        return {"entity_type": self.entity_type, "entity_id": self.entity_id, "action": self.action}
