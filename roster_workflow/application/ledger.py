"""Append-only attempt ledger and the batch aggregate recomputer.

All writes to one batch's attempt records go through :class:`AttemptLedger`,
which serializes them with the repository's per-batch lock. A writer states the
attempt number it based its work on; if another writer appended in between, the
write fails with :class:`ConcurrentModification` and the caller retries with a
fresh read.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping, Sequence

from roster_workflow.core.aggregates import aggregate_attempt, derive_status
from roster_workflow.core.schema import ValidatedWorker
from roster_workflow.domain.errors import (
    ConcurrentModification,
    InvalidTransition,
    NotFoundError,
    WorkflowValidationError,
)
from roster_workflow.domain.lifecycle import ADJUDICATION_STATES, apply_transition
from roster_workflow.domain.models import (
    AttemptRecord,
    Batch,
    ChangeEvent,
    ChangeType,
    InsurerStatus,
    utcnow,
)
from roster_workflow.infrastructure.storage import RosterRepository
from roster_workflow.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class WorkflowOutcome:
    """Result of a write: the batch as stored plus the change events it produced."""

    batch: Batch | None = None
    records: list[AttemptRecord] = field(default_factory=list)
    events: list[ChangeEvent] = field(default_factory=list)
    details: dict[str, object] = field(default_factory=dict)

    def merge(self, other: "WorkflowOutcome") -> "WorkflowOutcome":
        if other.batch is not None:
            self.batch = other.batch
        for event in other.events:
            if event not in self.events:
                self.events.append(event)
        return self


@dataclass(frozen=True, slots=True)
class Decision:
    national_id: str
    status: InsurerStatus
    reason: str | None = None


def draft_from_row(row: ValidatedWorker, worker_id: str | None, change_type: ChangeType) -> AttemptRecord:
    return AttemptRecord(
        record_id="",
        batch_id="",
        attempt_number=0,
        national_id=row.national_id,
        name=row.name,
        worker_id=worker_id,
        sex=row.sex,
        birth_date=row.birth_date,
        salary=row.salary,
        salary_bracket=row.salary_bracket,
        retired=row.retired,
        on_leave=row.on_leave,
        change_type=change_type,
    )


def batch_event(batch: Batch) -> ChangeEvent:
    return ChangeEvent("batch", batch.batch_id)


def record_events(records: Iterable[AttemptRecord], action: str = "updated") -> list[ChangeEvent]:
    return [ChangeEvent("attempt_record", record.record_id, action) for record in records]


class AttemptLedger:
    def __init__(self, repository: RosterRepository, *, lock_timeout: float | None = None) -> None:
        self._repository = repository
        self._lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def current_attempt(self, batch_id: str) -> int:
        return self._repository.max_attempt(batch_id)

    def current_records(self, batch_id: str) -> list[AttemptRecord]:
        with self._repository.read():
            current = self._repository.max_attempt(batch_id)
            if current == 0:
                return []
            return self._repository.list_attempts(batch_id, current)

    def history(self, batch_id: str) -> list[AttemptRecord]:
        return self._repository.list_attempts(batch_id)

    def _load_batch(self, batch_id: str) -> Batch:
        batch = self._repository.get_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"batch {batch_id} not found")
        return batch

    # ------------------------------------------------------------------
    # appends
    # ------------------------------------------------------------------
    def append_attempt(
        self,
        batch_id: str,
        drafts: Sequence[AttemptRecord],
        *,
        expected_attempt: int,
        insurer_status: InsurerStatus = InsurerStatus.PENDING,
    ) -> list[AttemptRecord]:
        """Write ``drafts`` as attempt ``expected_attempt + 1``.

        Prior attempts are never touched. Raises ``ConcurrentModification`` if
        the batch's current attempt is no longer ``expected_attempt``.
        """

        if not drafts:
            raise WorkflowValidationError("an attempt needs at least one worker")
        with self._repository.batch_lock(batch_id, self._lock_timeout):
            with self._repository.transaction():
                current = self._repository.max_attempt(batch_id)
                if current != expected_attempt:
                    raise ConcurrentModification(
                        f"batch {batch_id} is at attempt {current}, writer expected {expected_attempt}"
                    )
                number = current + 1
                now = utcnow()
                records = [
                    replace(
                        draft,
                        record_id=self._repository.next_record_id(),
                        batch_id=batch_id,
                        attempt_number=number,
                        insurer_status=insurer_status,
                        rejection_reason=None,
                        created_at=now,
                        adjudicated_at=now if insurer_status in (InsurerStatus.APPROVED, InsurerStatus.REJECTED) else None,
                    )
                    for draft in drafts
                ]
                stored = self._repository.insert_attempts(records)
        logger.info(
            "attempt appended",
            extra={"batch_id": batch_id, "attempt_number": number, "records": len(stored)},
        )
        return stored

    # ------------------------------------------------------------------
    # adjudication
    # ------------------------------------------------------------------
    def mark_sent(self, batch_id: str) -> list[AttemptRecord]:
        """Flag every pending current-attempt record as sent to the insurer."""

        with self._repository.batch_lock(batch_id, self._lock_timeout):
            with self._repository.transaction():
                pending = [
                    replace(record, insurer_status=InsurerStatus.SENT)
                    for record in self.current_records(batch_id)
                    if record.insurer_status is InsurerStatus.PENDING
                ]
                if pending:
                    self._repository.save_attempts(pending)
        return pending

    def adjudicate(self, batch_id: str, decisions: Sequence[Decision]) -> WorkflowOutcome:
        """Record insurer decisions on current-attempt records, then recompute."""

        for decision in decisions:
            if decision.status not in (InsurerStatus.APPROVED, InsurerStatus.REJECTED):
                raise WorkflowValidationError(f"{decision.status.value} is not an adjudication result")
            if decision.status is InsurerStatus.REJECTED and not (decision.reason or "").strip():
                raise WorkflowValidationError(f"rejecting {decision.national_id} requires a reason")

        with self._repository.batch_lock(batch_id, self._lock_timeout):
            with self._repository.transaction():
                batch = self._load_batch(batch_id)
                if batch.status not in ADJUDICATION_STATES:
                    raise InvalidTransition(batch.status.value, "adjudication", "batch is not with the insurer")
                by_id = {record.national_id: record for record in self.current_records(batch_id)}
                now = utcnow()
                updated: list[AttemptRecord] = []
                for decision in decisions:
                    record = by_id.get(decision.national_id)
                    if record is None:
                        raise NotFoundError(
                            f"{decision.national_id} is not part of the current attempt of batch {batch_id}"
                        )
                    record = replace(
                        record,
                        insurer_status=decision.status,
                        rejection_reason=decision.reason.strip()
                        if decision.status is InsurerStatus.REJECTED and decision.reason
                        else None,
                        adjudicated_at=now,
                    )
                    by_id[decision.national_id] = record
                    updated.append(record)
                if updated:
                    self._repository.save_attempts(updated)
                outcome = self.recompute(batch_id)
        outcome.records = updated
        outcome.events[:0] = record_events(updated)
        return outcome

    def approve_all_pending(self, batch_id: str) -> WorkflowOutcome:
        """Approve every current-attempt record that is not already rejected."""

        decisions = [
            Decision(record.national_id, InsurerStatus.APPROVED)
            for record in self.current_records(batch_id)
            if record.insurer_status not in (InsurerStatus.REJECTED, InsurerStatus.APPROVED)
        ]
        if not decisions:
            return self.recompute(batch_id)
        return self.adjudicate(batch_id, decisions)

    def process_insurer_return(self, batch_id: str, rejections: Mapping[str, str]) -> WorkflowOutcome:
        """Apply the insurer's return file.

        Listed national IDs are rejected with their reasons; every other record
        still awaiting a decision is approved.
        """

        current = self.current_records(batch_id)
        known = {record.national_id for record in current}
        unknown = sorted(set(rejections) - known)
        if unknown:
            raise NotFoundError(f"not in the current attempt: {', '.join(unknown)}")
        decisions = [
            Decision(national_id, InsurerStatus.REJECTED, reason) for national_id, reason in rejections.items()
        ]
        decisions.extend(
            Decision(record.national_id, InsurerStatus.APPROVED)
            for record in current
            if record.national_id not in rejections
            and record.insurer_status in (InsurerStatus.PENDING, InsurerStatus.SENT)
        )
        return self.adjudicate(batch_id, decisions)

    # ------------------------------------------------------------------
    # aggregate recomputation
    # ------------------------------------------------------------------
    def recompute(self, batch_id: str) -> WorkflowOutcome:
        """Re-derive totals and status from the current attempt.

        Safe to call any number of times, from any thread: the batch is only
        saved when the derived values differ from the stored ones.
        """

        with self._repository.batch_lock(batch_id, self._lock_timeout):
            with self._repository.transaction():
                batch = self._load_batch(batch_id)
                aggregate = aggregate_attempt(self._repository.list_attempts(batch_id))
                target = derive_status(batch.status, aggregate)
                changed = (
                    batch.total_workers != aggregate.total
                    or batch.total_approved != aggregate.approved
                    or batch.total_rejected != aggregate.rejected
                    or target is not batch.status
                )
                if not changed:
                    return WorkflowOutcome(batch=batch, details={"aggregate": aggregate})
                batch.total_workers = aggregate.total
                batch.total_approved = aggregate.approved
                batch.total_rejected = aggregate.rejected
                if target is not batch.status:
                    apply_transition(batch, target)
                else:
                    batch.updated_at = utcnow()
                saved = self._repository.save_batch(batch)
        logger.info(
            "batch recomputed",
            extra={
                "batch_id": batch_id,
                "status": saved.status.value,
                "approved": aggregate.approved,
                "rejected": aggregate.rejected,
            },
        )
        return WorkflowOutcome(batch=saved, events=[batch_event(saved)], details={"aggregate": aggregate})
