"""Batch lifecycle use cases: pricing, approvals, insurer rounds and billing."""
from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Mapping, Sequence

from pydantic import BaseModel

from roster_workflow.core.aggregates import billable_lives, billed_amount, effective_records
from roster_workflow.core.normalizer import (
    normalize_currency,
    normalize_date,
    normalize_name,
    normalize_national_id,
    normalize_sex,
)
from roster_workflow.core.schema import ValidatedWorker
from roster_workflow.core.brackets import BracketTable, get_bracket_table
from roster_workflow.domain.errors import (
    ConcurrentModification,
    InvalidTransition,
    NotFoundError,
    WorkflowValidationError,
)
from roster_workflow.domain.lifecycle import AMENDABLE_STATES, apply_transition, ensure_transition
from roster_workflow.domain.models import (
    AttemptRecord,
    Batch,
    BatchStatus,
    ChangeEvent,
    ChangeType,
    InsurerStatus,
    PricePlanEntry,
    Worker,
    utcnow,
)
from roster_workflow.domain.roles import CallerContext, Role
from roster_workflow.exporters.batch_export import TabularExport, attempt_export
from roster_workflow.infrastructure import (
    InMemoryRosterRepository,
    RosterRepository,
    get_document_issuer,
)
from roster_workflow.application.ledger import AttemptLedger, Decision, WorkflowOutcome, batch_event, record_events
from roster_workflow.settings import get_settings
from roster_workflow.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PLAN = "default"
DEFAULT_AGE_BAND = "all"


class WorkerCorrection(BaseModel):
    """Corrected values for one rejected worker; omitted fields keep their value."""

    national_id: str
    name: str | None = None
    sex: str | None = None
    birth_date: str | None = None
    salary: Decimal | str | None = None
    retired: bool | None = None
    on_leave: bool | None = None


def _clean_national_id(raw: str) -> str:
    result = normalize_national_id(raw)
    if not result.is_ok:
        raise WorkflowValidationError(f"invalid national id {raw}")
    return result.value


def _is_correction_round(records: Sequence[AttemptRecord]) -> bool:
    return bool(records) and all(record.change_type is ChangeType.CORRECTION for record in records)


def apply_correction(record: AttemptRecord, correction: WorkerCorrection, brackets: BracketTable) -> AttemptRecord:
    """Return a copy of ``record`` carrying the corrected, normalized values."""

    changes: dict[str, object] = {}
    problems: list[str] = []
    if correction.name is not None:
        result = normalize_name(correction.name)
        if result.is_ok:
            changes["name"] = result.value
        else:
            problems.append("name")
    if correction.sex is not None:
        result = normalize_sex(correction.sex)
        if result.is_ok:
            changes["sex"] = result.value
        else:
            problems.append("sex")
    if correction.birth_date is not None:
        result = normalize_date(correction.birth_date)
        if result.is_ok:
            changes["birth_date"] = result.value
        else:
            problems.append("birth_date")
    if correction.salary is not None:
        result = normalize_currency(correction.salary)
        if result.is_ok and result.value >= 0:
            changes["salary"] = result.value
            changes["salary_bracket"] = brackets.classify(result.value)
        else:
            problems.append("salary")
    if correction.retired is not None:
        changes["retired"] = correction.retired
    if correction.on_leave is not None:
        changes["on_leave"] = correction.on_leave
    if problems:
        raise WorkflowValidationError(f"invalid correction for {correction.national_id}: {', '.join(problems)}")
    return replace(record, **changes)


class BatchService:
    """Coordinates the lifecycle of monthly batches."""

    def __init__(
        self,
        repository: RosterRepository,
        *,
        ledger: AttemptLedger | None = None,
        default_unit_price: Decimal | None = None,
        brackets: BracketTable | None = None,
    ) -> None:
        settings = get_settings()
        self._repository = repository
        self.ledger = ledger or AttemptLedger(repository, lock_timeout=settings.batch_lock_timeout_seconds)
        self._default_unit_price = default_unit_price or settings.default_unit_price
        self._brackets = brackets or get_bracket_table(str(settings.salary_brackets_path))

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def _load(self, batch_id: str) -> Batch:
        batch = self._repository.get_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"batch {batch_id} not found")
        return batch

    def get_batch(self, caller: CallerContext, batch_id: str) -> Batch:
        batch = self._load(batch_id)
        caller.require("read", batch.employer_id)
        return batch

    def list_batches(
        self,
        caller: CallerContext,
        employer_id: str | None = None,
        status: BatchStatus | None = None,
    ) -> list[Batch]:
        if caller.role is Role.EMPLOYER_OPERATOR and employer_id is None:
            employer_id = caller.employer_id
        caller.require("read", employer_id)
        return self._repository.list_batches(employer_id, status)

    def get_detail(self, caller: CallerContext, batch_id: str) -> dict[str, object]:
        batch = self.get_batch(caller, batch_id)
        history = self.ledger.history(batch_id)
        current_number = max((record.attempt_number for record in history), default=0)
        return {
            "batch": batch,
            "current_attempt": current_number,
            "records": [record for record in history if record.attempt_number == current_number],
            "attempts": sorted({record.attempt_number for record in history}),
            "price_entries": self._repository.list_price_entries(batch_id),
        }

    def history(self, caller: CallerContext, batch_id: str) -> list[AttemptRecord]:
        self.get_batch(caller, batch_id)
        return self.ledger.history(batch_id)

    def export(self, caller: CallerContext, batch_id: str, attempt_number: int | None = None) -> TabularExport:
        self.get_batch(caller, batch_id)
        if attempt_number is None:
            return attempt_export(self.ledger.current_records(batch_id))
        return attempt_export(self._repository.list_attempts(batch_id, attempt_number))

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _transition(self, batch_id: str, target: BatchStatus, **fields: object) -> WorkflowOutcome:
        with self._repository.transaction():
            batch = self._load(batch_id)
            apply_transition(batch, target)
            for name, value in fields.items():
                setattr(batch, name, value)
            saved = self._repository.save_batch(batch)
        logger.info(
            "batch transitioned",
            extra={"batch_id": batch_id, "status": target.value},
        )
        return WorkflowOutcome(batch=saved, events=[batch_event(saved)])

    def _unit_price(self, batch_id: str) -> Decimal:
        entries = self._repository.list_price_entries(batch_id)
        if not entries:
            return self._default_unit_price
        latest = max(entries, key=lambda entry: entry.updated_at)
        return latest.unit_value

    # ------------------------------------------------------------------
    # pricing and employer approval
    # ------------------------------------------------------------------
    def mark_ready(self, caller: CallerContext, batch_id: str) -> WorkflowOutcome:
        """Operator confirms the roster is complete and ready for pricing."""

        batch = self._load(batch_id)
        caller.require("mark_ready", batch.employer_id)
        with self._repository.batch_lock(batch_id):
            if _is_correction_round(self.ledger.current_records(batch_id)):
                raise InvalidTransition(
                    batch.status.value,
                    BatchStatus.PENDING_QUOTE.value,
                    "correction rounds are sent to the insurer without repricing",
                )
            return self._transition(batch_id, BatchStatus.PENDING_QUOTE)

    def quote(
        self,
        caller: CallerContext,
        batch_id: str,
        unit_price: Decimal,
        *,
        plan_name: str = DEFAULT_PLAN,
        age_band: str = DEFAULT_AGE_BAND,
    ) -> WorkflowOutcome:
        """Attach a unit price. A batch already quoted may be re-quoted in place."""

        batch = self._load(batch_id)
        caller.require("quote", batch.employer_id)
        unit_price = Decimal(unit_price)
        if not unit_price.is_finite() or unit_price <= 0:
            raise WorkflowValidationError("unit price must be positive")

        with self._repository.batch_lock(batch_id):
            with self._repository.transaction():
                batch = self._load(batch_id)
                if batch.status is not BatchStatus.QUOTED:
                    ensure_transition(batch.status, BatchStatus.QUOTED)
                workers = len(self.ledger.current_records(batch_id))
                entry = self._repository.upsert_price_entry(
                    PricePlanEntry(batch_id=batch_id, plan_name=plan_name, age_band=age_band, unit_value=unit_price)
                )
                batch.total_value = (unit_price * workers).quantize(Decimal("0.01"))
                if batch.status is BatchStatus.QUOTED:
                    batch.updated_at = entry.updated_at
                else:
                    apply_transition(batch, BatchStatus.QUOTED)
                saved = self._repository.save_batch(batch)
        logger.info(
            "batch quoted",
            extra={"batch_id": batch_id, "unit_price": str(unit_price), "total_value": str(saved.total_value)},
        )
        return WorkflowOutcome(
            batch=saved,
            events=[
                batch_event(saved),
                ChangeEvent("price_plan_entry", f"{batch_id}:{plan_name}:{age_band}"),
            ],
            details={"price_entry": entry},
        )

    def employer_decision(
        self,
        caller: CallerContext,
        batch_id: str,
        *,
        approve: bool,
        reason: str | None = None,
    ) -> WorkflowOutcome:
        batch = self._load(batch_id)
        caller.require("employer_decision", batch.employer_id)
        if approve:
            return self._transition(batch_id, BatchStatus.EMPLOYER_APPROVED, rejection_reason=None)
        if not (reason or "").strip():
            raise WorkflowValidationError("rejecting a quote requires a reason")
        return self._transition(batch_id, BatchStatus.EMPLOYER_REJECTED, rejection_reason=reason.strip())

    # ------------------------------------------------------------------
    # insurer round
    # ------------------------------------------------------------------
    def send_to_insurer(self, caller: CallerContext, batch_id: str) -> WorkflowOutcome:
        """Mark the current attempt as sent and hand the batch to the insurer."""

        batch = self._load(batch_id)
        caller.require("send_to_insurer", batch.employer_id)
        with self._repository.batch_lock(batch_id):
            with self._repository.transaction():
                batch = self._load(batch_id)
                current = self.ledger.current_records(batch_id)
                if batch.status is BatchStatus.AWAITING_PROCESSING and not _is_correction_round(current):
                    raise InvalidTransition(
                        batch.status.value,
                        BatchStatus.SUBMITTED_TO_INSURER.value,
                        "a first submission must be quoted and approved by the employer",
                    )
                if batch.status not in (BatchStatus.EMPLOYER_APPROVED, BatchStatus.AWAITING_PROCESSING):
                    raise InvalidTransition(batch.status.value, BatchStatus.SUBMITTED_TO_INSURER.value)
                ensure_transition(batch.status, BatchStatus.SUBMITTED_TO_INSURER)
                if not current:
                    raise WorkflowValidationError(f"batch {batch_id} has no workers to send")
                sent = self.ledger.mark_sent(batch_id)
                outcome = self._transition(batch_id, BatchStatus.SUBMITTED_TO_INSURER)
        outcome.records = sent
        outcome.events.extend(record_events(sent))
        return outcome

    def adjudicate(self, caller: CallerContext, batch_id: str, decisions: Sequence[Decision]) -> WorkflowOutcome:
        batch = self._load(batch_id)
        caller.require("adjudicate", batch.employer_id)
        return self.ledger.adjudicate(batch_id, decisions)

    def approve_all_pending(self, caller: CallerContext, batch_id: str) -> WorkflowOutcome:
        batch = self._load(batch_id)
        caller.require("adjudicate", batch.employer_id)
        return self.ledger.approve_all_pending(batch_id)

    def process_insurer_return(
        self,
        caller: CallerContext,
        batch_id: str,
        rejections: Mapping[str, str],
    ) -> WorkflowOutcome:
        batch = self._load(batch_id)
        caller.require("adjudicate", batch.employer_id)
        return self.ledger.process_insurer_return(batch_id, rejections)

    def recompute(self, caller: CallerContext, batch_id: str) -> WorkflowOutcome:
        self.get_batch(caller, batch_id)
        return self.ledger.recompute(batch_id)

    def submit_corrections(
        self,
        caller: CallerContext,
        batch_id: str,
        corrections: Sequence[WorkerCorrection],
        *,
        expected_attempt: int,
        send_now: bool = False,
    ) -> WorkflowOutcome:
        """Resubmit the rejected cohort as a new attempt.

        Only workers rejected in the current attempt are carried forward; the
        rest of the batch stays as adjudicated. With ``send_now`` the round goes
        straight back to the insurer, otherwise it waits for the operator in
        ``awaiting_processing``.
        """

        batch = self._load(batch_id)
        caller.require("submit_corrections", batch.employer_id)
        target = BatchStatus.SUBMITTED_TO_INSURER if send_now else BatchStatus.AWAITING_PROCESSING

        with self._repository.batch_lock(batch_id):
            with self._repository.transaction():
                batch = self._load(batch_id)
                current_attempt = self.ledger.current_attempt(batch_id)
                if current_attempt != expected_attempt:
                    raise ConcurrentModification(
                        f"batch {batch_id} is at attempt {current_attempt}, corrections were based on {expected_attempt}"
                    )
                if batch.status is not BatchStatus.AWAITING_CORRECTION:
                    raise InvalidTransition(batch.status.value, target.value, "nothing is awaiting correction")
                cohort = {
                    record.national_id: record
                    for record in self.ledger.current_records(batch_id)
                    if record.insurer_status is InsurerStatus.REJECTED
                }
                by_id = {correction.national_id: correction for correction in corrections}
                outside = sorted(set(by_id) - set(cohort))
                if outside:
                    raise WorkflowValidationError(f"not rejected in the current attempt: {', '.join(outside)}")

                drafts: list[AttemptRecord] = []
                for national_id in sorted(cohort):
                    record = cohort[national_id]
                    if national_id in by_id:
                        record = apply_correction(record, by_id[national_id], self._brackets)
                    drafts.append(replace(record, change_type=ChangeType.CORRECTION))
                    self._sync_worker(record)

                records = self.ledger.append_attempt(
                    batch_id,
                    drafts,
                    expected_attempt=expected_attempt,
                    insurer_status=InsurerStatus.SENT if send_now else InsurerStatus.PENDING,
                )
                outcome = self._transition(batch_id, target)
                outcome.merge(self.ledger.recompute(batch_id))
        outcome.records = records
        outcome.events.extend(record_events(records, "created"))
        outcome.details["attempt_number"] = records[0].attempt_number
        return outcome

    def _sync_worker(self, record: AttemptRecord) -> None:
        if record.worker_id is None:
            return
        worker = self._repository.get_worker(record.worker_id)
        if worker is None:
            return
        self._repository.save_worker(
            replace(
                worker,
                name=record.name,
                sex=record.sex,
                birth_date=record.birth_date,
                salary=record.salary,
                salary_bracket=record.salary_bracket,
                retired=record.retired,
                on_leave=record.on_leave,
            )
        )

    # ------------------------------------------------------------------
    # back-office amendment
    # ------------------------------------------------------------------
    def amend_batch(
        self,
        caller: CallerContext,
        batch_id: str,
        *,
        expected_attempt: int,
        members: Sequence[WorkerCorrection] = (),
        remove: Sequence[str] = (),
    ) -> WorkflowOutcome:
        """Add, change or drop lives on an approved batch.

        The amended roster is appended as a new approved attempt restating
        every remaining life; earlier attempts stay as they were. The batch is
        re-priced at its latest unit price.
        """

        batch = self._load(batch_id)
        caller.require("amend_batch", batch.employer_id)
        if not members and not remove:
            raise WorkflowValidationError("an amendment needs at least one change")

        with self._repository.batch_lock(batch_id):
            with self._repository.transaction():
                batch = self._load(batch_id)
                if batch.status not in AMENDABLE_STATES:
                    raise InvalidTransition(batch.status.value, batch.status.value, "only approved batches can be amended")
                current_attempt = self.ledger.current_attempt(batch_id)
                if current_attempt != expected_attempt:
                    raise ConcurrentModification(
                        f"batch {batch_id} is at attempt {current_attempt}, amendment was based on {expected_attempt}"
                    )

                roster = {
                    record.national_id: replace(record, change_type=ChangeType.UNCHANGED)
                    for record in effective_records(self.ledger.history(batch_id))
                    if record.insurer_status is InsurerStatus.APPROVED
                }
                for raw in remove:
                    national_id = _clean_national_id(raw)
                    if roster.pop(national_id, None) is None:
                        raise WorkflowValidationError(f"{national_id} is not part of batch {batch_id}")

                touched: list[AttemptRecord] = []
                for member in members:
                    national_id = _clean_national_id(member.national_id)
                    known = roster.get(national_id)
                    if known is None:
                        blank = AttemptRecord(record_id="", batch_id="", attempt_number=0, national_id=national_id, name="")
                        record = replace(apply_correction(blank, member, self._brackets), change_type=ChangeType.NEW)
                        if not record.name:
                            raise WorkflowValidationError(f"adding {national_id} requires a name")
                        record = replace(record, worker_id=self._enroll(batch, record).worker_id)
                    else:
                        record = replace(apply_correction(known, member, self._brackets), change_type=ChangeType.CHANGED)
                        self._sync_worker(record)
                    roster[national_id] = record
                    touched.append(record)

                records = self.ledger.append_attempt(
                    batch_id,
                    [roster[national_id] for national_id in sorted(roster)],
                    expected_attempt=expected_attempt,
                    insurer_status=InsurerStatus.APPROVED,
                )
                outcome = self.ledger.recompute(batch_id)
                amount = billed_amount(self.ledger.history(batch_id), self._unit_price(batch_id))
                batch = self._load(batch_id)
                batch.total_value = amount
                batch.updated_at = utcnow()
                outcome.batch = self._repository.save_batch(batch)
        logger.info(
            "batch amended",
            extra={
                "batch_id": batch_id,
                "attempt_number": records[0].attempt_number,
                "lives": len(records),
                "total_value": str(amount),
            },
        )
        outcome.records = records
        if batch_event(outcome.batch) not in outcome.events:
            outcome.events.append(batch_event(outcome.batch))
        outcome.events.extend(record_events(records, "created"))
        outcome.events.extend(ChangeEvent("worker", record.worker_id) for record in touched if record.worker_id)
        outcome.details.update({"attempt_number": records[0].attempt_number, "lives": len(records), "amount": amount})
        return outcome

    def _enroll(self, batch: Batch, record: AttemptRecord) -> Worker:
        row = ValidatedWorker(
            line_number=0,
            national_id=record.national_id,
            name=record.name,
            sex=record.sex,
            birth_date=record.birth_date,
            salary=record.salary,
            salary_bracket=record.salary_bracket,
            retired=record.retired,
            on_leave=record.on_leave,
        )
        (worker,) = self._repository.upsert_workers(batch.employer_id, batch.site_id, [row])
        return worker

    # ------------------------------------------------------------------
    # closing
    # ------------------------------------------------------------------
    def finalize(self, caller: CallerContext, batch_id: str) -> WorkflowOutcome:
        """Close the batch and bill every approved life once."""

        batch = self._load(batch_id)
        caller.require("finalize", batch.employer_id)
        with self._repository.batch_lock(batch_id):
            with self._repository.transaction():
                batch = self._load(batch_id)
                ensure_transition(batch.status, BatchStatus.FINALIZED)
                history = self.ledger.history(batch_id)
                unit_price = self._unit_price(batch_id)
                amount = billed_amount(history, unit_price)
                approved = [
                    record for record in effective_records(history) if record.insurer_status is InsurerStatus.APPROVED
                ]
                outcome = self._transition(batch_id, BatchStatus.FINALIZED, total_value=amount)
                document = get_document_issuer().issue(outcome.batch, approved, amount)
        outcome.details.update({"lives": billable_lives(history), "amount": amount, "document": document})
        return outcome

    def invoice(self, caller: CallerContext, batch_id: str, notes: str | None = None) -> WorkflowOutcome:
        batch = self._load(batch_id)
        caller.require("invoice", batch.employer_id)
        fields: dict[str, object] = {}
        if notes:
            fields["notes"] = notes
        return self._transition(batch_id, BatchStatus.INVOICED, **fields)

    def delete_batch(self, caller: CallerContext, batch_id: str, *, cascade: bool = False) -> WorkflowOutcome:
        batch = self._load(batch_id)
        caller.require("delete_batch", batch.employer_id)
        with self._repository.batch_lock(batch_id):
            records = self.ledger.history(batch_id)
            self._repository.delete_batch(batch_id, cascade=cascade)
        logger.warning("batch deleted", extra={"batch_id": batch_id, "cascade": cascade, "records": len(records)})
        events = [ChangeEvent("batch", batch_id, "deleted")]
        if cascade:
            events.extend(record_events(records, "deleted"))
        return WorkflowOutcome(batch=None, events=events)


_repository = InMemoryRosterRepository(lock_timeout=get_settings().batch_lock_timeout_seconds)
_service = BatchService(_repository)


def get_repository() -> RosterRepository:
    return _repository


def get_batch_service() -> BatchService:
    """Return the singleton batch service for the process."""

    return _service
