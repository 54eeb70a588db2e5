"""Roster submission use cases: preview, submit, administrative import, edits."""
from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Iterator, Sequence, TypeVar

from pydantic import BaseModel

from roster_workflow.application.batches import get_repository
from roster_workflow.application.ledger import (
    AttemptLedger,
    WorkflowOutcome,
    batch_event,
    draft_from_row,
    record_events,
)
from roster_workflow.core.brackets import BracketTable, get_bracket_table
from roster_workflow.core.normalizer import (
    normalize_currency,
    normalize_date,
    normalize_name,
    normalize_sex,
)
from roster_workflow.core.reconciliation import ReconcileAction, ReconciliationPlan, RosterReconciler
from roster_workflow.core.schema import ADMIN_SIGNATURE, CLIENT_SIGNATURE, ColumnSignature, IngestionResult
from roster_workflow.domain.errors import (
    ConcurrentModification,
    InvalidTransition,
    NotFoundError,
    WorkflowValidationError,
)
from roster_workflow.domain.lifecycle import SUBMISSION_STATES, apply_transition, force_status
from roster_workflow.domain.models import (
    Batch,
    BatchStatus,
    ChangeEvent,
    ChangeType,
    InsurerStatus,
    PricePlanEntry,
    Worker,
)
from roster_workflow.domain.roles import CallerContext
from roster_workflow.extractors.roster_sheet import IngestionPipeline
from roster_workflow.infrastructure import RosterRepository
from roster_workflow.settings import Settings, get_settings
from roster_workflow.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_CHANGE_TYPES = {
    ReconcileAction.CREATE: ChangeType.NEW,
    ReconcileAction.UPDATE: ChangeType.CHANGED,
    ReconcileAction.UNCHANGED: ChangeType.UNCHANGED,
}


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass(slots=True)
class RosterPreview:
    ingestion: IngestionResult
    plan: ReconciliationPlan

    def summary(self) -> dict[str, int]:
        return {
            "valid_rows": len(self.ingestion.valid_rows),
            "error_rows": len(self.ingestion.error_rows),
            **self.plan.summary(),
        }


class WorkerEdit(BaseModel):
    name: str | None = None
    sex: str | None = None
    birth_date: str | None = None
    salary: Decimal | str | None = None
    retired: bool | None = None
    on_leave: bool | None = None


class RosterService:
    """Turns uploaded rosters into worker, batch and attempt writes."""

    def __init__(
        self,
        repository: RosterRepository,
        *,
        ledger: AttemptLedger | None = None,
        reconciler: RosterReconciler | None = None,
        brackets: BracketTable | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository
        self.ledger = ledger or AttemptLedger(repository, lock_timeout=self._settings.batch_lock_timeout_seconds)
        self._reconciler = reconciler or RosterReconciler()
        self._brackets = brackets or get_bracket_table(str(self._settings.salary_brackets_path))
        self.chunk_size = max(1, self._settings.reconcile_chunk_size)

    # ------------------------------------------------------------------
    # ingestion and planning
    # ------------------------------------------------------------------
    def ingest(
        self,
        content: bytes,
        filename: str | None = None,
        signature: ColumnSignature = CLIENT_SIGNATURE,
    ) -> IngestionResult:
        pipeline = IngestionPipeline(signature, brackets=self._brackets, settings=self._settings)
        return pipeline.run(content, filename)

    def plan(self, employer_id: str, site_id: str, ingestion: IngestionResult) -> ReconciliationPlan:
        active = self._repository.list_workers(employer_id, site_id, active_only=True)
        known: dict[str, Worker] = {}
        for row in ingestion.valid_rows:
            worker = self._repository.find_worker(employer_id, row.national_id)
            if worker is not None:
                known[row.national_id] = worker
        return self._reconciler.reconcile(active, ingestion.valid_rows, site_id=site_id, known_workers=known)

    def preview(
        self,
        caller: CallerContext,
        employer_id: str,
        site_id: str,
        content: bytes,
        filename: str | None = None,
        signature: ColumnSignature = CLIENT_SIGNATURE,
    ) -> RosterPreview:
        """Ingest and reconcile without writing anything."""

        caller.require("preview_roster", employer_id)
        ingestion = self.ingest(content, filename, signature)
        return RosterPreview(ingestion=ingestion, plan=self.plan(employer_id, site_id, ingestion))

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def _open_batch(self, employer_id: str, site_id: str, period: str) -> Batch:
        batch = self._repository.find_batch(employer_id, site_id, period)
        if batch is not None:
            return batch
        try:
            return self._repository.create_batch(employer_id, site_id, period)
        except ConcurrentModification:
            batch = self._repository.find_batch(employer_id, site_id, period)
            if batch is None:
                raise
            return batch

    def _shielded(self, ingestion: IngestionResult, accept_partial: bool) -> set[str]:
        if ingestion.error_rows and not accept_partial:
            lines = ", ".join(str(row.line_number) for row in ingestion.error_rows[:10])
            raise WorkflowValidationError(
                f"{len(ingestion.error_rows)} rows have errors (lines {lines}); fix them or accept a partial upload"
            )
        if not ingestion.valid_rows:
            raise WorkflowValidationError("the upload has no valid rows")
        return {row.national_id for row in ingestion.error_rows if row.national_id}

    def _apply_plan(
        self,
        employer_id: str,
        site_id: str,
        plan: ReconciliationPlan,
        shielded: set[str],
    ) -> tuple[dict[str, Worker], list[Worker]]:
        """Write the plan in chunks; must run inside a repository transaction."""

        workers: dict[str, Worker] = {
            change.national_id: change.worker for change in plan.unchanged if change.worker is not None
        }
        rows = [change.row for change in plan.to_upsert if change.row is not None]
        for number, chunk in enumerate(chunked(rows, self.chunk_size), start=1):
            for worker in self._repository.upsert_workers(employer_id, site_id, chunk):
                workers[worker.national_id] = worker
            logger.debug("upsert chunk written", extra={"chunk": number, "rows": len(chunk)})

        terminated = [
            change.worker
            for change in plan.to_terminate
            if change.worker is not None and change.national_id not in shielded
        ]
        for chunk in chunked([worker.worker_id for worker in terminated], self.chunk_size):
            self._repository.terminate_workers(chunk)
        return workers, terminated

    def _write_roster(
        self,
        batch_id: str,
        employer_id: str,
        site_id: str,
        ingestion: IngestionResult,
        *,
        shielded: set[str],
        insurer_status: InsurerStatus,
    ) -> tuple[ReconciliationPlan, list, list[Worker]]:
        plan = self.plan(employer_id, site_id, ingestion)
        workers, terminated = self._apply_plan(employer_id, site_id, plan, shielded)
        drafts = [
            draft_from_row(change.row, workers[change.national_id].worker_id, _CHANGE_TYPES[change.action])
            for change in plan.uploaded
            if change.row is not None
        ]
        records = self.ledger.append_attempt(
            batch_id,
            drafts,
            expected_attempt=self._repository.max_attempt(batch_id),
            insurer_status=insurer_status,
        )
        return plan, records, terminated

    def _events(self, batch: Batch, plan: ReconciliationPlan, records: list, terminated: list[Worker]) -> list[ChangeEvent]:
        events = [batch_event(batch)]
        events.extend(record_events(records, "created"))
        events.extend(
            ChangeEvent("worker", change.worker.worker_id if change.worker else change.national_id, "upserted")
            for change in plan.to_update
        )
        events.extend(ChangeEvent("worker", worker.worker_id, "terminated") for worker in terminated)
        return events

    def submit_roster(
        self,
        caller: CallerContext,
        employer_id: str,
        site_id: str,
        period: str,
        content: bytes | None = None,
        filename: str | None = None,
        *,
        ingestion: IngestionResult | None = None,
        accept_partial: bool = False,
    ) -> WorkflowOutcome:
        """Reconcile an uploaded roster and open a new attempt on the period's batch.

        Either ``content`` or an already computed ``ingestion`` must be given.
        Chunked writes, the attempt append and the move to
        ``awaiting_processing`` happen in one transaction.
        """

        caller.require("submit_roster", employer_id)
        if ingestion is None:
            if content is None:
                raise WorkflowValidationError("a roster file is required")
            ingestion = self.ingest(content, filename, CLIENT_SIGNATURE)
        shielded = self._shielded(ingestion, accept_partial)

        batch = self._open_batch(employer_id, site_id, period)
        if batch.status not in SUBMISSION_STATES:
            raise InvalidTransition(
                batch.status.value,
                BatchStatus.AWAITING_PROCESSING.value,
                "the period's batch is not open for a new roster",
            )

        with self._repository.batch_lock(batch.batch_id):
            with self._repository.transaction():
                plan, records, terminated = self._write_roster(
                    batch.batch_id,
                    employer_id,
                    site_id,
                    ingestion,
                    shielded=shielded,
                    insurer_status=InsurerStatus.PENDING,
                )
                batch = self._repository.get_batch(batch.batch_id)
                if batch is None or batch.status not in SUBMISSION_STATES:
                    raise ConcurrentModification("batch changed while the roster was being written")
                batch.total_new = len(plan.to_create)
                batch.total_changed = len(plan.to_update)
                batch.total_terminated = len(terminated)
                batch.source_file = filename
                batch.rejection_reason = None
                apply_transition(batch, BatchStatus.AWAITING_PROCESSING)
                self._repository.save_batch(batch)
                outcome = self.ledger.recompute(batch.batch_id)

        logger.info(
            "roster submitted",
            extra={"batch_id": outcome.batch.batch_id, "period": period, **plan.summary()},
        )
        outcome.records = records
        outcome.events = self._events(outcome.batch, plan, records, terminated)
        outcome.details.update({"plan": plan.summary(), "ingestion": ingestion.summary})
        return outcome

    def import_approved_batch(
        self,
        caller: CallerContext,
        employer_id: str,
        site_id: str,
        period: str,
        content: bytes,
        filename: str | None = None,
        *,
        unit_price: Decimal | None = None,
    ) -> WorkflowOutcome:
        """Back-office import of a roster the insurer already approved.

        Every valid row lands as an approved first attempt and the batch is
        closed as ``finalized``, billed at ``unit_price`` per life.
        """

        caller.require("import_approved", employer_id)
        ingestion = self.ingest(content, filename, ADMIN_SIGNATURE)
        shielded = self._shielded(ingestion, accept_partial=True)
        price = Decimal(unit_price) if unit_price is not None else self._settings.default_unit_price
        if not price.is_finite() or price <= 0:
            raise WorkflowValidationError("unit price must be positive")

        batch = self._open_batch(employer_id, site_id, period)
        if batch.status is not BatchStatus.DRAFT:
            raise InvalidTransition(batch.status.value, BatchStatus.FINALIZED.value, "the period already has a batch")

        with self._repository.batch_lock(batch.batch_id):
            with self._repository.transaction():
                plan, records, terminated = self._write_roster(
                    batch.batch_id,
                    employer_id,
                    site_id,
                    ingestion,
                    shielded=shielded,
                    insurer_status=InsurerStatus.APPROVED,
                )
                self._repository.upsert_price_entry(
                    PricePlanEntry(batch_id=batch.batch_id, plan_name="default", age_band="all", unit_value=price)
                )
                batch = self._repository.get_batch(batch.batch_id)
                if batch is None or batch.status is not BatchStatus.DRAFT:
                    raise ConcurrentModification("batch changed while the roster was being imported")
                batch.total_new = len(plan.to_create)
                batch.total_changed = len(plan.to_update)
                batch.total_terminated = len(terminated)
                batch.total_value = (price * len(records)).quantize(Decimal("0.01"))
                batch.source_file = filename
                force_status(batch, BatchStatus.FINALIZED)
                self._repository.save_batch(batch)
                outcome = self.ledger.recompute(batch.batch_id)

        logger.info("approved roster imported", extra={"batch_id": outcome.batch.batch_id, "period": period})
        outcome.records = records
        outcome.events = self._events(outcome.batch, plan, records, terminated)
        outcome.events.append(ChangeEvent("price_plan_entry", f"{outcome.batch.batch_id}:default:all"))
        outcome.details.update({"plan": plan.summary(), "ingestion": ingestion.summary})
        return outcome

    # ------------------------------------------------------------------
    # workers
    # ------------------------------------------------------------------
    def list_workers(
        self,
        caller: CallerContext,
        employer_id: str,
        site_id: str | None = None,
        *,
        active_only: bool = False,
    ) -> list[Worker]:
        caller.require("read", employer_id)
        return self._repository.list_workers(employer_id, site_id, active_only=active_only)

    def edit_worker(self, caller: CallerContext, worker_id: str, edit: WorkerEdit) -> WorkflowOutcome:
        worker = self._repository.get_worker(worker_id)
        if worker is None:
            raise NotFoundError(f"worker {worker_id} not found")
        caller.require("edit_worker", worker.employer_id)

        changes: dict[str, object] = {}
        problems: list[str] = []
        checks = (
            ("name", edit.name, normalize_name),
            ("sex", edit.sex, normalize_sex),
            ("birth_date", edit.birth_date, normalize_date),
            ("salary", edit.salary, normalize_currency),
        )
        for name, raw, normalizer in checks:
            if raw is None:
                continue
            result = normalizer(raw)
            if not result.is_ok or (name == "salary" and result.value < 0):
                problems.append(name)
                continue
            changes[name] = result.value
        if problems:
            raise WorkflowValidationError(f"invalid values: {', '.join(problems)}")
        if "salary" in changes:
            changes["salary_bracket"] = self._brackets.classify(changes["salary"])
        if edit.retired is not None:
            changes["retired"] = edit.retired
        if edit.on_leave is not None:
            changes["on_leave"] = edit.on_leave

        saved = self._repository.save_worker(replace(worker, **changes))
        return WorkflowOutcome(
            events=[ChangeEvent("worker", worker_id)],
            details={"worker": saved, "changed_fields": sorted(changes)},
        )


_service = RosterService(get_repository())


def get_roster_service() -> RosterService:
    """Return the singleton roster service for the process."""

    return _service
