"""Diff an uploaded roster against the authoritative one.

The upload is always complete truth for its (employer, site): anyone active
there but missing from the file is terminated, never deleted.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Iterable, Mapping

from roster_workflow.core.schema import ValidatedWorker
from roster_workflow.domain.models import Worker

SALARY_TOLERANCE = Decimal("0.01")
TRACKED_FIELDS: tuple[str, ...] = ("name", "sex", "birth_date", "salary")


class ReconcileAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    UNCHANGED = "unchanged"
    TERMINATE = "terminate"


@dataclass(slots=True)
class WorkerChange:
    action: ReconcileAction
    national_id: str
    row: ValidatedWorker | None = None
    worker: Worker | None = None
    changed_fields: list[str] = field(default_factory=list)
    details: list[str] = field(default_factory=list)

    def describe(self) -> str:
        if self.action is ReconcileAction.UPDATE and self.details:
            return "; ".join(self.details)
        return self.action.value


@dataclass(slots=True)
class ReconciliationPlan:
    to_create: list[WorkerChange] = field(default_factory=list)
    to_update: list[WorkerChange] = field(default_factory=list)
    unchanged: list[WorkerChange] = field(default_factory=list)
    to_terminate: list[WorkerChange] = field(default_factory=list)

    @property
    def to_upsert(self) -> list[WorkerChange]:
        return [*self.to_create, *self.to_update]

    @property
    def uploaded(self) -> list[WorkerChange]:
        """Every uploaded row in file order, whatever its action."""

        changes = [*self.to_create, *self.to_update, *self.unchanged]
        return sorted(changes, key=lambda change: change.row.line_number if change.row else 0)

    def summary(self) -> dict[str, int]:
        return {
            "created": len(self.to_create),
            "updated": len(self.to_update),
            "unchanged": len(self.unchanged),
            "terminated": len(self.to_terminate),
        }


def _render(value: object) -> str:
    if value is None:
        return "-"
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _differs(field_name: str, current: object, incoming: object) -> bool:
    if incoming is None:
        # column not supplied by this upload
        return False
    if field_name == "salary" and current is not None:
        return abs(Decimal(current) - Decimal(incoming)) > SALARY_TOLERANCE
    return current != incoming


class RosterReconciler:
    """Compute create / update / unchanged / terminate sets for one upload."""

    def __init__(self, tracked_fields: Iterable[str] = TRACKED_FIELDS) -> None:
        self.tracked_fields = tuple(tracked_fields)

    def compare(self, worker: Worker, row: ValidatedWorker, site_id: str | None = None) -> WorkerChange:
        changed: list[str] = []
        details: list[str] = []
        if not worker.is_active:
            changed.append("status")
            details.append(f"status: {worker.status.value} -> active")
        if site_id is not None and worker.site_id != site_id:
            changed.append("site_id")
            details.append(f"site_id: {worker.site_id} -> {site_id}")
        for name in self.tracked_fields:
            current = getattr(worker, name)
            incoming = getattr(row, name)
            if _differs(name, current, incoming):
                changed.append(name)
                details.append(f"{name}: {_render(current)} -> {_render(incoming)}")
        action = ReconcileAction.UPDATE if changed else ReconcileAction.UNCHANGED
        return WorkerChange(
            action=action,
            national_id=row.national_id,
            row=row,
            worker=worker,
            changed_fields=changed,
            details=details,
        )

    def reconcile(
        self,
        active_workers: Iterable[Worker],
        rows: Iterable[ValidatedWorker],
        *,
        site_id: str | None = None,
        known_workers: Mapping[str, Worker] | None = None,
    ) -> ReconciliationPlan:
        """Diff ``rows`` against ``active_workers``.

        ``known_workers`` may add workers outside the active set (terminated or
        assigned to another site) keyed by national ID, so that an upload
        reactivates or moves them instead of creating a second record.
        """

        active = {worker.national_id: worker for worker in active_workers if worker.is_active}
        lookup: dict[str, Worker] = dict(known_workers or {})
        lookup.update(active)

        plan = ReconciliationPlan()
        uploaded: set[str] = set()
        for row in rows:
            uploaded.add(row.national_id)
            existing = lookup.get(row.national_id)
            if existing is None:
                plan.to_create.append(
                    WorkerChange(
                        action=ReconcileAction.CREATE,
                        national_id=row.national_id,
                        row=row,
                        changed_fields=list(self.tracked_fields),
                    )
                )
                continue
            change = self.compare(existing, row, site_id)
            if change.action is ReconcileAction.UPDATE:
                plan.to_update.append(change)
            else:
                plan.unchanged.append(change)

        for national_id in sorted(active):
            if national_id in uploaded:
                continue
            plan.to_terminate.append(
                WorkerChange(
                    action=ReconcileAction.TERMINATE,
                    national_id=national_id,
                    worker=active[national_id],
                    changed_fields=["status"],
                )
            )
        return plan
