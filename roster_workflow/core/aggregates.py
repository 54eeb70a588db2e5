"""Batch totals and derived status, computed purely from attempt records."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from roster_workflow.domain.lifecycle import ADJUDICATION_STATES
from roster_workflow.domain.models import AttemptRecord, BatchStatus, ChangeType, InsurerStatus


@dataclass(frozen=True, slots=True)
class AttemptAggregate:
    attempt_number: int
    total: int = 0
    approved: int = 0
    rejected: int = 0
    pending: int = 0
    sent: int = 0

    @property
    def adjudicated(self) -> int:
        return self.approved + self.rejected

    @property
    def all_adjudicated(self) -> bool:
        return self.total > 0 and self.adjudicated == self.total


def current_attempt_number(records: Iterable[AttemptRecord]) -> int:
    return max((record.attempt_number for record in records), default=0)


def current_records(records: Iterable[AttemptRecord]) -> list[AttemptRecord]:
    items = list(records)
    current = current_attempt_number(items)
    return [record for record in items if record.attempt_number == current]


def aggregate_attempt(records: Iterable[AttemptRecord]) -> AttemptAggregate:
    current = current_records(records)
    counts = {status: 0 for status in InsurerStatus}
    for record in current:
        counts[record.insurer_status] += 1
    return AttemptAggregate(
        attempt_number=current[0].attempt_number if current else 0,
        total=len(current),
        approved=counts[InsurerStatus.APPROVED],
        rejected=counts[InsurerStatus.REJECTED],
        pending=counts[InsurerStatus.PENDING],
        sent=counts[InsurerStatus.SENT],
    )


def derive_status(current_status: BatchStatus, aggregate: AttemptAggregate) -> BatchStatus:
    """Status implied by the current attempt; unchanged until everything is adjudicated."""

    if current_status not in ADJUDICATION_STATES or not aggregate.all_adjudicated:
        return current_status
    if aggregate.rejected:
        return BatchStatus.AWAITING_CORRECTION
    return BatchStatus.AWAITING_FINALIZATION


def effective_records(records: Iterable[AttemptRecord]) -> list[AttemptRecord]:
    """Latest record per national ID.

    Correction rounds only carry the rejected cohort, every other attempt
    restates the whole roster, so lives are taken from the latest full attempt
    onward.
    """

    items = list(records)
    base = max(
        (record.attempt_number for record in items if record.change_type is not ChangeType.CORRECTION),
        default=0,
    )
    latest: dict[str, AttemptRecord] = {}
    for record in items:
        if record.attempt_number < base:
            continue
        known = latest.get(record.national_id)
        if known is None or record.attempt_number > known.attempt_number:
            latest[record.national_id] = record
    return sorted(latest.values(), key=lambda record: record.national_id)


def billable_lives(records: Iterable[AttemptRecord]) -> int:
    return sum(1 for record in effective_records(records) if record.insurer_status is InsurerStatus.APPROVED)


def billed_amount(records: Iterable[AttemptRecord], unit_price: Decimal) -> Decimal:
    return (unit_price * billable_lives(records)).quantize(Decimal("0.01"))
