"""Batch state machine.

The table below is the single source of truth for legal status changes.  The
application layer applies guards on top of it (for example, a correction round
may skip pricing, a first attempt may not).
"""
from __future__ import annotations

from datetime import datetime

from .errors import InvalidTransition
from .models import Batch, BatchStatus, utcnow

S = BatchStatus

TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    S.DRAFT: frozenset({S.AWAITING_PROCESSING}),
    S.AWAITING_PROCESSING: frozenset({S.PENDING_QUOTE, S.SUBMITTED_TO_INSURER}),
    S.PENDING_QUOTE: frozenset({S.QUOTED}),
    S.QUOTED: frozenset({S.EMPLOYER_APPROVED, S.EMPLOYER_REJECTED}),
    S.EMPLOYER_REJECTED: frozenset({S.AWAITING_PROCESSING}),
    S.EMPLOYER_APPROVED: frozenset({S.SUBMITTED_TO_INSURER}),
    S.SUBMITTED_TO_INSURER: frozenset({S.AWAITING_CORRECTION, S.AWAITING_FINALIZATION}),
    S.AWAITING_CORRECTION: frozenset({S.AWAITING_PROCESSING, S.SUBMITTED_TO_INSURER, S.AWAITING_FINALIZATION}),
    S.AWAITING_FINALIZATION: frozenset({S.FINALIZED, S.AWAITING_CORRECTION}),
    S.FINALIZED: frozenset({S.INVOICED}),
    S.INVOICED: frozenset(),
}

TERMINAL_STATES = frozenset({S.FINALIZED, S.INVOICED})

# statuses in which the insurer may still (re)adjudicate current-attempt records
ADJUDICATION_STATES = frozenset({S.SUBMITTED_TO_INSURER, S.AWAITING_CORRECTION, S.AWAITING_FINALIZATION})

# statuses from which the submitter may upload a roster for the period
SUBMISSION_STATES = frozenset({S.DRAFT, S.EMPLOYER_REJECTED})

# statuses in which the back office may still add, change or drop lives
AMENDABLE_STATES = frozenset({S.AWAITING_FINALIZATION, S.FINALIZED})


def can_transition(current: BatchStatus, target: BatchStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: BatchStatus, target: BatchStatus, detail: str | None = None) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value, detail)


def apply_transition(batch: Batch, target: BatchStatus, *, at: datetime | None = None) -> Batch:
    """Move ``batch`` to ``target`` in place, stamping the transition time."""

    ensure_transition(batch.status, target)
    moment = at or utcnow()
    batch.status = target
    batch.status_history[target.value] = moment
    batch.updated_at = moment
    return batch


def force_status(batch: Batch, target: BatchStatus, *, at: datetime | None = None) -> Batch:
    """Administrative override that bypasses the transition table."""

    moment = at or utcnow()
    batch.status = target
    batch.status_history[target.value] = moment
    batch.updated_at = moment
    return batch
