import sys
import threading
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from roster_workflow.application import AttemptLedger, BatchService, RosterService, WorkerCorrection
from roster_workflow.application.ledger import draft_from_row
from roster_workflow.core.schema import ValidatedWorker
from roster_workflow.domain import (
    SYSTEM_CONTEXT,
    BatchStatus,
    ChangeType,
    ConcurrentModification,
    InsurerStatus,
    StorageError,
)
from roster_workflow.infrastructure import InMemoryRosterRepository
from roster_workflow.settings import Settings

ANA = ["Ana Silva", "Feminino", "123.456.789-09", "15/03/1990", "3.500,00"]
BRUNO = ["Bruno Souza", "Masculino", "987.654.321-00", "01/01/1985", "2.000,00"]


def _drafts():
    rows = [
        ValidatedWorker(line_number=2, national_id="12345678909", name="Ana Silva", salary=Decimal("3500.00")),
        ValidatedWorker(line_number=3, national_id="98765432100", name="Bruno Souza", salary=Decimal("2000.00")),
    ]
    return [draft_from_row(row, None, ChangeType.NEW) for row in rows]


@pytest.fixture()
def repository():
    return InMemoryRosterRepository(lock_timeout=2.0)


@pytest.fixture()
def ledger(repository):
    return AttemptLedger(repository)


def test_attempt_numbers_increase_and_are_never_reused(repository, ledger):
    batch = repository.create_batch("emp-1", "obra-1", "2024-01")

    first = ledger.append_attempt(batch.batch_id, _drafts(), expected_attempt=0)
    assert {record.attempt_number for record in first} == {1}

    with pytest.raises(ConcurrentModification):
        ledger.append_attempt(batch.batch_id, _drafts(), expected_attempt=0)

    second = ledger.append_attempt(batch.batch_id, _drafts(), expected_attempt=1)
    assert {record.attempt_number for record in second} == {2}
    assert ledger.current_attempt(batch.batch_id) == 2

    record_ids = [record.record_id for record in ledger.history(batch.batch_id)]
    assert len(record_ids) == len(set(record_ids)) == 4


def test_concurrent_appends_admit_exactly_one_writer(repository, ledger):
    batch = repository.create_batch("emp-1", "obra-1", "2024-01")
    barrier = threading.Barrier(2)
    results: list[object] = []
    guard = threading.Lock()

    def writer():
        barrier.wait()
        try:
            outcome = ledger.append_attempt(batch.batch_id, _drafts(), expected_attempt=0)
        except ConcurrentModification as exc:
            outcome = exc
        with guard:
            results.append(outcome)

    threads = [threading.Thread(target=writer) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    errors = [item for item in results if isinstance(item, ConcurrentModification)]
    written = [item for item in results if isinstance(item, list)]
    assert len(errors) == 1
    assert len(written) == 1
    assert ledger.current_attempt(batch.batch_id) == 1
    assert len(ledger.history(batch.batch_id)) == 2


def test_interleaved_corrections_on_the_same_attempt(repository, roster_file):
    rosters = RosterService(repository)
    batches = BatchService(repository, ledger=rosters.ledger)
    batch_id = rosters.submit_roster(
        SYSTEM_CONTEXT, "emp-1", "obra-1", "2024-01", roster_file(ANA, BRUNO), "jan.xlsx"
    ).batch.batch_id
    batches.mark_ready(SYSTEM_CONTEXT, batch_id)
    batches.quote(SYSTEM_CONTEXT, batch_id, Decimal("50"))
    batches.employer_decision(SYSTEM_CONTEXT, batch_id, approve=True)
    batches.send_to_insurer(SYSTEM_CONTEXT, batch_id)
    batches.process_insurer_return(SYSTEM_CONTEXT, batch_id, {"98765432100": "salário"})

    based_on = batches.ledger.current_attempt(batch_id)
    fix = [WorkerCorrection(national_id="98765432100", salary="2.100,00")]
    batches.submit_corrections(SYSTEM_CONTEXT, batch_id, fix, expected_attempt=based_on)
    with pytest.raises(ConcurrentModification):
        batches.submit_corrections(SYSTEM_CONTEXT, batch_id, fix, expected_attempt=based_on)

    assert batches.ledger.current_attempt(batch_id) == 2
    assert batches.get_batch(SYSTEM_CONTEXT, batch_id).status is BatchStatus.AWAITING_PROCESSING


def test_recompute_is_idempotent(repository, roster_file):
    rosters = RosterService(repository)
    batch_id = rosters.submit_roster(
        SYSTEM_CONTEXT, "emp-1", "obra-1", "2024-01", roster_file(ANA, BRUNO), "jan.xlsx"
    ).batch.batch_id
    version = repository.get_batch(batch_id).version

    first = rosters.ledger.recompute(batch_id)
    second = rosters.ledger.recompute(batch_id)

    assert first.events == second.events == []
    assert repository.get_batch(batch_id).version == version
    assert second.batch.total_workers == 2


def test_recompute_follows_records(repository, ledger):
    batch = repository.create_batch("emp-1", "obra-1", "2024-01")
    stored = repository.get_batch(batch.batch_id)
    stored.status = BatchStatus.SUBMITTED_TO_INSURER
    repository.save_batch(stored)
    records = ledger.append_attempt(batch.batch_id, _drafts(), expected_attempt=0, insurer_status=InsurerStatus.SENT)

    rejected = [records[0]]
    rejected[0].insurer_status = InsurerStatus.REJECTED
    rejected[0].rejection_reason = "CPF"
    approved = records[1]
    approved.insurer_status = InsurerStatus.APPROVED
    repository.save_attempts([*rejected, approved])

    outcome = ledger.recompute(batch.batch_id)
    assert outcome.batch.status is BatchStatus.AWAITING_CORRECTION
    assert (outcome.batch.total_approved, outcome.batch.total_rejected) == (1, 1)


def test_failed_chunk_rolls_back_every_write(repository, roster_file, monkeypatch):
    rosters = RosterService(repository, settings=Settings(reconcile_chunk_size=1))
    original = repository.upsert_workers
    calls: list[int] = []

    def flaky_upsert(employer_id, site_id, rows):
        calls.append(len(rows))
        if len(calls) == 2:
            raise StorageError("connection reset", retryable=True)
        return original(employer_id, site_id, rows)

    monkeypatch.setattr(repository, "upsert_workers", flaky_upsert)

    with pytest.raises(StorageError):
        rosters.submit_roster(SYSTEM_CONTEXT, "emp-1", "obra-1", "2024-01", roster_file(ANA, BRUNO), "jan.xlsx")

    assert calls == [1, 1]
    batch = repository.find_batch("emp-1", "obra-1", "2024-01")
    assert batch.status is BatchStatus.DRAFT
    assert repository.list_workers("emp-1") == []
    assert repository.max_attempt(batch.batch_id) == 0


def test_transaction_restores_snapshot(repository):
    with pytest.raises(RuntimeError):
        with repository.transaction():
            repository.create_batch("emp-1", "obra-1", "2024-01")
            raise RuntimeError("boom")
    assert repository.list_batches() == []


def test_stale_batch_save_is_refused(repository):
    batch = repository.create_batch("emp-1", "obra-1", "2024-01")
    first = repository.get_batch(batch.batch_id)
    second = repository.get_batch(batch.batch_id)

    first.notes = "first"
    repository.save_batch(first)
    second.notes = "second"
    with pytest.raises(ConcurrentModification):
        repository.save_batch(second)
    assert repository.get_batch(batch.batch_id).notes == "first"


def test_batch_lock_times_out(repository):
    errors: list[Exception] = []

    def contender():
        try:
            with repository.batch_lock("bat-000001", timeout=0.05):
                pass
        except ConcurrentModification as exc:
            errors.append(exc)

    with repository.batch_lock("bat-000001"):
        thread = threading.Thread(target=contender)
        thread.start()
        thread.join(timeout=5)

    assert len(errors) == 1
    assert repository._batch_locks == {}


def test_batch_lock_entries_are_dropped_when_idle(repository):
    with repository.batch_lock("bat-000001"):
        with repository.batch_lock("bat-000001"):
            assert list(repository._batch_locks) == ["bat-000001"]
        assert list(repository._batch_locks) == ["bat-000001"]
    assert repository._batch_locks == {}


def test_reads_do_not_snapshot_the_store(repository, ledger, monkeypatch):
    batch = repository.create_batch("emp-1", "obra-1", "2024-01")
    ledger.append_attempt(batch.batch_id, _drafts(), expected_attempt=0)

    def refuse():
        raise AssertionError("store copied for a read")

    monkeypatch.setattr(repository, "_snapshot", refuse)
    assert len(ledger.current_records(batch.batch_id)) == 2
    assert len(ledger.history(batch.batch_id)) == 2


def test_rollback_restores_updated_workers(repository):
    row = ValidatedWorker(line_number=2, national_id="12345678909", name="Ana Silva", salary=Decimal("3500.00"))
    repository.upsert_workers("emp-1", "obra-1", [row])

    with pytest.raises(RuntimeError):
        with repository.transaction():
            repository.upsert_workers("emp-1", "obra-2", [row.model_copy(update={"name": "Ana Souza"})])
            repository.terminate_workers([worker.worker_id for worker in repository.list_workers("emp-1")])
            raise RuntimeError("boom")

    (worker,) = repository.list_workers("emp-1")
    assert (worker.name, worker.site_id, worker.is_active) == ("Ana Silva", "obra-1", True)
