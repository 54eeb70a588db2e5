"""Persistence for workers, batches, attempt records and price entries."""
from __future__ import annotations

import copy
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import ContextManager, Protocol

from roster_workflow.core.schema import ValidatedWorker
from roster_workflow.domain.errors import ConcurrentModification, NotFoundError, ReferentialIntegrityError
from roster_workflow.domain.models import (
    AttemptRecord,
    Batch,
    BatchStatus,
    PricePlanEntry,
    Worker,
    WorkerStatus,
    utcnow,
)
from roster_workflow.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class _BatchLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    holders: int = 0


class RosterRepository(Protocol):
    """Storage contract used by the workflow services."""

    def transaction(self) -> ContextManager[None]: ...

    def read(self) -> ContextManager[None]: ...

    def batch_lock(self, batch_id: str, timeout: float | None = None) -> ContextManager[None]: ...

    def get_worker(self, worker_id: str) -> Worker | None: ...

    def find_worker(self, employer_id: str, national_id: str) -> Worker | None: ...

    def list_workers(
        self,
        employer_id: str | None = None,
        site_id: str | None = None,
        *,
        active_only: bool = False,
    ) -> list[Worker]: ...

    def upsert_workers(self, employer_id: str, site_id: str, rows: Sequence[ValidatedWorker]) -> list[Worker]: ...

    def terminate_workers(self, worker_ids: Sequence[str]) -> int: ...

    def save_worker(self, worker: Worker) -> Worker: ...

    def create_batch(self, employer_id: str, site_id: str, period: str) -> Batch: ...

    def get_batch(self, batch_id: str) -> Batch | None: ...

    def find_batch(self, employer_id: str, site_id: str, period: str) -> Batch | None: ...

    def list_batches(self, employer_id: str | None = None, status: BatchStatus | None = None) -> list[Batch]: ...

    def save_batch(self, batch: Batch) -> Batch: ...

    def delete_batch(self, batch_id: str, *, cascade: bool = False) -> None: ...

    def list_attempts(self, batch_id: str, attempt_number: int | None = None) -> list[AttemptRecord]: ...

    def max_attempt(self, batch_id: str) -> int: ...

    def insert_attempts(self, records: Sequence[AttemptRecord]) -> list[AttemptRecord]: ...

    def save_attempts(self, records: Sequence[AttemptRecord]) -> list[AttemptRecord]: ...

    def next_record_id(self) -> str: ...

    def upsert_price_entry(self, entry: PricePlanEntry) -> PricePlanEntry: ...

    def list_price_entries(self, batch_id: str) -> list[PricePlanEntry]: ...

    def reset(self) -> None: ...


class InMemoryRosterRepository:
    """Thread-safe in-memory repository for development and tests.

    Every public call runs under one re-entrant lock. ``transaction()`` holds
    that lock for the whole block and restores a snapshot of the store when the
    block raises, so multi-row writes are all-or-nothing. ``read()`` holds the
    lock without taking a snapshot.

    Stored entities are never mutated in place; writes swap in new objects.
    The snapshot therefore only copies the index dictionaries.
    """

    def __init__(self, lock_timeout: float = 10.0) -> None:
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()
        self._batch_locks: dict[str, _BatchLock] = {}
        self._batch_locks_guard = threading.Lock()
        self._tx_depth = 0
        self._clear()

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    def _clear(self) -> None:
        self._workers: dict[str, Worker] = {}
        self._worker_keys: dict[tuple[str, str], str] = {}
        self._batches: dict[str, Batch] = {}
        self._attempts: dict[str, AttemptRecord] = {}
        self._attempt_keys: dict[tuple[str, str, int], str] = {}
        self._prices: dict[tuple[str, str, str], PricePlanEntry] = {}
        self._counters: dict[str, int] = {"wrk": 0, "bat": 0, "att": 0}

    def _state(self) -> dict[str, object]:
        return {
            "workers": self._workers,
            "worker_keys": self._worker_keys,
            "batches": self._batches,
            "attempts": self._attempts,
            "attempt_keys": self._attempt_keys,
            "prices": self._prices,
            "counters": self._counters,
        }

    def _snapshot(self) -> dict[str, object]:
        return {name: dict(index) for name, index in self._state().items()}  # type: ignore[call-overload]

    def _restore(self, snapshot: dict[str, object]) -> None:
        self._workers = snapshot["workers"]  # type: ignore[assignment]
        self._worker_keys = snapshot["worker_keys"]  # type: ignore[assignment]
        self._batches = snapshot["batches"]  # type: ignore[assignment]
        self._attempts = snapshot["attempts"]  # type: ignore[assignment]
        self._attempt_keys = snapshot["attempt_keys"]  # type: ignore[assignment]
        self._prices = snapshot["prices"]  # type: ignore[assignment]
        self._counters = snapshot["counters"]  # type: ignore[assignment]

    def _next_id(self, prefix: str) -> str:
        self._counters[prefix] += 1
        return f"{prefix}-{self._counters[prefix]:06d}"

    # ------------------------------------------------------------------
    # transactions and locks
    # ------------------------------------------------------------------
    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            outermost = self._tx_depth == 0
            snapshot = self._snapshot() if outermost else None
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                if outermost and snapshot is not None:
                    self._restore(snapshot)
                    logger.warning("transaction rolled back")
                raise
            finally:
                self._tx_depth -= 1

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._lock:
            yield

    @contextmanager
    def batch_lock(self, batch_id: str, timeout: float | None = None) -> Iterator[None]:
        with self._batch_locks_guard:
            entry = self._batch_locks.get(batch_id)
            if entry is None:
                entry = self._batch_locks[batch_id] = _BatchLock()
            entry.holders += 1
        try:
            wait = self.lock_timeout if timeout is None else timeout
            if not entry.lock.acquire(timeout=wait):
                raise ConcurrentModification(f"batch {batch_id} is locked by another writer")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._batch_locks_guard:
                entry.holders -= 1
                # holders counts waiters too, so nobody can still be queued on it
                if entry.holders == 0 and self._batch_locks.get(batch_id) is entry:
                    del self._batch_locks[batch_id]

    # ------------------------------------------------------------------
    # workers
    # ------------------------------------------------------------------
    def get_worker(self, worker_id: str) -> Worker | None:
        with self._lock:
            worker = self._workers.get(worker_id)
            return replace(worker) if worker else None

    def find_worker(self, employer_id: str, national_id: str) -> Worker | None:
        with self._lock:
            worker_id = self._worker_keys.get((employer_id, national_id))
            return replace(self._workers[worker_id]) if worker_id else None

    def list_workers(
        self,
        employer_id: str | None = None,
        site_id: str | None = None,
        *,
        active_only: bool = False,
    ) -> list[Worker]:
        with self._lock:
            workers = [
                replace(worker)
                for worker in self._workers.values()
                if (employer_id is None or worker.employer_id == employer_id)
                and (site_id is None or worker.site_id == site_id)
                and (not active_only or worker.is_active)
            ]
        workers.sort(key=lambda item: (item.name, item.national_id))
        return workers

    def upsert_workers(self, employer_id: str, site_id: str, rows: Sequence[ValidatedWorker]) -> list[Worker]:
        saved: list[Worker] = []
        with self._lock:
            now = utcnow()
            for row in rows:
                key = (employer_id, row.national_id)
                worker_id = self._worker_keys.get(key)
                if worker_id is None:
                    worker = Worker(
                        worker_id=self._next_id("wrk"),
                        employer_id=employer_id,
                        site_id=site_id,
                        national_id=row.national_id,
                        name=row.name,
                        sex=row.sex,
                        birth_date=row.birth_date,
                        salary=row.salary,
                        salary_bracket=row.salary_bracket,
                        retired=row.retired,
                        on_leave=row.on_leave,
                        created_at=now,
                        updated_at=now,
                    )
                    self._workers[worker.worker_id] = worker
                    self._worker_keys[key] = worker.worker_id
                else:
                    worker = replace(self._workers[worker_id], site_id=site_id, name=row.name)
                    if row.sex is not None:
                        worker.sex = row.sex
                    if row.birth_date is not None:
                        worker.birth_date = row.birth_date
                    if row.salary is not None:
                        worker.salary = row.salary
                        worker.salary_bracket = row.salary_bracket
                    worker.retired = row.retired
                    worker.on_leave = row.on_leave
                    worker.status = WorkerStatus.ACTIVE
                    worker.updated_at = now
                    self._workers[worker_id] = worker
                saved.append(replace(worker))
        return saved

    def terminate_workers(self, worker_ids: Sequence[str]) -> int:
        count = 0
        with self._lock:
            now = utcnow()
            for worker_id in worker_ids:
                worker = self._workers.get(worker_id)
                if worker is None:
                    raise NotFoundError(f"worker {worker_id} not found")
                if worker.status is WorkerStatus.TERMINATED:
                    continue
                self._workers[worker_id] = replace(worker, status=WorkerStatus.TERMINATED, updated_at=now)
                count += 1
        return count

    def save_worker(self, worker: Worker) -> Worker:
        with self._lock:
            if worker.worker_id not in self._workers:
                raise NotFoundError(f"worker {worker.worker_id} not found")
            stored = replace(worker, updated_at=utcnow())
            self._workers[worker.worker_id] = stored
            return replace(stored)

    # ------------------------------------------------------------------
    # batches
    # ------------------------------------------------------------------
    def create_batch(self, employer_id: str, site_id: str, period: str) -> Batch:
        with self._lock:
            if self._find_batch_id(employer_id, site_id, period) is not None:
                raise ConcurrentModification(f"batch for {employer_id}/{site_id}/{period} already exists")
            now = utcnow()
            batch = Batch(
                batch_id=self._next_id("bat"),
                employer_id=employer_id,
                site_id=site_id,
                period=period,
                status_history={BatchStatus.DRAFT.value: now},
                created_at=now,
                updated_at=now,
            )
            self._batches[batch.batch_id] = batch
            return copy.deepcopy(batch)

    def _find_batch_id(self, employer_id: str, site_id: str, period: str) -> str | None:
        for batch in self._batches.values():
            if batch.employer_id == employer_id and batch.site_id == site_id and batch.period == period:
                return batch.batch_id
        return None

    def get_batch(self, batch_id: str) -> Batch | None:
        with self._lock:
            batch = self._batches.get(batch_id)
            return copy.deepcopy(batch) if batch else None

    def find_batch(self, employer_id: str, site_id: str, period: str) -> Batch | None:
        with self._lock:
            batch_id = self._find_batch_id(employer_id, site_id, period)
            return copy.deepcopy(self._batches[batch_id]) if batch_id else None

    def list_batches(self, employer_id: str | None = None, status: BatchStatus | None = None) -> list[Batch]:
        with self._lock:
            batches = [
                copy.deepcopy(batch)
                for batch in self._batches.values()
                if (employer_id is None or batch.employer_id == employer_id)
                and (status is None or batch.status is status)
            ]
        batches.sort(key=lambda item: (item.period, item.batch_id), reverse=True)
        return batches

    def save_batch(self, batch: Batch) -> Batch:
        """Persist ``batch`` if nobody saved it since it was read."""

        with self._lock:
            stored = self._batches.get(batch.batch_id)
            if stored is None:
                raise NotFoundError(f"batch {batch.batch_id} not found")
            if stored.version != batch.version:
                raise ConcurrentModification(
                    f"batch {batch.batch_id} changed (version {stored.version}, expected {batch.version})"
                )
            updated = copy.deepcopy(batch)
            updated.version = stored.version + 1
            self._batches[batch.batch_id] = updated
            return copy.deepcopy(updated)

    def delete_batch(self, batch_id: str, *, cascade: bool = False) -> None:
        with self._lock:
            if batch_id not in self._batches:
                raise NotFoundError(f"batch {batch_id} not found")
            children = [record_id for record_id, record in self._attempts.items() if record.batch_id == batch_id]
            if children and not cascade:
                raise ReferentialIntegrityError(
                    f"batch {batch_id} has {len(children)} attempt records; pass cascade to delete them"
                )
            for record_id in children:
                record = self._attempts.pop(record_id)
                self._attempt_keys.pop(record.key, None)
            for key in [key for key in self._prices if key[0] == batch_id]:
                del self._prices[key]
            del self._batches[batch_id]

    # ------------------------------------------------------------------
    # attempt records
    # ------------------------------------------------------------------
    def list_attempts(self, batch_id: str, attempt_number: int | None = None) -> list[AttemptRecord]:
        with self._lock:
            records = [
                replace(record)
                for record in self._attempts.values()
                if record.batch_id == batch_id and (attempt_number is None or record.attempt_number == attempt_number)
            ]
        records.sort(key=lambda item: (item.attempt_number, item.name, item.national_id))
        return records

    def max_attempt(self, batch_id: str) -> int:
        with self._lock:
            return max(
                (record.attempt_number for record in self._attempts.values() if record.batch_id == batch_id),
                default=0,
            )

    def next_record_id(self) -> str:
        with self._lock:
            return self._next_id("att")

    def insert_attempts(self, records: Sequence[AttemptRecord]) -> list[AttemptRecord]:
        with self._lock:
            keys = [record.key for record in records]
            if len(set(keys)) != len(keys):
                raise ConcurrentModification("duplicate attempt records in one write")
            for key in keys:
                if key in self._attempt_keys:
                    raise ConcurrentModification(f"attempt {key[2]} already recorded for {key[1]} in {key[0]}")
            for record in records:
                stored = replace(record)
                self._attempts[stored.record_id] = stored
                self._attempt_keys[stored.key] = stored.record_id
            return [replace(record) for record in records]

    def save_attempts(self, records: Sequence[AttemptRecord]) -> list[AttemptRecord]:
        with self._lock:
            for record in records:
                if record.record_id not in self._attempts:
                    raise NotFoundError(f"attempt record {record.record_id} not found")
            for record in records:
                self._attempts[record.record_id] = replace(record)
            return [replace(record) for record in records]

    # ------------------------------------------------------------------
    # price plan entries
    # ------------------------------------------------------------------
    def upsert_price_entry(self, entry: PricePlanEntry) -> PricePlanEntry:
        with self._lock:
            key = (entry.batch_id, entry.plan_name, entry.age_band)
            existing = self._prices.get(key)
            stored = replace(entry, created_at=existing.created_at if existing else entry.created_at, updated_at=utcnow())
            self._prices[key] = stored
            return replace(stored)

    def list_price_entries(self, batch_id: str) -> list[PricePlanEntry]:
        with self._lock:
            return [replace(entry) for key, entry in self._prices.items() if key[0] == batch_id]

    def reset(self) -> None:
        with self._lock:
            self._clear()
            self._tx_depth = 0
        with self._batch_locks_guard:
            self._batch_locks.clear()
