from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal

from roster_workflow.application import RosterPreview, RosterService, WorkflowOutcome, get_roster_service
from roster_workflow.core.schema import CLIENT_SIGNATURE, IngestionResult
from roster_workflow.domain.errors import IngestionTimeout, WorkflowValidationError
from roster_workflow.domain.roles import CallerContext
from roster_workflow.settings import get_settings
from roster_workflow.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PipelineRequest:
    employer_id: str
    site_id: str
    filename: str | None
    content: bytes
    period: str | None = None
    accept_partial: bool = False
    unit_price: Decimal | None = None


class PipelineWorker:
    """Runs blocking ingestion off the event loop.

    Parsing is bounded by a timeout and may be abandoned; once the roster is
    being written the call runs to completion (or rolls back) in its thread.
    Writes for the same (employer, site, period) are queued one after another.
    """

    def __init__(self, service: RosterService | None = None, *, timeout: float | None = None) -> None:
        self._service = service
        self._timeout = timeout if timeout is not None else get_settings().pipeline_timeout_seconds
        self._locks: dict[tuple[str, str, str], list] = {}

    @property
    def service(self) -> RosterService:
        return self._service or get_roster_service()

    @asynccontextmanager
    async def _serialized(self, request: PipelineRequest) -> AsyncIterator[None]:
        key = (request.employer_id, request.site_id, request.period or "")
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    async def _bounded(self, func, *args, **kwargs):
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("ingestion timed out", extra={"timeout": self._timeout})
            raise IngestionTimeout(f"ingestion did not finish within {self._timeout:g}s") from exc

    async def ingest(self, request: PipelineRequest) -> IngestionResult:
        return await self._bounded(self.service.ingest, request.content, request.filename, CLIENT_SIGNATURE)

    async def preview(self, caller: CallerContext, request: PipelineRequest) -> RosterPreview:
        return await self._bounded(
            self.service.preview,
            caller,
            request.employer_id,
            request.site_id,
            request.content,
            request.filename,
        )

    async def submit(self, caller: CallerContext, request: PipelineRequest) -> WorkflowOutcome:
        if request.period is None:
            raise WorkflowValidationError("period is required to submit a roster")
        caller.require("submit_roster", request.employer_id)
        ingestion = await self.ingest(request)
        async with self._serialized(request):
            return await asyncio.to_thread(
                self.service.submit_roster,
                caller,
                request.employer_id,
                request.site_id,
                request.period,
                filename=request.filename,
                ingestion=ingestion,
                accept_partial=request.accept_partial,
            )

    async def import_approved(self, caller: CallerContext, request: PipelineRequest) -> WorkflowOutcome:
        if request.period is None:
            raise WorkflowValidationError("period is required to import a roster")
        async with self._serialized(request):
            return await asyncio.to_thread(
                self.service.import_approved_batch,
                caller,
                request.employer_id,
                request.site_id,
                request.period,
                request.content,
                request.filename,
                unit_price=request.unit_price,
            )


_worker: PipelineWorker | None = None


def get_pipeline_worker() -> PipelineWorker:
    global _worker
    if _worker is None:
        _worker = PipelineWorker()
    return _worker
