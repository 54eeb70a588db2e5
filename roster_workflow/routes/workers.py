from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from roster_workflow.application import WorkerEdit, get_roster_service
from roster_workflow.domain.roles import CallerContext
from roster_workflow.exporters.batch_export import to_csv_bytes, worker_export
from roster_workflow.routes.common import get_caller, publish, serialise

router = APIRouter(prefix="/workers", tags=["workers"])


@router.get("")
def list_workers(
    employer_id: str = Query(...),
    site_id: str | None = Query(default=None),
    active_only: bool = Query(default=False),
    name: str | None = Query(default=None),
    caller: CallerContext = Depends(get_caller),
) -> dict:
    service = get_roster_service()
    workers = service.list_workers(caller, employer_id, site_id, active_only=active_only)
    if name:
        keyword = name.strip().lower()
        workers = [worker for worker in workers if keyword in worker.name.lower()]
    return {"items": serialise(workers)}


@router.get("/export")
def export_workers(
    employer_id: str = Query(...),
    site_id: str | None = Query(default=None),
    caller: CallerContext = Depends(get_caller),
) -> Response:
    service = get_roster_service()
    workers = service.list_workers(caller, employer_id, site_id)
    return Response(
        content=to_csv_bytes(worker_export(workers)),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="colaboradores_{employer_id}.csv"'},
    )


@router.patch("/{worker_id}")
def edit_worker(worker_id: str, payload: WorkerEdit, caller: CallerContext = Depends(get_caller)) -> dict:
    outcome = get_roster_service().edit_worker(caller, worker_id, payload)
    return {
        "worker": serialise(outcome.details["worker"]),
        "changed_fields": outcome.details["changed_fields"],
        "events": publish(outcome.events),
    }
