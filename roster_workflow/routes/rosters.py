from __future__ import annotations

import asyncio
from decimal import Decimal, InvalidOperation
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import Response

from roster_workflow.core.schema import IngestionResult, RowError
from roster_workflow.domain.roles import CallerContext
from roster_workflow.exporters.batch_export import roster_template, to_csv_bytes, to_xlsx_bytes
from roster_workflow.routes.batches import XLSX_MEDIA_TYPE
from roster_workflow.routes.common import get_caller, publish, serialise
from roster_workflow.settings import get_settings
from roster_workflow.workers.pipeline import PipelineRequest, get_pipeline_worker

router = APIRouter(prefix="/rosters", tags=["rosters"])


async def _read_upload(upload: UploadFile) -> tuple[str, bytes]:
    """Read at most one byte past the cap so oversized files fail fast."""

    try:
        if not upload.filename:
            raise HTTPException(status_code=400, detail="Uploaded file must have a filename")
        limit = get_settings().max_upload_bytes
        content = await upload.read(limit + 1)
        return Path(upload.filename).name, content
    finally:
        await upload.close()


def _ingestion_payload(result: IngestionResult) -> dict:
    return {
        "summary": serialise(result.summary),
        "rows": [
            {"valid": not isinstance(row, RowError), **serialise(row)} for row in result.rows
        ],
    }


@router.post("/preview")
async def preview_roster(
    employer_id: str = Form(...),
    site_id: str = Form(...),
    file: UploadFile = File(...),
    caller: CallerContext = Depends(get_caller),
) -> dict:
    """Parse and reconcile an upload without writing anything."""
    filename, content = await _read_upload(file)
    worker = get_pipeline_worker()
    preview = await worker.preview(
        caller,
        PipelineRequest(employer_id=employer_id, site_id=site_id, filename=filename, content=content),
    )
    plan = preview.plan
    return {
        "ingestion": _ingestion_payload(preview.ingestion),
        "summary": preview.summary(),
        "changes": {
            "create": [change.national_id for change in plan.to_create],
            "update": [
                {"national_id": change.national_id, "fields": change.changed_fields, "details": change.details}
                for change in plan.to_update
            ],
            "terminate": [change.national_id for change in plan.to_terminate],
        },
    }


@router.post("/submit")
async def submit_roster(
    employer_id: str = Form(...),
    site_id: str = Form(...),
    period: str = Form(..., pattern=r"^\d{4}-\d{2}$"),
    accept_partial: bool = Form(default=False),
    file: UploadFile = File(...),
    caller: CallerContext = Depends(get_caller),
) -> dict:
    filename, content = await _read_upload(file)
    worker = get_pipeline_worker()
    outcome = await worker.submit(
        caller,
        PipelineRequest(
            employer_id=employer_id,
            site_id=site_id,
            period=period,
            filename=filename,
            content=content,
            accept_partial=accept_partial,
        ),
    )
    return {
        "batch": serialise(outcome.batch),
        "details": serialise(outcome.details),
        "events": await asyncio.to_thread(publish, outcome.events),
    }


@router.post("/import-approved")
async def import_approved_roster(
    employer_id: str = Form(...),
    site_id: str = Form(...),
    period: str = Form(..., pattern=r"^\d{4}-\d{2}$"),
    unit_price: str | None = Form(default=None),
    file: UploadFile = File(...),
    caller: CallerContext = Depends(get_caller),
) -> dict:
    price: Decimal | None = None
    if unit_price:
        try:
            price = Decimal(unit_price)
        except InvalidOperation:
            raise HTTPException(status_code=400, detail="unit_price must be a number") from None
    filename, content = await _read_upload(file)
    worker = get_pipeline_worker()
    outcome = await worker.import_approved(
        caller,
        PipelineRequest(
            employer_id=employer_id,
            site_id=site_id,
            period=period,
            filename=filename,
            content=content,
            unit_price=price,
        ),
    )
    return {
        "batch": serialise(outcome.batch),
        "details": serialise(outcome.details),
        "events": await asyncio.to_thread(publish, outcome.events),
    }


@router.get("/template")
def download_template(fmt: str = Query(default="xlsx", alias="format")) -> Response:
    export = roster_template()
    if fmt == "csv":
        return Response(
            content=to_csv_bytes(export),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="modelo_colaboradores.csv"'},
        )
    return Response(
        content=to_xlsx_bytes(export),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="modelo_colaboradores.xlsx"'},
    )
