from __future__ import annotations

from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import ValidationError

from roster_workflow.application import Decision, WorkerCorrection, WorkflowOutcome, get_batch_service
from roster_workflow.domain.models import BatchStatus, InsurerStatus
from roster_workflow.domain.roles import CallerContext
from roster_workflow.exporters.batch_export import to_csv_bytes, to_xlsx_bytes
from roster_workflow.routes.common import get_caller, publish, require_flag, require_text, serialise

router = APIRouter(prefix="/batches", tags=["batches"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _respond(outcome: WorkflowOutcome) -> dict:
    return {
        "batch": serialise(outcome.batch) if outcome.batch else None,
        "records": serialise(outcome.records),
        "details": serialise(outcome.details),
        "events": publish(outcome.events),
    }


@router.get("")
def list_batches(
    employer_id: str | None = Query(default=None),
    status: BatchStatus | None = Query(default=None),
    caller: CallerContext = Depends(get_caller),
) -> dict:
    service = get_batch_service()
    return {"items": serialise(service.list_batches(caller, employer_id, status))}


@router.get("/{batch_id}")
def get_batch(batch_id: str, caller: CallerContext = Depends(get_caller)) -> dict:
    service = get_batch_service()
    return serialise(service.get_detail(caller, batch_id))


@router.get("/{batch_id}/history")
def get_batch_history(batch_id: str, caller: CallerContext = Depends(get_caller)) -> dict:
    service = get_batch_service()
    return {"items": serialise(service.history(caller, batch_id))}


@router.get("/{batch_id}/export")
def export_batch(
    batch_id: str,
    fmt: str = Query(default="xlsx", alias="format"),
    attempt: int | None = Query(default=None),
    caller: CallerContext = Depends(get_caller),
) -> Response:
    service = get_batch_service()
    export = service.export(caller, batch_id, attempt)
    if fmt == "csv":
        return Response(
            content=to_csv_bytes(export),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{batch_id}.csv"'},
        )
    if fmt != "xlsx":
        raise HTTPException(status_code=400, detail="format must be csv or xlsx")
    return Response(
        content=to_xlsx_bytes(export),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{batch_id}.xlsx"'},
    )


@router.post("/{batch_id}/ready")
def mark_ready(batch_id: str, caller: CallerContext = Depends(get_caller)) -> dict:
    return _respond(get_batch_service().mark_ready(caller, batch_id))


@router.post("/{batch_id}/quote")
def quote_batch(batch_id: str, payload: dict, caller: CallerContext = Depends(get_caller)) -> dict:
    raw = require_text(payload, "unit_price")
    try:
        unit_price = Decimal(raw)
    except InvalidOperation:
        raise HTTPException(status_code=400, detail="unit_price must be a number") from None
    outcome = get_batch_service().quote(
        caller,
        batch_id,
        unit_price,
        plan_name=str(payload.get("plan_name") or "default"),
        age_band=str(payload.get("age_band") or "all"),
    )
    return _respond(outcome)


@router.post("/{batch_id}/decision")
def employer_decision(batch_id: str, payload: dict, caller: CallerContext = Depends(get_caller)) -> dict:
    outcome = get_batch_service().employer_decision(
        caller,
        batch_id,
        approve=require_flag(payload, "approve"),
        reason=payload.get("reason"),
    )
    return _respond(outcome)


@router.post("/{batch_id}/send")
def send_to_insurer(batch_id: str, caller: CallerContext = Depends(get_caller)) -> dict:
    return _respond(get_batch_service().send_to_insurer(caller, batch_id))


@router.post("/{batch_id}/adjudications")
def adjudicate(batch_id: str, payload: dict, caller: CallerContext = Depends(get_caller)) -> dict:
    items = payload.get("decisions")
    if not isinstance(items, list) or not items:
        raise HTTPException(status_code=400, detail="decisions must be a non-empty list")
    decisions: list[Decision] = []
    for item in items:
        if not isinstance(item, dict):
            raise HTTPException(status_code=400, detail="each decision must be an object")
        try:
            status = InsurerStatus(str(item.get("status")))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"invalid status {item.get('status')}") from None
        decisions.append(Decision(require_text(item, "national_id"), status, item.get("reason")))
    return _respond(get_batch_service().adjudicate(caller, batch_id, decisions))


@router.post("/{batch_id}/adjudications/approve-pending")
def approve_pending(batch_id: str, caller: CallerContext = Depends(get_caller)) -> dict:
    return _respond(get_batch_service().approve_all_pending(caller, batch_id))


@router.post("/{batch_id}/insurer-return")
def insurer_return(batch_id: str, payload: dict, caller: CallerContext = Depends(get_caller)) -> dict:
    rejections = payload.get("rejections") or {}
    if not isinstance(rejections, dict):
        raise HTTPException(status_code=400, detail="rejections must map national ids to reasons")
    cleaned = {str(key): str(value) for key, value in rejections.items()}
    return _respond(get_batch_service().process_insurer_return(caller, batch_id, cleaned))


@router.post("/{batch_id}/recompute")
def recompute(batch_id: str, caller: CallerContext = Depends(get_caller)) -> dict:
    return _respond(get_batch_service().recompute(caller, batch_id))


@router.post("/{batch_id}/corrections")
def submit_corrections(batch_id: str, payload: dict, caller: CallerContext = Depends(get_caller)) -> dict:
    if "expected_attempt" not in payload:
        raise HTTPException(status_code=400, detail="expected_attempt is required")
    try:
        expected_attempt = int(payload["expected_attempt"])
        corrections = [WorkerCorrection(**item) for item in payload.get("corrections") or []]
    except (TypeError, ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None
    outcome = get_batch_service().submit_corrections(
        caller,
        batch_id,
        corrections,
        expected_attempt=expected_attempt,
        send_now=require_flag(payload, "send_now", default=False),
    )
    return _respond(outcome)


@router.post("/{batch_id}/amendments")
def amend_batch(batch_id: str, payload: dict, caller: CallerContext = Depends(get_caller)) -> dict:
    if "expected_attempt" not in payload:
        raise HTTPException(status_code=400, detail="expected_attempt is required")
    remove = payload.get("remove") or []
    if not isinstance(remove, list):
        raise HTTPException(status_code=400, detail="remove must be a list of national ids")
    try:
        expected_attempt = int(payload["expected_attempt"])
        members = [WorkerCorrection(**item) for item in payload.get("members") or []]
    except (TypeError, ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None
    outcome = get_batch_service().amend_batch(
        caller,
        batch_id,
        expected_attempt=expected_attempt,
        members=members,
        remove=[str(item) for item in remove],
    )
    return _respond(outcome)


@router.post("/{batch_id}/finalize")
def finalize(batch_id: str, caller: CallerContext = Depends(get_caller)) -> dict:
    return _respond(get_batch_service().finalize(caller, batch_id))


@router.post("/{batch_id}/invoice")
def invoice(batch_id: str, payload: dict | None = None, caller: CallerContext = Depends(get_caller)) -> dict:
    notes = (payload or {}).get("notes")
    return _respond(get_batch_service().invoice(caller, batch_id, notes))


@router.delete("/{batch_id}")
def delete_batch(
    batch_id: str,
    cascade: bool = Query(default=False),
    caller: CallerContext = Depends(get_caller),
) -> dict:
    return _respond(get_batch_service().delete_batch(caller, batch_id, cascade=cascade))
