from __future__ import annotations

from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from fastapi import Header, HTTPException
from pydantic import BaseModel

from roster_workflow.domain.models import ChangeEvent
from roster_workflow.domain.roles import CallerContext, Role
from roster_workflow.infrastructure import get_change_notifier


def get_caller(
    x_role: str | None = Header(default=None),
    x_employer_id: str | None = Header(default=None),
) -> CallerContext:
    """Build the caller context forwarded by the authentication proxy."""

    if not x_role:
        raise HTTPException(status_code=401, detail="X-Role header is required")
    try:
        role = Role(x_role.strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"unknown role {x_role}") from None
    if role is Role.EMPLOYER_OPERATOR and not x_employer_id:
        raise HTTPException(status_code=400, detail="X-Employer-Id header is required for employer operators")
    return CallerContext(role=role, employer_id=x_employer_id or None)


def serialise(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return serialise(value.model_dump())
    if is_dataclass(value) and not isinstance(value, type):
        return serialise(asdict(value))
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): serialise(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [serialise(item) for item in value]
    return value


def publish(events: Iterable[ChangeEvent]) -> list[dict[str, str]]:
    items = list(events)
    get_change_notifier().publish(items)
    return [event.as_dict() for event in items]


def require_text(payload: dict, key: str) -> str:
    value = payload.get(key)
    if value is None or not str(value).strip():
        raise HTTPException(status_code=400, detail=f"{key} is required")
    return str(value).strip()


def require_flag(payload: dict, key: str, default: bool | None = None) -> bool:
    value = payload.get(key, default)
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower() if value is not None else ""
    if text in {"true", "1", "yes", "sim"}:
        return True
    if text in {"false", "0", "no", "nao", "não"}:
        return False
    raise HTTPException(status_code=400, detail=f"{key} must be true or false")
