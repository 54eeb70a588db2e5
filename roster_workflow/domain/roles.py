"""Caller identity handed to the workflow by the authentication layer."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import PermissionDenied


class Role(str, Enum):
    EMPLOYER_OPERATOR = "employer_operator"
    PLATFORM_OPERATOR = "platform_operator"
    INSURER_LIAISON = "insurer_liaison"


PERMISSIONS: dict[str, frozenset[Role]] = {
    "preview_roster": frozenset({Role.EMPLOYER_OPERATOR, Role.PLATFORM_OPERATOR}),
    "submit_roster": frozenset({Role.EMPLOYER_OPERATOR, Role.PLATFORM_OPERATOR}),
    "import_approved": frozenset({Role.PLATFORM_OPERATOR}),
    "mark_ready": frozenset({Role.PLATFORM_OPERATOR}),
    "quote": frozenset({Role.PLATFORM_OPERATOR}),
    "employer_decision": frozenset({Role.EMPLOYER_OPERATOR, Role.PLATFORM_OPERATOR}),
    "send_to_insurer": frozenset({Role.PLATFORM_OPERATOR, Role.INSURER_LIAISON}),
    "adjudicate": frozenset({Role.INSURER_LIAISON, Role.PLATFORM_OPERATOR}),
    "submit_corrections": frozenset({Role.EMPLOYER_OPERATOR, Role.PLATFORM_OPERATOR}),
    "finalize": frozenset({Role.PLATFORM_OPERATOR}),
    "invoice": frozenset({Role.PLATFORM_OPERATOR}),
    "delete_batch": frozenset({Role.PLATFORM_OPERATOR}),
    "amend_batch": frozenset({Role.PLATFORM_OPERATOR}),
    "edit_worker": frozenset({Role.EMPLOYER_OPERATOR, Role.PLATFORM_OPERATOR}),
    "read": frozenset(Role),
}


@dataclass(frozen=True, slots=True)
class CallerContext:
    role: Role
    employer_id: str | None = None

    def require(self, action: str, employer_id: str | None = None) -> None:
        """Raise :class:`PermissionDenied` unless the caller may run ``action``."""

        allowed = PERMISSIONS.get(action, frozenset())
        if self.role not in allowed:
            raise PermissionDenied(f"role {self.role.value} may not {action}")
        if self.role is Role.EMPLOYER_OPERATOR and employer_id is not None and employer_id != self.employer_id:
            raise PermissionDenied(f"caller is scoped to employer {self.employer_id}")


SYSTEM_CONTEXT = CallerContext(role=Role.PLATFORM_OPERATOR)
