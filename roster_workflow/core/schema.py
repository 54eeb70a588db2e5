from __future__ import annotations

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field, constr

from roster_workflow.core.normalizer import ReasonCode, SexPolicy
from roster_workflow.domain.models import Sex

NationalId = constr(pattern=r"^\d{11}$")


class ColumnSignature(BaseModel):
    """Logical columns an upload must (required) or may (optional) carry."""

    required: tuple[str, ...] = ("name", "national_id")
    optional: tuple[str, ...] = ("birth_date", "sex", "salary", "retired", "on_leave")
    sex_policy: SexPolicy = SexPolicy.STRICT
    allow_other_sex: bool = True

    @property
    def columns(self) -> tuple[str, ...]:
        seen: list[str] = []
        for column in (*self.required, *self.optional):
            if column not in seen:
                seen.append(column)
        return tuple(seen)

    def is_required(self, column: str) -> bool:
        return column in self.required


# Regular client submission: every field the insurer prices on is mandatory.
CLIENT_SIGNATURE = ColumnSignature(
    required=("name", "national_id", "birth_date", "sex", "salary"),
    optional=("retired", "on_leave"),
    sex_policy=SexPolicy.STRICT,
)

# Back-office import of an already approved roster: lenient about sex.
ADMIN_SIGNATURE = ColumnSignature(
    required=("name", "national_id", "salary"),
    optional=("birth_date", "sex", "retired", "on_leave"),
    sex_policy=SexPolicy.DEFAULT_MASCULINE,
)


class ValidatedWorker(BaseModel):
    line_number: int
    national_id: NationalId
    name: str
    sex: Sex | None = None
    birth_date: date | None = None
    salary: Decimal | None = None
    salary_bracket: str | None = None
    retired: bool = False
    on_leave: bool = False


class RowIssue(BaseModel):
    field: str
    reason: ReasonCode
    raw: str | None = None


class RowError(BaseModel):
    line_number: int
    national_id: str | None = None
    issues: list[RowIssue] = Field(default_factory=list)
    values: dict[str, str | None] = Field(default_factory=dict)

    @property
    def reasons(self) -> list[ReasonCode]:
        return [issue.reason for issue in self.issues]


class IngestionSummary(BaseModel):
    sheet_name: str | None = None
    header_row: int
    total_rows: int = 0
    valid_rows: int = 0
    error_rows: int = 0
    columns: dict[str, int] = Field(default_factory=dict)


class IngestionResult(BaseModel):
    valid_rows: list[ValidatedWorker] = Field(default_factory=list)
    error_rows: list[RowError] = Field(default_factory=list)
    summary: IngestionSummary

    @property
    def rows(self) -> list[ValidatedWorker | RowError]:
        """Every row, invalid ones first, each group in file order."""

        errors = sorted(self.error_rows, key=lambda row: row.line_number)
        valid = sorted(self.valid_rows, key=lambda row: row.line_number)
        return [*errors, *valid]

    @property
    def national_ids(self) -> set[str]:
        return {row.national_id for row in self.valid_rows}
