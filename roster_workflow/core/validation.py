from __future__ import annotations

from typing import Sequence

from roster_workflow.core.brackets import BracketTable
from roster_workflow.core.normalizer import (
    CellValue,
    FieldResult,
    ReasonCode,
    cell_text,
    normalize_currency,
    normalize_date,
    normalize_flag,
    normalize_name,
    normalize_national_id,
    normalize_sex,
)
from roster_workflow.core.schema import ColumnSignature, RowError, RowIssue, ValidatedWorker

_MISSING_REASON = {
    "name": ReasonCode.MISSING_NAME,
    "national_id": ReasonCode.MISSING_NATIONAL_ID,
    "birth_date": ReasonCode.MISSING_DATE,
    "salary": ReasonCode.MISSING_SALARY,
    "sex": ReasonCode.MISSING_SEX,
}


class RowValidator:
    """Validate spreadsheet rows one at a time for a single upload.

    The validator is stateful only for the duration of one file: it remembers
    national IDs already seen so that later occurrences are flagged as
    duplicates, and counts rows that produced at least one usable field.
    """

    def __init__(self, columns: dict[str, int], signature: ColumnSignature, brackets: BracketTable) -> None:
        self.columns = columns
        self.signature = signature
        self.brackets = brackets
        self.seen_ids: set[str] = set()
        self.rows_with_data = 0

    def _cell(self, cells: Sequence[CellValue], column: str) -> CellValue:
        index = self.columns.get(column)
        if index is None or index >= len(cells):
            return None
        return cells[index]

    def _check(self, column: str, result: FieldResult, issues: list[RowIssue]) -> None:
        if result.is_invalid and result.reason is not None:
            issues.append(RowIssue(field=column, reason=result.reason, raw=result.raw))
        elif result.is_absent and self.signature.is_required(column) and column in _MISSING_REASON:
            issues.append(RowIssue(field=column, reason=_MISSING_REASON[column]))

    def validate(self, line_number: int, cells: Sequence[CellValue]) -> ValidatedWorker | RowError:
        issues: list[RowIssue] = []
        signature = self.signature

        name = normalize_name(self._cell(cells, "name"))
        if name.is_absent:
            issues.append(RowIssue(field="name", reason=ReasonCode.MISSING_NAME))

        national_id = normalize_national_id(self._cell(cells, "national_id"))
        if national_id.is_absent:
            issues.append(RowIssue(field="national_id", reason=ReasonCode.MISSING_NATIONAL_ID))
        else:
            self._check("national_id", national_id, issues)
        if national_id.value is not None:
            if national_id.value in self.seen_ids:
                issues.append(
                    RowIssue(field="national_id", reason=ReasonCode.DUPLICATE_IN_FILE, raw=national_id.raw)
                )
            else:
                self.seen_ids.add(national_id.value)

        birth_date = normalize_date(self._cell(cells, "birth_date"))
        self._check("birth_date", birth_date, issues)

        salary = normalize_currency(self._cell(cells, "salary"))
        self._check("salary", salary, issues)
        if salary.is_ok and salary.value < 0:
            issues.append(RowIssue(field="salary", reason=ReasonCode.NEGATIVE_SALARY, raw=salary.raw))

        sex = normalize_sex(
            self._cell(cells, "sex"),
            signature.sex_policy,
            allow_other=signature.allow_other_sex,
        )
        self._check("sex", sex, issues)

        retired = normalize_flag(self._cell(cells, "retired"))
        self._check("retired", retired, issues)
        on_leave = normalize_flag(self._cell(cells, "on_leave"))
        self._check("on_leave", on_leave, issues)

        fields = (name, national_id, birth_date, salary, sex, retired, on_leave)
        if any(result.is_ok and result.raw is not None for result in fields):
            self.rows_with_data += 1

        if issues:
            values = {
                column: (cell_text(self._cell(cells, column)) or None) for column in signature.columns
            }
            return RowError(
                line_number=line_number,
                national_id=national_id.value,
                issues=issues,
                values=values,
            )

        return ValidatedWorker(
            line_number=line_number,
            national_id=national_id.value,
            name=name.value,
            sex=sex.value,
            birth_date=birth_date.value,
            salary=salary.value,
            salary_bracket=self.brackets.classify(salary.value),
            retired=bool(retired.value),
            on_leave=bool(on_leave.value),
        )
