"""Locate the data sheet and its header row inside an uploaded workbook.

Rosters arrive in whatever shape the employer's payroll tool produces: a title
row or two above the header, extra sheets with instructions, columns in any
order. The detector scans the first few rows of every sheet, in workbook
order, and picks the first row that carries every required column of the
signature.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

import pandas as pd

from roster_workflow.core.normalizer import match_columns, to_cell
from roster_workflow.core.schema import ColumnSignature
from roster_workflow.domain.errors import NoMatchingSheet

DEFAULT_SCAN_ROWS = 5


@dataclass
class DetectedSheet:
    sheet: str | None
    header_row: int
    columns: dict[str, int] = field(default_factory=dict)


def _header_candidates(frame: pd.DataFrame, scan_rows: int) -> list[tuple[int, list[object]]]:
    rows: list[tuple[int, list[object]]] = []
    for index in range(min(scan_rows, len(frame))):
        rows.append((index, [to_cell(value) for value in frame.iloc[index].tolist()]))
    return rows


def detect_sheet(
    sheets: Mapping[str | None, pd.DataFrame],
    signature: ColumnSignature,
    scan_rows: int = DEFAULT_SCAN_ROWS,
) -> DetectedSheet:
    """Return the first sheet/header row matching ``signature``.

    Raises :class:`NoMatchingSheet` listing the required columns missing from
    the closest candidate when no sheet qualifies.
    """

    required = set(signature.required)
    best_missing: set[str] = set(required)

    for sheet_name, frame in sheets.items():
        if frame is None or frame.empty:
            continue
        for index, cells in _header_candidates(frame, scan_rows):
            columns = match_columns(cells, signature.columns)
            missing = required - set(columns)
            if not missing:
                return DetectedSheet(sheet=sheet_name, header_row=index, columns=columns)
            if len(missing) < len(best_missing):
                best_missing = missing

    missing_sorted = sorted(best_missing)
    raise NoMatchingSheet(
        f"no sheet has a header row with columns: {', '.join(missing_sorted)}",
        missing=missing_sorted,
    )
