"""Parser for employer roster spreadsheets (xlsx/xls/csv)."""

from __future__ import annotations

import io
from pathlib import PurePath

import pandas as pd

from roster_workflow.core.brackets import BracketTable, get_bracket_table
from roster_workflow.core.normalizer import is_blank_row, to_cell
from roster_workflow.core.schema import (
    CLIENT_SIGNATURE,
    ColumnSignature,
    IngestionResult,
    IngestionSummary,
    RowError,
    ValidatedWorker,
)
from roster_workflow.core.validation import RowValidator
from roster_workflow.domain.errors import EmptyIngestion, FileTooLarge, UnreadableWorkbook
from roster_workflow.extractors.detect import DEFAULT_SCAN_ROWS, detect_sheet
from roster_workflow.settings import Settings, get_settings
from roster_workflow.utils.logging import get_logger

logger = get_logger(__name__)

CSV_SUFFIXES = {".csv", ".txt"}


def _read_csv(content: bytes) -> pd.DataFrame:
    for encoding in ("utf-8-sig", "latin-1"):
        try:
            return pd.read_csv(
                io.BytesIO(content),
                header=None,
                dtype=object,
                sep=None,
                engine="python",
                encoding=encoding,
                skip_blank_lines=False,
            )
        except UnicodeDecodeError:
            continue
    raise UnreadableWorkbook("csv file is not valid text")


def read_sheets(content: bytes, filename: str | None = None) -> dict[str | None, pd.DataFrame]:
    """Load every sheet as a header-less object grid, in workbook order."""

    suffix = PurePath(filename).suffix.lower() if filename else ""
    try:
        if suffix in CSV_SUFFIXES:
            return {None: _read_csv(content)}
        return pd.read_excel(io.BytesIO(content), sheet_name=None, header=None, dtype=object)
    except UnreadableWorkbook:
        raise
    except Exception as exc:  # pandas/openpyxl raise a wide range of errors here
        raise UnreadableWorkbook(f"could not read spreadsheet: {exc}") from exc


class IngestionPipeline:
    """Turn spreadsheet bytes into validated and rejected rows."""

    def __init__(
        self,
        signature: ColumnSignature = CLIENT_SIGNATURE,
        *,
        brackets: BracketTable | None = None,
        max_bytes: int | None = None,
        scan_rows: int | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.signature = signature
        self.brackets = brackets or get_bracket_table(str(settings.salary_brackets_path))
        self.max_bytes = max_bytes if max_bytes is not None else settings.max_upload_bytes
        self.scan_rows = scan_rows if scan_rows is not None else (settings.header_scan_rows or DEFAULT_SCAN_ROWS)

    def run(self, content: bytes, filename: str | None = None) -> IngestionResult:
        if len(content) > self.max_bytes:
            raise FileTooLarge(len(content), self.max_bytes)
        if not content:
            raise UnreadableWorkbook("file is empty")

        sheets = read_sheets(content, filename)
        detected = detect_sheet(sheets, self.signature, self.scan_rows)
        frame = sheets[detected.sheet]
        validator = RowValidator(detected.columns, self.signature, self.brackets)

        valid_rows: list[ValidatedWorker] = []
        error_rows: list[RowError] = []
        total = 0
        for index in range(detected.header_row + 1, len(frame)):
            cells = [to_cell(value) for value in frame.iloc[index].tolist()]
            if is_blank_row(cells):
                continue
            total += 1
            outcome = validator.validate(index + 1, cells)
            if isinstance(outcome, RowError):
                error_rows.append(outcome)
            else:
                valid_rows.append(outcome)

        if validator.rows_with_data == 0:
            raise EmptyIngestion("the spreadsheet has no rows with usable data")

        summary = IngestionSummary(
            sheet_name=detected.sheet,
            header_row=detected.header_row + 1,
            total_rows=total,
            valid_rows=len(valid_rows),
            error_rows=len(error_rows),
            columns=detected.columns,
        )
        logger.info(
            "roster parsed",
            extra={
                "source_file": filename,
                "sheet": detected.sheet,
                "valid_rows": summary.valid_rows,
                "error_rows": summary.error_rows,
            },
        )
        return IngestionResult(valid_rows=valid_rows, error_rows=error_rows, summary=summary)


def parse(
    content: bytes,
    signature: ColumnSignature = CLIENT_SIGNATURE,
    filename: str | None = None,
    **options,
) -> IngestionResult:
    return IngestionPipeline(signature, **options).run(content, filename)
