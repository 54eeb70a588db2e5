from __future__ import annotations

import io
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable

import pandas as pd

from roster_workflow.core.national_id import format_national_id
from roster_workflow.domain.models import AttemptRecord, Worker

ROSTER_TEMPLATE_HEADER = ["Nome", "Sexo", "CPF", "Data Nascimento", "Salário"]

ATTEMPT_HEADER = [
    "Tentativa",
    "Nome",
    "CPF",
    "Sexo",
    "Data Nascimento",
    "Salário",
    "Faixa Salarial",
    "Aposentado",
    "Afastado",
    "Tipo",
    "Status Seguradora",
    "Motivo Recusa",
]

WORKER_HEADER = ["Nome", "CPF", "Sexo", "Data Nascimento", "Salário", "Faixa Salarial", "Situação"]


@dataclass(slots=True)
class TabularExport:
    """Header row plus typed rows; styling is left to the consumer."""

    header: list[str]
    rows: list[list[object]] = field(default_factory=list)
    sheet_name: str = "Dados"

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows, columns=self.header)


def _plain(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return "Sim" if value else "Não"
    return value


def attempt_export(records: Iterable[AttemptRecord]) -> TabularExport:
    rows: list[list[object]] = []
    for record in sorted(records, key=lambda item: (item.attempt_number, item.name, item.national_id)):
        rows.append(
            [
                record.attempt_number,
                record.name,
                format_national_id(record.national_id),
                _plain(record.sex),
                record.birth_date,
                record.salary,
                record.salary_bracket,
                _plain(record.retired),
                _plain(record.on_leave),
                _plain(record.change_type),
                _plain(record.insurer_status),
                record.rejection_reason,
            ]
        )
    return TabularExport(header=list(ATTEMPT_HEADER), rows=rows, sheet_name="Movimentação")


def worker_export(workers: Iterable[Worker]) -> TabularExport:
    rows = [
        [
            worker.name,
            format_national_id(worker.national_id),
            _plain(worker.sex),
            worker.birth_date,
            worker.salary,
            worker.salary_bracket,
            _plain(worker.status),
        ]
        for worker in workers
    ]
    return TabularExport(header=list(WORKER_HEADER), rows=rows, sheet_name="Colaboradores")


def roster_template() -> TabularExport:
    """Blank roster with the columns the importer recognises."""

    return TabularExport(header=list(ROSTER_TEMPLATE_HEADER), rows=[], sheet_name="Colaboradores")


def _for_file(frame: pd.DataFrame) -> pd.DataFrame:
    def convert(value: object) -> object:
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, date):
            return value.strftime("%d/%m/%Y")
        return value

    return frame.apply(lambda column: column.map(convert)) if not frame.empty else frame


def to_csv_bytes(export: TabularExport) -> bytes:
    frame = _for_file(export.to_frame())
    return frame.to_csv(index=False, sep=";", decimal=",").encode("utf-8-sig")


def to_xlsx_bytes(export: TabularExport) -> bytes:
    buffer = io.BytesIO()
    frame = _for_file(export.to_frame())
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        frame.to_excel(writer, index=False, sheet_name=export.sheet_name)
    return buffer.getvalue()
