import sys
from io import BytesIO
from pathlib import Path

import pytest
from openpyxl import Workbook

sys.path.append(str(Path(__file__).resolve().parents[1]))

from roster_workflow.application import reset_workflow_state
from roster_workflow.infrastructure import (
    InMemoryChangeNotifier,
    NoOpDocumentIssuer,
    configure_change_notifier,
    configure_document_issuer,
)

ROSTER_HEADER = ["Nome", "Sexo", "CPF", "Data Nascimento", "Salário"]


@pytest.fixture(autouse=True)
def reset_state():
    reset_workflow_state()
    configure_change_notifier(InMemoryChangeNotifier())
    configure_document_issuer(NoOpDocumentIssuer())
    yield
    reset_workflow_state()


@pytest.fixture()
def roster_file():
    """Build an .xlsx roster (title row, header, rows) and return its bytes."""

    def build(*rows, header=ROSTER_HEADER, title="Relação de Colaboradores") -> bytes:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = "Colaboradores"
        if title:
            sheet.append([title])
        sheet.append(list(header))
        for row in rows:
            sheet.append(list(row))
        buffer = BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()

    return build
