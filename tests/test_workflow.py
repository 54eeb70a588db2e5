import asyncio
import inspect
import sys
from io import BytesIO
from pathlib import Path

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient
from openpyxl import load_workbook

sys.path.append(str(Path(__file__).resolve().parents[1]))

from roster_workflow.app import create_app
from roster_workflow.infrastructure import InMemoryChangeNotifier, configure_change_notifier, get_change_notifier

XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

PLATFORM = {"X-Role": "platform_operator"}
EMPLOYER = {"X-Role": "employer_operator", "X-Employer-Id": "emp-1"}
INSURER = {"X-Role": "insurer_liaison"}

ANA = ["Ana Silva", "Feminino", "123.456.789-09", "15/03/1990", "3.500,00"]
BRUNO = ["Bruno Souza", "Masculino", "987.654.321-00", "01/01/1985", "2.000,00"]
CARLA = ["Carla Lima", "Feminino", "012.345.678-90", "02/02/1992", "1.800,00"]


@pytest.fixture()
def client():
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client


def _upload(client, path, content, headers=EMPLOYER, **fields):
    data = {"employer_id": "emp-1", "site_id": "obra-1", **fields}
    return client.post(
        path,
        data=data,
        files={"file": ("colaboradores.xlsx", content, XLSX)},
        headers=headers,
    )


def _submit(client, roster_file, *rows, period="2024-01"):
    response = _upload(client, "/api/rosters/submit", roster_file(*rows), period=period)
    assert response.status_code == 200, response.text
    return response.json()["batch"]["batch_id"]


def test_root_and_template(client):
    assert client.get("/").json()["template"] == "/api/rosters/template"

    csv_response = client.get("/api/rosters/template", params={"format": "csv"})
    assert csv_response.status_code == 200
    assert csv_response.content.decode("utf-8-sig").splitlines()[0] == "Nome;Sexo;CPF;Data Nascimento;Salário"

    xlsx_response = client.get("/api/rosters/template")
    assert xlsx_response.headers["content-type"] == XLSX
    sheet = load_workbook(BytesIO(xlsx_response.content)).active
    assert [cell.value for cell in sheet[1]] == ["Nome", "Sexo", "CPF", "Data Nascimento", "Salário"]


def test_preview_does_not_write(client, roster_file):
    broken = ["", "Masculino", "111.111.111-11", "30/02/2020", "abc"]
    response = _upload(client, "/api/rosters/preview", roster_file(ANA, broken, BRUNO))

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["summary"]["valid_rows"] == 2
    assert body["summary"]["error_rows"] == 1
    assert body["ingestion"]["rows"][0]["valid"] is False
    assert body["ingestion"]["rows"][0]["line_number"] == 4
    assert sorted(body["changes"]["create"]) == ["12345678909", "98765432100"]

    listed = client.get("/api/workers", params={"employer_id": "emp-1"}, headers=EMPLOYER)
    assert listed.json()["items"] == []


def test_end_to_end_workflow(client, roster_file):
    # 1. submit roster
    response = _upload(client, "/api/rosters/submit", roster_file(ANA, BRUNO, CARLA), period="2024-01")
    assert response.status_code == 200, response.text
    body = response.json()
    batch_id = body["batch"]["batch_id"]
    assert body["batch"]["status"] == "awaiting_processing"
    assert body["details"]["plan"]["created"] == 3
    assert {"entity_type": "batch", "entity_id": batch_id, "action": "updated"} in body["events"]
    assert get_change_notifier().events

    # 2. pricing and employer approval
    assert client.post(f"/api/batches/{batch_id}/ready", headers=PLATFORM).json()["batch"]["status"] == "pending_quote"
    quoted = client.post(f"/api/batches/{batch_id}/quote", json={"unit_price": "50"}, headers=PLATFORM)
    assert quoted.json()["batch"]["total_value"] == "150.00"
    approved = client.post(f"/api/batches/{batch_id}/decision", json={"approve": True}, headers=EMPLOYER)
    assert approved.json()["batch"]["status"] == "employer_approved"

    # 3. first insurer round
    sent = client.post(f"/api/batches/{batch_id}/send", headers=PLATFORM)
    assert sent.json()["batch"]["status"] == "submitted_to_insurer"
    adjudicated = client.post(
        f"/api/batches/{batch_id}/adjudications",
        json={
            "decisions": [
                {"national_id": "12345678909", "status": "approved"},
                {"national_id": "98765432100", "status": "rejected", "reason": "data de nascimento"},
                {"national_id": "01234567890", "status": "approved"},
            ]
        },
        headers=INSURER,
    )
    assert adjudicated.status_code == 200, adjudicated.text
    assert adjudicated.json()["batch"]["status"] == "awaiting_correction"
    assert adjudicated.json()["batch"]["total_rejected"] == 1

    # 4. correction round
    payload = {
        "expected_attempt": 1,
        "send_now": True,
        "corrections": [{"national_id": "98765432100", "birth_date": "02/01/1985"}],
    }
    corrected = client.post(f"/api/batches/{batch_id}/corrections", json=payload, headers=EMPLOYER)
    assert corrected.status_code == 200, corrected.text
    assert corrected.json()["details"]["attempt_number"] == 2
    assert corrected.json()["batch"]["status"] == "submitted_to_insurer"

    stale = client.post(f"/api/batches/{batch_id}/corrections", json=payload, headers=EMPLOYER)
    assert stale.status_code == 409
    assert stale.json()["code"] == "concurrent_modification"

    pending = client.post(f"/api/batches/{batch_id}/adjudications/approve-pending", headers=INSURER)
    assert pending.json()["batch"]["status"] == "awaiting_finalization"

    # 5. close and bill
    finalized = client.post(f"/api/batches/{batch_id}/finalize", headers=PLATFORM)
    assert finalized.status_code == 200, finalized.text
    assert finalized.json()["batch"]["status"] == "finalized"
    assert finalized.json()["batch"]["total_value"] == "150.00"
    assert finalized.json()["details"]["lives"] == 3

    invoiced = client.post(f"/api/batches/{batch_id}/invoice", json={"notes": "NF 1"}, headers=PLATFORM)
    assert invoiced.json()["batch"]["status"] == "invoiced"

    # 6. reads
    detail = client.get(f"/api/batches/{batch_id}", headers=EMPLOYER).json()
    assert detail["attempts"] == [1, 2]
    assert [record["national_id"] for record in detail["records"]] == ["98765432100"]
    history = client.get(f"/api/batches/{batch_id}/history", headers=EMPLOYER).json()["items"]
    assert len(history) == 4

    export = client.get(f"/api/batches/{batch_id}/export", params={"format": "csv", "attempt": 1}, headers=EMPLOYER)
    text = export.content.decode("utf-8-sig")
    assert "123.456.789-09" in text
    assert "data de nascimento" in text

    listed = client.get("/api/batches", headers=EMPLOYER).json()["items"]
    assert [item["batch_id"] for item in listed] == [batch_id]


def test_error_mapping(client, roster_file):
    batch_id = _submit(client, roster_file, ANA, BRUNO)

    assert client.get(f"/api/batches/{batch_id}").status_code == 401
    assert client.get(f"/api/batches/{batch_id}", headers={"X-Role": "janitor"}).status_code == 400

    outsider = {"X-Role": "employer_operator", "X-Employer-Id": "emp-2"}
    forbidden = client.get(f"/api/batches/{batch_id}", headers=outsider)
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "permission_denied"

    assert client.get("/api/batches/bat-999999", headers=PLATFORM).status_code == 404

    early = client.post(f"/api/batches/{batch_id}/send", headers=PLATFORM)
    assert early.status_code == 409
    assert early.json()["code"] == "invalid_transition"

    client.post(f"/api/batches/{batch_id}/ready", headers=PLATFORM)
    bad_price = client.post(f"/api/batches/{batch_id}/quote", json={"unit_price": "abc"}, headers=PLATFORM)
    assert bad_price.status_code == 400

    blocked = client.delete(f"/api/batches/{batch_id}", headers=PLATFORM)
    assert blocked.status_code == 409
    assert blocked.json()["code"] == "referential_integrity"
    deleted = client.delete(f"/api/batches/{batch_id}", params={"cascade": True}, headers=PLATFORM)
    assert deleted.status_code == 200
    assert deleted.json()["batch"] is None


def test_upload_errors(client, roster_file):
    missing = _upload(
        client,
        "/api/rosters/submit",
        roster_file(["Ana Silva", "123.456.789-09"], header=["Nome", "CPF"]),
        period="2024-01",
    )
    assert missing.status_code == 422
    assert missing.json()["code"] == "no_matching_sheet"
    assert missing.json()["missing"] == ["birth_date", "salary", "sex"]

    unreadable = _upload(client, "/api/rosters/submit", b"not a spreadsheet", period="2024-01")
    assert unreadable.status_code == 422
    assert unreadable.json()["code"] == "unreadable_workbook"

    bad_period = _upload(client, "/api/rosters/submit", roster_file(ANA), period="2024-1")
    assert bad_period.status_code == 422

    partial = ["Bruno Souza", "Masculino", "987.654.321-00", "31/02/1985", "2.000,00"]
    refused = _upload(client, "/api/rosters/submit", roster_file(ANA, partial), period="2024-01")
    assert refused.status_code == 400
    accepted = _upload(
        client, "/api/rosters/submit", roster_file(ANA, partial), period="2024-01", accept_partial="true"
    )
    assert accepted.status_code == 200
    assert accepted.json()["batch"]["total_workers"] == 1


def test_import_approved_requires_platform_operator(client, roster_file):
    content = roster_file(["Ana Silva", "123.456.789-09", "3500"], header=["Nome", "CPF", "Salário"])

    denied = _upload(client, "/api/rosters/import-approved", content, period="2023-12")
    assert denied.status_code == 403

    imported = _upload(
        client, "/api/rosters/import-approved", content, headers=PLATFORM, period="2023-12", unit_price="45"
    )
    assert imported.status_code == 200, imported.text
    assert imported.json()["batch"]["status"] == "finalized"
    assert imported.json()["batch"]["total_value"] == "45.00"


def test_workers_endpoints(client, roster_file):
    _submit(client, roster_file, ANA, BRUNO)

    listed = client.get("/api/workers", params={"employer_id": "emp-1", "name": "ana"}, headers=EMPLOYER)
    (ana,) = listed.json()["items"]
    assert ana["national_id"] == "12345678909"
    assert ana["status"] == "active"

    edited = client.patch(f"/api/workers/{ana['worker_id']}", json={"salary": "4.100,00"}, headers=EMPLOYER)
    assert edited.status_code == 200, edited.text
    assert edited.json()["worker"]["salary"] == "4100.00"
    assert edited.json()["changed_fields"] == ["salary", "salary_bracket"]

    invalid = client.patch(f"/api/workers/{ana['worker_id']}", json={"birth_date": "ontem"}, headers=EMPLOYER)
    assert invalid.status_code == 400

    exported = client.get("/api/workers/export", params={"employer_id": "emp-1"}, headers=EMPLOYER)
    assert exported.headers["content-type"].startswith("text/csv")
    assert "Bruno Souza" in exported.content.decode("utf-8-sig")


class _LoopAwareNotifier(InMemoryChangeNotifier):
    def __init__(self) -> None:
        super().__init__()
        self.published_on_loop: list[bool] = []

    def publish(self, events) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.published_on_loop.append(False)
        else:
            self.published_on_loop.append(True)
        super().publish(events)


def test_blocking_work_stays_off_the_event_loop(client, roster_file):
    blocking = [
        route
        for route in client.app.routes
        if isinstance(route, APIRoute)
        and (route.path.startswith(("/api/batches", "/api/workers")) or route.path == "/api/rosters/template")
    ]
    assert blocking
    assert [route.path for route in blocking if inspect.iscoroutinefunction(route.endpoint)] == []

    notifier = _LoopAwareNotifier()
    configure_change_notifier(notifier)
    batch_id = _submit(client, roster_file, ANA, BRUNO)
    client.post(f"/api/batches/{batch_id}/ready", headers=PLATFORM)

    assert len(notifier.published_on_loop) == 2
    assert not any(notifier.published_on_loop)


def test_non_finite_prices_and_loose_flags_are_rejected(client, roster_file):
    batch_id = _submit(client, roster_file, ANA, BRUNO)
    client.post(f"/api/batches/{batch_id}/ready", headers=PLATFORM)

    for raw in ("NaN", "Infinity", "-inf"):
        response = client.post(f"/api/batches/{batch_id}/quote", json={"unit_price": raw}, headers=PLATFORM)
        assert response.status_code == 400, raw
    client.post(f"/api/batches/{batch_id}/quote", json={"unit_price": "50"}, headers=PLATFORM)

    unclear = client.post(f"/api/batches/{batch_id}/decision", json={"approve": "maybe"}, headers=EMPLOYER)
    assert unclear.status_code == 400
    missing = client.post(f"/api/batches/{batch_id}/decision", json={}, headers=EMPLOYER)
    assert missing.status_code == 400
    no_reason = client.post(f"/api/batches/{batch_id}/decision", json={"approve": "false"}, headers=EMPLOYER)
    assert no_reason.status_code == 400
    rejected = client.post(
        f"/api/batches/{batch_id}/decision", json={"approve": "false", "reason": "preço alto"}, headers=EMPLOYER
    )
    assert rejected.status_code == 200, rejected.text
    assert rejected.json()["batch"]["status"] == "employer_rejected"

    content = roster_file(["Ana Silva", "123.456.789-09", "3500"], header=["Nome", "CPF", "Salário"])
    imported = _upload(
        client, "/api/rosters/import-approved", content, headers=PLATFORM, period="2023-12", unit_price="NaN"
    )
    assert imported.status_code == 400


def test_amendment_endpoint(client, roster_file):
    batch_id = _submit(client, roster_file, ANA, BRUNO, CARLA)
    client.post(f"/api/batches/{batch_id}/ready", headers=PLATFORM)
    client.post(f"/api/batches/{batch_id}/quote", json={"unit_price": "50"}, headers=PLATFORM)
    client.post(f"/api/batches/{batch_id}/decision", json={"approve": True}, headers=EMPLOYER)
    client.post(f"/api/batches/{batch_id}/send", headers=PLATFORM)
    client.post(f"/api/batches/{batch_id}/adjudications/approve-pending", headers=INSURER)

    payload = {
        "expected_attempt": 1,
        "members": [{"national_id": "111.444.777-35", "name": "Diego Costa", "salary": "4.100,00"}],
        "remove": ["012.345.678-90", "98765432100"],
    }
    denied = client.post(f"/api/batches/{batch_id}/amendments", json=payload, headers=EMPLOYER)
    assert denied.status_code == 403
    assert client.post(f"/api/batches/{batch_id}/amendments", json={"remove": []}, headers=PLATFORM).status_code == 400
    bad_remove = {"expected_attempt": 1, "remove": "98765432100"}
    assert client.post(f"/api/batches/{batch_id}/amendments", json=bad_remove, headers=PLATFORM).status_code == 400

    amended = client.post(f"/api/batches/{batch_id}/amendments", json=payload, headers=PLATFORM)
    assert amended.status_code == 200, amended.text
    body = amended.json()
    assert body["details"]["attempt_number"] == 2
    assert body["batch"]["total_workers"] == 2
    assert body["batch"]["total_value"] == "100.00"
    assert sorted(record["national_id"] for record in body["records"]) == ["11144477735", "12345678909"]

    stale = client.post(f"/api/batches/{batch_id}/amendments", json=payload, headers=PLATFORM)
    assert stale.status_code == 409

    finalized = client.post(f"/api/batches/{batch_id}/finalize", headers=PLATFORM)
    assert finalized.json()["details"]["lives"] == 2
