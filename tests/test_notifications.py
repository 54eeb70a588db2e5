import asyncio
import json
import logging
import sys
import time
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from roster_workflow.domain import SYSTEM_CONTEXT, IngestionTimeout, WorkflowValidationError
from roster_workflow.domain.models import ChangeEvent
from roster_workflow.infrastructure import LoggingChangeNotifier, WebhookChangeNotifier
from roster_workflow.utils.logging import JsonFormatter
from roster_workflow.workers.pipeline import PipelineRequest, PipelineWorker

EVENTS = [ChangeEvent("batch", "bat-000001"), ChangeEvent("worker", "wrk-000002", "terminated")]


def test_webhook_posts_events():
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(204)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    notifier = WebhookChangeNotifier("https://hooks.example.test/roster", http_client=client)
    notifier.publish(EVENTS)

    assert captured["url"] == "https://hooks.example.test/roster"
    assert captured["body"] == {
        "events": [
            {"entity_type": "batch", "entity_id": "bat-000001", "action": "updated"},
            {"entity_type": "worker", "entity_id": "wrk-000002", "action": "terminated"},
        ]
    }


def test_webhook_skips_empty_batches():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client = httpx.Client(transport=httpx.MockTransport(handler))
    WebhookChangeNotifier("https://hooks.example.test/roster", http_client=client).publish([])


def test_webhook_failure_is_logged(caplog):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "down"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    notifier = WebhookChangeNotifier("https://hooks.example.test/roster", http_client=client)

    with caplog.at_level(logging.WARNING):
        notifier.publish(EVENTS)

    assert any(record.getMessage() == "change notification failed" for record in caplog.records)


def test_logging_notifier(caplog):
    with caplog.at_level(logging.INFO):
        LoggingChangeNotifier().publish(EVENTS[:1])
    (record,) = [record for record in caplog.records if record.getMessage() == "changed"]
    assert record.entity_id == "bat-000001"


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("roster", logging.INFO, __file__, 1, "roster parsed", (), None)
    record.batch_id = "bat-000001"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "roster parsed"
    assert payload["level"] == "INFO"
    assert payload["batch_id"] == "bat-000001"


class _SlowService:
    def ingest(self, content, filename=None, signature=None):
        time.sleep(0.5)


def test_pipeline_parse_is_bounded():
    worker = PipelineWorker(_SlowService(), timeout=0.05)
    request = PipelineRequest(employer_id="emp-1", site_id="obra-1", filename="a.xlsx", content=b"x")
    with pytest.raises(IngestionTimeout):
        asyncio.run(worker.ingest(request))


def test_pipeline_submit_requires_period():
    worker = PipelineWorker(_SlowService(), timeout=1)
    request = PipelineRequest(employer_id="emp-1", site_id="obra-1", filename="a.xlsx", content=b"x")
    with pytest.raises(WorkflowValidationError):
        asyncio.run(worker.submit(SYSTEM_CONTEXT, request))


class _QuickService:
    def ingest(self, content, filename=None, signature=None):
        return None

    def submit_roster(self, caller, employer_id, site_id, period, **kwargs):
        return period


def test_pipeline_forgets_idle_period_locks():
    worker = PipelineWorker(_QuickService(), timeout=1)
    request = PipelineRequest(employer_id="emp-1", site_id="obra-1", filename="a.xlsx", content=b"x", period="2024-01")

    async def submit_twice():
        return await asyncio.gather(worker.submit(SYSTEM_CONTEXT, request), worker.submit(SYSTEM_CONTEXT, request))

    assert asyncio.run(submit_twice()) == ["2024-01", "2024-01"]
    assert worker._locks == {}
