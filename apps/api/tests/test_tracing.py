from __future__ import annotations

import json
import uuid
from collections.abc import Iterator

import httpx
import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from conftest import build_settings
from nexuscrm.core.database import Database
from nexuscrm.crm.models import OutboxEvent
from nexuscrm.crm.outbox import OutboxWorker
from nexuscrm.otel import setup_inmemory_otel, setup_otel, traced


@pytest.fixture(scope="module")
def _exporter() -> InMemorySpanExporter:
    return setup_inmemory_otel()


@pytest.fixture()
def span_exporter(_exporter: InMemorySpanExporter) -> Iterator[InMemorySpanExporter]:
    _exporter.clear()
    yield _exporter
    _exporter.clear()


def _spans(exporter: InMemorySpanExporter, name: str) -> list:
    return [span for span in exporter.get_finished_spans() if span.name == name]


async def test_request_span_contains_correlation_id(
    client: httpx.AsyncClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    response = await client.get("/health/live", headers={"X-Correlation-Id": "otel-corr-1"})

    assert response.status_code == 200
    spans = span_exporter.get_finished_spans()
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


async def test_upstream_calls_are_traced(client: httpx.AsyncClient, span_exporter: InMemorySpanExporter) -> None:
    await client.post(
        "/graphql",
        json={"query": "query { contactsCount }"},
        headers={"Authorization": "Bearer valid-token", "X-Correlation-Id": "otel-corr-2"},
    )

    verify_spans = _spans(span_exporter, "auth.token verification")
    assert verify_spans
    span = verify_spans[-1]
    assert span.attributes["peer.service"] == "auth"
    assert span.attributes["http.status_code"] == 200
    assert span.attributes["correlation_id"] == "otel-corr-2"


async def test_outbox_delivery_span_marks_failures(db: Database, span_exporter: InMemorySpanExporter) -> None:
    async def failing(payload: dict) -> None:
        raise RuntimeError("search store offline")

    async def _insert(session):
        event = OutboxEvent(organization_id=uuid.uuid4(), kind="test.trace", payload={})
        session.add(event)
        await session.flush()
        return event.id

    event_id = await db.query(_insert)
    worker = OutboxWorker(db, {"test.trace": failing}, build_settings(outbox_backoff_base_seconds=60))

    await worker.drain()

    spans = _spans(span_exporter, "outbox.deliver")
    assert len(spans) == 1
    assert spans[0].attributes["outbox_id"] == str(event_id)
    assert spans[0].attributes["kind"] == "test.trace"
    assert spans[0].attributes["attempt"] == 1
    assert spans[0].attributes["error"] is True


async def test_webhook_dispatch_is_traced(client: httpx.AsyncClient, span_exporter: InMemorySpanExporter) -> None:
    body = json.dumps({"type": "call.started", "callId": "vapi-unknown", "timestamp": "2026-03-01T10:00:00Z", "data": {}})

    response = await client.post("/webhooks/vapi", content=body, headers={"Content-Type": "application/json"})

    assert response.json() == {"received": True}
    spans = _spans(span_exporter, "vapi.webhook")
    assert spans
    assert spans[-1].attributes["event_type"] == "call.started"
    assert spans[-1].attributes["external_call_id"] == "vapi-unknown"


def test_traced_skips_missing_attributes(span_exporter: InMemorySpanExporter) -> None:
    with traced("nexuscrm.test", "test.span", contact_id=None, kind="contact"):
        pass

    span = _spans(span_exporter, "test.span")[0]
    assert span.attributes["kind"] == "contact"
    assert "contact_id" not in span.attributes
    assert "organization_id" not in span.attributes


def test_setup_otel_is_noop_when_disabled() -> None:
    assert setup_otel(build_settings(otel_enabled=False)) is None
