from __future__ import annotations

import json
import logging
import sys

import httpx
import pytest

from conftest import AUTH, UpstreamStub, graphql
from nexuscrm.context import reset_organization_id, set_organization_id
from nexuscrm.logging import JsonLogFormatter, RequestContextFilter, configure_logging


async def test_correlation_id_is_echoed_when_provided(client: httpx.AsyncClient) -> None:
    response = await client.get("/health/live", headers={"X-Correlation-Id": "abc-123"})

    assert response.headers["x-correlation-id"] == "abc-123"


async def test_correlation_id_is_generated_when_missing(client: httpx.AsyncClient) -> None:
    first = await client.get("/health/live")
    second = await client.get("/health/live")

    assert first.headers["x-correlation-id"]
    assert first.headers["x-correlation-id"] != second.headers["x-correlation-id"]


async def test_unsafe_correlation_id_is_replaced(client: httpx.AsyncClient) -> None:
    response = await client.get("/health/live", headers={"X-Correlation-Id": "bad id with spaces"})

    assert response.headers["x-correlation-id"] != "bad id with spaces"
    assert len(response.headers["x-correlation-id"]) == 36


async def test_correlation_id_reaches_platform_services(client: httpx.AsyncClient, upstream: UpstreamStub) -> None:
    response = await client.post(
        "/graphql",
        json={"query": "query { contactsCount }"},
        headers={"Authorization": "Bearer valid-token", "X-Correlation-Id": "corr-graphql-1"},
    )

    assert response.status_code == 200
    verify = upstream.calls("POST", AUTH, "/api/auth/verify")[-1]
    assert verify.headers["x-correlation-id"] == "corr-graphql-1"


async def test_request_log_line_has_route_and_status(
    client: httpx.AsyncClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="nexuscrm.request")

    await client.get("/health", headers={"X-Correlation-Id": "corr-log-1", "User-Agent": "health-checker/1.0"})

    records = [record for record in caplog.records if record.getMessage() == "http.request"]
    assert records
    record = records[-1]
    assert record.levelno == logging.INFO
    assert record.method == "GET"
    assert record.path == "/health"
    assert record.status_code == 200
    assert record.user_agent == "health-checker/1.0"
    assert record.correlation_id == "corr-log-1"


async def test_health_check_requests_log_at_debug(client: httpx.AsyncClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="nexuscrm.request")

    await client.get("/health/live")

    records = [record for record in caplog.records if record.getMessage() == "http.request"]
    assert [record.levelno for record in records] == [logging.DEBUG]


async def test_graphql_errors_are_logged(client: httpx.AsyncClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="nexuscrm.graphql")

    await graphql(client, "query { contact(id: \"nope\") { id } }")

    messages = [(record.getMessage(), getattr(record, "error", None)) for record in caplog.records]
    assert ("graphql.error", "Invalid id: nope") in messages


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.getLogger("nexuscrm.test").makeRecord(
        "nexuscrm.test",
        logging.INFO,
        __file__,
        1,
        "call.initiated",
        (),
        None,
        extra={"call_id": "c1", "status": "queued", "secret_token": "hidden", "error": "x" * 600},
    )
    record.correlation_id = "corr-format-1"

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "call.initiated"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "nexuscrm.test"
    assert payload["correlation_id"] == "corr-format-1"
    assert payload["fields"]["call_id"] == "c1"
    assert payload["fields"]["status"] == "queued"
    assert "secret_token" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500


def test_json_formatter_includes_exception() -> None:
    try:
        raise ValueError("bad payload")
    except ValueError:
        record = logging.getLogger("nexuscrm.test").makeRecord(
            "nexuscrm.test",
            logging.ERROR,
            __file__,
            1,
            "webhook.processing_failed",
            (),
            exc_info=sys.exc_info(),
        )

    payload = json.loads(JsonLogFormatter().format(record))

    assert "ValueError: bad payload" in payload["fields"]["exception"]


def test_organization_id_in_extra_is_accepted_after_configure(caplog: pytest.LogCaptureFixture) -> None:
    configure_logging()
    caplog.set_level(logging.INFO, logger="nexuscrm.test")

    logging.getLogger("nexuscrm.test").info("contact.created", extra={"organization_id": "org-extra"})

    record = caplog.records[-1]
    assert record.getMessage() == "contact.created"
    assert record.organization_id == "org-extra"


def test_context_filter_fills_organization_from_request_context() -> None:
    record = logging.makeLogRecord({"name": "nexuscrm.test", "msg": "db.query"})
    token = set_organization_id("org-context")
    try:
        assert RequestContextFilter().filter(record) is True
    finally:
        reset_organization_id(token)

    assert record.organization_id == "org-context"
    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["fields"]["organization_id"] == "org-context"


def test_context_filter_keeps_explicit_organization() -> None:
    record = logging.makeLogRecord({"name": "nexuscrm.test", "msg": "call.requested", "organization_id": "org-explicit"})
    token = set_organization_id("org-context")
    try:
        RequestContextFilter().filter(record)
    finally:
        reset_organization_id(token)

    assert record.organization_id == "org-explicit"
