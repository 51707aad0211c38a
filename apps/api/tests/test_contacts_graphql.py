from __future__ import annotations

import json
from collections.abc import Callable

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import GRAPHRAG, UpstreamStub, asgi_client, error_codes, graphql
from nexuscrm.container import ServiceContainer
from nexuscrm.core.auth import AuthPrincipal
from nexuscrm.crm.models import OutboxEvent
from nexuscrm.crm.service import STORE_DOCUMENT_KIND


CREATE_CONTACT = """
mutation CreateContact($input: CreateContactInput!) {
  createContact(input: $input) {
    id
    firstName
    lastName
    fullName
    email
    leadStatus
    leadScore
    ownerId
    tags
  }
}
"""

UPDATE_CONTACT = """
mutation UpdateContact($id: ID!, $input: UpdateContactInput!) {
  updateContact(id: $id, input: $input) {
    id
    firstName
    lastName
    fullName
    jobTitle
    leadStatus
    leadScore
  }
}
"""

LIST_CONTACTS = """
query Contacts($limit: Int, $offset: Int, $filter: ContactFilterInput) {
  contacts(limit: $limit, offset: $offset, filter: $filter) {
    id
    fullName
  }
  contactsCount(filter: $filter)
}
"""


async def _outbox_rows(container: ServiceContainer) -> list[OutboxEvent]:
    async def _rows(session: AsyncSession):
        return list((await session.scalars(select(OutboxEvent))).all())

    return await container.db.query(_rows)


async def _create(client: httpx.AsyncClient, **fields: object) -> dict:
    body = await graphql(client, CREATE_CONTACT, {"input": fields})
    assert body.get("errors") is None, body
    return body["data"]["createContact"]


async def test_create_contact_applies_defaults(client: httpx.AsyncClient, principal: AuthPrincipal) -> None:
    contact = await _create(client, firstName="Ada", lastName="Lovelace")

    assert contact["fullName"] == "Ada Lovelace"
    assert contact["leadStatus"] == "NEW"
    assert contact["leadScore"] == 0
    assert contact["ownerId"] == principal.user_id
    assert contact["tags"] == []


async def test_create_contact_with_email_queues_search_document(
    client: httpx.AsyncClient,
    container: ServiceContainer,
    upstream: UpstreamStub,
) -> None:
    upstream.on("POST", GRAPHRAG, "/api/documents", json={"documentId": "doc-1", "chunks": 1})

    contact = await _create(client, firstName="Grace", lastName="Hopper", email="grace@example.com", tags=["vip"])

    rows = await _outbox_rows(container)
    assert len(rows) == 1
    assert rows[0].kind == STORE_DOCUMENT_KIND
    assert rows[0].status == "pending"
    assert upstream.calls("POST", GRAPHRAG, "/api/documents") == []

    delivered = await container.outbox_worker.drain()

    assert delivered == 1
    sent = upstream.calls("POST", GRAPHRAG, "/api/documents")
    assert len(sent) == 1
    payload = json.loads(sent[0].content)
    assert json.loads(payload["content"])["email"] == "grace@example.com"
    assert payload["metadata"]["entityId"] == contact["id"]
    assert payload["metadata"]["entityType"] == "contact"
    assert payload["metadata"]["tags"] == ["vip"]
    assert (await _outbox_rows(container))[0].status == "delivered"


async def test_create_contact_without_email_or_phone_queues_nothing(
    client: httpx.AsyncClient,
    container: ServiceContainer,
) -> None:
    await _create(client, firstName="Linus")

    assert await _outbox_rows(container) == []


async def test_create_contact_succeeds_when_search_store_is_down(
    client: httpx.AsyncClient,
    container: ServiceContainer,
    upstream: UpstreamStub,
) -> None:
    upstream.on("POST", GRAPHRAG, "/api/documents", status=503, json={"message": "unavailable"})

    contact = await _create(client, firstName="Barbara", email="barbara@example.com")
    assert contact["id"]

    assert await container.outbox_worker.drain() == 0
    rows = await _outbox_rows(container)
    assert rows[0].status == "pending"
    assert rows[0].attempts == 1
    assert "unavailable" in rows[0].last_error


async def test_update_contact_changes_only_supplied_fields(client: httpx.AsyncClient) -> None:
    contact = await _create(client, firstName="Alan", lastName="Turing", email="alan@example.com")

    body = await graphql(
        client,
        UPDATE_CONTACT,
        {"id": contact["id"], "input": {"firstName": "Alan M.", "leadStatus": "QUALIFIED", "leadScore": 80}},
    )

    assert body.get("errors") is None, body
    updated = body["data"]["updateContact"]
    assert updated["fullName"] == "Alan M. Turing"
    assert updated["lastName"] == "Turing"
    assert updated["leadStatus"] == "QUALIFIED"
    assert updated["leadScore"] == 80


async def test_update_contact_can_clear_nullable_field(client: httpx.AsyncClient) -> None:
    contact = await _create(client, firstName="Edsger")
    await graphql(client, UPDATE_CONTACT, {"id": contact["id"], "input": {"jobTitle": "Professor"}})

    body = await graphql(client, UPDATE_CONTACT, {"id": contact["id"], "input": {"jobTitle": None}})

    assert body["data"]["updateContact"]["jobTitle"] is None


async def test_update_contact_rejects_empty_input(client: httpx.AsyncClient) -> None:
    contact = await _create(client, firstName="Donald")

    body = await graphql(client, UPDATE_CONTACT, {"id": contact["id"], "input": {}})

    assert error_codes(body) == ["BAD_USER_INPUT"]
    assert body["errors"][0]["message"] == "No fields to update"


async def test_update_contact_rejects_out_of_range_score_and_null_status(client: httpx.AsyncClient) -> None:
    contact = await _create(client, firstName="Frances")

    too_high = await graphql(client, UPDATE_CONTACT, {"id": contact["id"], "input": {"leadScore": 150}})
    nulled = await graphql(client, UPDATE_CONTACT, {"id": contact["id"], "input": {"leadStatus": None}})

    assert error_codes(too_high) == ["BAD_USER_INPUT"]
    assert error_codes(nulled) == ["BAD_USER_INPUT"]


async def test_update_missing_contact_is_not_found(client: httpx.AsyncClient) -> None:
    body = await graphql(
        client,
        UPDATE_CONTACT,
        {"id": "00000000-0000-0000-0000-000000000001", "input": {"firstName": "Ghost"}},
    )

    assert error_codes(body) == ["NOT_FOUND"]


async def test_deleted_contact_is_hidden_from_reads(client: httpx.AsyncClient) -> None:
    keep = await _create(client, firstName="Keep")
    gone = await _create(client, firstName="Gone")

    deleted = await graphql(client, "mutation($id: ID!) { deleteContact(id: $id) }", {"id": gone["id"]})
    assert deleted["data"]["deleteContact"] is True

    listing = await graphql(client, LIST_CONTACTS)
    assert [item["id"] for item in listing["data"]["contacts"]] == [keep["id"]]
    assert listing["data"]["contactsCount"] == 1

    single = await graphql(client, "query($id: ID!) { contact(id: $id) { id } }", {"id": gone["id"]})
    assert single["data"]["contact"] is None

    again = await graphql(client, "mutation($id: ID!) { deleteContact(id: $id) }", {"id": gone["id"]})
    assert again["data"]["deleteContact"] is False


async def test_contacts_filter_by_search_and_score(client: httpx.AsyncClient) -> None:
    await _create(client, firstName="Margaret", lastName="Hamilton")
    other = await _create(client, firstName="Katherine", lastName="Johnson")
    await graphql(client, UPDATE_CONTACT, {"id": other["id"], "input": {"leadScore": 90}})

    by_name = await graphql(client, LIST_CONTACTS, {"filter": {"search": "hamil"}})
    by_score = await graphql(client, LIST_CONTACTS, {"filter": {"minLeadScore": 50}})

    assert [item["fullName"] for item in by_name["data"]["contacts"]] == ["Margaret Hamilton"]
    assert [item["id"] for item in by_score["data"]["contacts"]] == [other["id"]]
    assert by_score["data"]["contactsCount"] == 1


async def test_page_size_is_clamped_to_configured_maximum(
    make_container: Callable[..., ServiceContainer],
) -> None:
    container = make_container(graphql_max_limit=2)
    async with asgi_client(container) as client:
        for name in ("One", "Two", "Three"):
            await _create(client, firstName=name)

        body = await graphql(client, LIST_CONTACTS, {"limit": 100})

    assert len(body["data"]["contacts"]) == 2
    assert body["data"]["contactsCount"] == 3


async def test_negative_limit_is_rejected(client: httpx.AsyncClient) -> None:
    body = await graphql(client, LIST_CONTACTS, {"limit": -1})

    assert "BAD_USER_INPUT" in error_codes(body)


async def test_malformed_id_is_rejected(client: httpx.AsyncClient) -> None:
    body = await graphql(client, "query { contact(id: \"not-a-uuid\") { id } }")

    assert error_codes(body) == ["BAD_USER_INPUT"]


async def test_anonymous_and_rejected_tokens_are_unauthenticated(client: httpx.AsyncClient) -> None:
    anonymous = await graphql(client, LIST_CONTACTS, token=None)
    rejected = await graphql(client, LIST_CONTACTS, token="expired-token")

    assert anonymous["data"] is None
    assert set(error_codes(anonymous)) == {"UNAUTHENTICATED"}
    assert set(error_codes(rejected)) == {"UNAUTHENTICATED"}


async def test_enrich_contact_stores_enrichment(client: httpx.AsyncClient, upstream: UpstreamStub) -> None:
    upstream.on(
        "POST",
        GRAPHRAG,
        "/api/enrich/contact",
        json={"enrichmentData": {"linkedin": "in/ada"}, "sources": ["clearbit", "linkedin"], "confidence": 0.9},
    )
    contact = await _create(client, firstName="Ada")

    body = await graphql(
        client,
        "mutation($id: ID!) { enrichContact(id: $id) { enrichmentData enrichmentSource enrichmentConfidence enrichedAt } }",
        {"id": contact["id"]},
    )

    enriched = body["data"]["enrichContact"]
    assert enriched["enrichmentData"] == {"linkedin": "in/ada"}
    assert enriched["enrichmentSource"] == "clearbit,linkedin"
    assert enriched["enrichmentConfidence"] == 0.9
    assert enriched["enrichedAt"]
    sent = upstream.calls("POST", GRAPHRAG, "/api/enrich/contact")
    assert json.loads(sent[0].content) == {"contactId": contact["id"]}


async def test_enrich_contact_respects_feature_flag(make_container: Callable[..., ServiceContainer]) -> None:
    container = make_container(enable_ai_enrichment=False)
    async with asgi_client(container) as client:
        contact = await _create(client, firstName="Ada")
        body = await graphql(client, "mutation($id: ID!) { enrichContact(id: $id) { id } }", {"id": contact["id"]})

    assert error_codes(body) == ["FEATURE_DISABLED"]


async def test_upstream_failure_is_reported_with_service_code(client: httpx.AsyncClient, upstream: UpstreamStub) -> None:
    upstream.on("POST", GRAPHRAG, "/api/enrich/contact", status=500, json={"error": "graph offline"})
    contact = await _create(client, firstName="Ada")

    body = await graphql(client, "mutation($id: ID!) { enrichContact(id: $id) { id } }", {"id": contact["id"]})

    error = body["errors"][0]
    assert error["extensions"] == {"code": "UPSTREAM_SERVICE_ERROR", "service": "graphrag"}
    assert error["message"] == "GraphRAG enrich contact failed: graph offline"
