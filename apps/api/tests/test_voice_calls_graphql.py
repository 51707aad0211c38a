from __future__ import annotations

import json
from collections.abc import Callable

import httpx

from conftest import ORCHESTRATION, VAPI, UpstreamStub, asgi_client, error_codes, graphql
from nexuscrm.container import ServiceContainer


MAKE_CALL = """
mutation MakeCall($input: MakeCallInput!) {
  makeCall(input: $input) { callId status message }
}
"""


def _stub_platform(upstream: UpstreamStub) -> None:
    upstream.on("POST", ORCHESTRATION, "/api/orchestration/execute", json={"executionId": "exec-call", "status": "running"})
    upstream.on("POST", VAPI, "/call", json={"id": "vapi-77", "status": "queued"})
    upstream.on("DELETE", VAPI, "/call/vapi-77", json={})


async def test_make_call_registers_orchestration_then_dials(client: httpx.AsyncClient, upstream: UpstreamStub) -> None:
    _stub_platform(upstream)

    body = await graphql(
        client,
        MAKE_CALL,
        {
            "input": {
                "toNumber": "+15550123",
                "script": "Hello, this is Nexus.",
                "tools": [{"name": "schedule_follow_up", "description": "Book time", "parameters": {"date": {"type": "string"}}}],
            }
        },
    )

    assert body.get("errors") is None, body
    result = body["data"]["makeCall"]
    assert result["status"] == "queued"
    assert result["message"] == "Call initiated successfully"

    goal = json.loads(upstream.calls("POST", ORCHESTRATION, "/api/orchestration/execute")[0].content)
    assert goal["goal"] == "Make a voice call to +15550123 using the following script: Hello, this is Nexus."
    assert goal["metadata"]["tools"] == [{"name": "schedule_follow_up", "description": "Book time"}]

    call = await graphql(
        client,
        "query($id: ID!) { voiceCall(id: $id) { status externalCallId toNumber platform metadata } }",
        {"id": result["callId"]},
    )
    stored = call["data"]["voiceCall"]
    assert stored["status"] == "INITIATED"
    assert stored["externalCallId"] == "vapi-77"
    assert stored["platform"] == "VAPI"
    assert stored["metadata"]["orchestrationExecutionId"] == "exec-call"


async def test_cancel_call_mutation(client: httpx.AsyncClient, upstream: UpstreamStub) -> None:
    _stub_platform(upstream)
    made = await graphql(client, MAKE_CALL, {"input": {"toNumber": "+15550124", "script": "Hi"}})
    call_id = made["data"]["makeCall"]["callId"]

    body = await graphql(client, "mutation($id: ID!) { cancelCall(callId: $id) }", {"id": call_id})

    assert body["data"]["cancelCall"] is True
    listing = await graphql(client, "query { voiceCalls(status: CANCELLED) { id } }")
    assert [item["id"] for item in listing["data"]["voiceCalls"]] == [call_id]


async def test_make_call_respects_feature_flag(
    make_container: Callable[..., ServiceContainer],
    upstream: UpstreamStub,
) -> None:
    _stub_platform(upstream)
    container = make_container(enable_voice_calling=False)

    async with asgi_client(container) as client:
        body = await graphql(client, MAKE_CALL, {"input": {"toNumber": "+15550125", "script": "Hi"}})

    assert error_codes(body) == ["FEATURE_DISABLED"]
    assert upstream.calls("POST", VAPI, "/call") == []


async def test_orchestration_failure_prevents_dialing(client: httpx.AsyncClient, upstream: UpstreamStub) -> None:
    _stub_platform(upstream)
    upstream.on("POST", ORCHESTRATION, "/api/orchestration/execute", status=503, json={"message": "busy"})

    body = await graphql(client, MAKE_CALL, {"input": {"toNumber": "+15550126", "script": "Hi"}})

    assert error_codes(body) == ["UPSTREAM_SERVICE_ERROR"]
    assert upstream.calls("POST", VAPI, "/call") == []
