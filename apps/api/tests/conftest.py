from __future__ import annotations

import json
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx
import pytest
from sqlalchemy.pool import StaticPool

from nexuscrm.clients import PlatformClients
from nexuscrm.clients.auth import AuthClient
from nexuscrm.clients.geo import GeoClient
from nexuscrm.clients.orchestration import OrchestrationClient
from nexuscrm.clients.reasoning import ReasoningClient
from nexuscrm.clients.search import SearchClient
from nexuscrm.container import ServiceContainer
from nexuscrm.core.auth import AuthPrincipal
from nexuscrm.core.config import Settings, get_settings
from nexuscrm.core.database import Base, Database
from nexuscrm.main import create_app
from nexuscrm.voice.vapi import VapiClient


ORCHESTRATION = "nexus-orchestration"
MAGEAGENT = "nexus-mageagent"
GRAPHRAG = "nexus-graphrag"
GEOAGENT = "nexus-geoagent"
AUTH = "nexus-auth"
VAPI = "api.vapi.ai"

VALID_TOKEN = "valid-token"

Responder = Callable[[httpx.Request], httpx.Response]


class UpstreamStub:
    """Routes requests for every platform host and records what was sent."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Responder] = {}

    def on(self, method: str, host: str, path: str, *, status: int = 200, json: Any = None) -> None:
        self.routes[(method, f"{host}{path}")] = lambda request: httpx.Response(status, json=json)

    def on_call(self, method: str, host: str, path: str, responder: Responder) -> None:
        self.routes[(method, f"{host}{path}")] = responder

    def calls(self, method: str, host: str, path: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and request.url.host == host and request.url.path == path
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responder = self.routes.get((request.method, f"{request.url.host}{request.url.path}"))
        if responder is None:
            return httpx.Response(404, json={"message": f"no stub for {request.method} {request.url.path}"})
        return responder(request)


def auth_user_payload(principal: AuthPrincipal) -> dict[str, Any]:
    return {
        "valid": True,
        "user": {
            "id": principal.user_id,
            "email": principal.email,
            "organizationId": str(principal.organization_id),
            "role": principal.role,
            "permissions": sorted(principal.permissions),
        },
    }


def build_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_url": "sqlite+aiosqlite://",
        "vapi_api_key": "vapi-test-key",
        "vapi_phone_number_id": "phone-1",
        "outbox_worker_enabled": False,
        "outbox_backoff_base_seconds": 2.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def create_database() -> Database:
    db = Database(
        "sqlite+aiosqlite://",
        engine_options={"poolclass": StaticPool, "connect_args": {"check_same_thread": False}},
        schema_translate_map={"nexuscrm": None},
    )
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return db


def build_clients(upstream: UpstreamStub) -> PlatformClients:
    transport = httpx.MockTransport(upstream)
    return PlatformClients(
        orchestration=OrchestrationClient(f"http://{ORCHESTRATION}:9109", transport=transport),
        reasoning=ReasoningClient(f"http://{MAGEAGENT}:9080", transport=transport),
        search=SearchClient(f"http://{GRAPHRAG}:9090", transport=transport),
        geo=GeoClient(f"http://{GEOAGENT}:9103", transport=transport),
        auth=AuthClient(f"http://{AUTH}:9101", transport=transport),
    )


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    get_settings.cache_clear()


@pytest.fixture()
def organization_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def principal(organization_id: uuid.UUID) -> AuthPrincipal:
    return AuthPrincipal(
        user_id=str(uuid.uuid4()),
        email="rep@example.com",
        organization_id=organization_id,
        role="admin",
        token=VALID_TOKEN,
        permissions=frozenset({"crm.contacts.read", "crm.contacts.write"}),
    )


@pytest.fixture()
def upstream(principal: AuthPrincipal) -> UpstreamStub:
    stub = UpstreamStub()

    def verify(request: httpx.Request) -> httpx.Response:
        if json.loads(request.content).get("token") == VALID_TOKEN:
            return httpx.Response(200, json=auth_user_payload(principal))
        return httpx.Response(401, json={"message": "invalid token"})

    stub.on_call("POST", AUTH, "/api/auth/verify", verify)
    for host in (ORCHESTRATION, MAGEAGENT, GEOAGENT, AUTH):
        stub.on("GET", host, "/health", json={"status": "ok"})
    stub.on("GET", GRAPHRAG, "/health", json={"postgres": "healthy", "neo4j": "healthy", "qdrant": "healthy"})
    stub.on("GET", VAPI, "/call", json=[])
    return stub


@pytest.fixture()
async def db() -> AsyncGenerator[Database, None]:
    database = await create_database()
    try:
        yield database
    finally:
        await database.dispose()


@pytest.fixture()
def make_container(db: Database, upstream: UpstreamStub) -> Callable[..., ServiceContainer]:
    def _make(**setting_overrides: Any) -> ServiceContainer:
        settings = build_settings(**setting_overrides)
        transport = httpx.MockTransport(upstream)
        vapi = VapiClient(
            f"https://{VAPI}",
            api_key=settings.vapi_api_key,
            phone_number_id=settings.vapi_phone_number_id,
            transport=transport,
        )
        return ServiceContainer.build(settings, db=db, clients=build_clients(upstream), vapi=vapi)

    return _make


@pytest.fixture()
def container(make_container: Callable[..., ServiceContainer]) -> ServiceContainer:
    return make_container()


@asynccontextmanager
async def asgi_client(container: ServiceContainer) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=create_app(container))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
async def client(container: ServiceContainer) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with asgi_client(container) as test_client:
        yield test_client


async def graphql(
    client: httpx.AsyncClient,
    query: str,
    variables: dict[str, Any] | None = None,
    *,
    token: str | None = VALID_TOKEN,
) -> dict[str, Any]:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    response = await client.post("/graphql", json={"query": query, "variables": variables or {}}, headers=headers)
    assert response.status_code == 200
    return response.json()


def error_codes(body: dict[str, Any]) -> list[str]:
    return [error["extensions"]["code"] for error in body.get("errors") or []]
