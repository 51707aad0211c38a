from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest

from conftest import AUTH, GEOAGENT, GRAPHRAG, VALID_TOKEN, UpstreamStub, asgi_client, graphql
from nexuscrm import __version__
from nexuscrm.container import ServiceContainer
from nexuscrm.errors import DependencyUnavailableError
from nexuscrm.main import _check_dependencies


AUTH_HEADER = {"Authorization": f"Bearer {VALID_TOKEN}"}


async def test_health_reports_healthy_platform(client: httpx.AsyncClient) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["service"] == "nexus-crm"
    assert body["version"] == __version__
    assert body["database"] is True
    assert body["services"]["graphrag"] == {"postgres": True, "neo4j": True, "qdrant": True}
    assert body["timestamp"]


async def test_health_degrades_when_a_service_is_down(client: httpx.AsyncClient, upstream: UpstreamStub) -> None:
    upstream.on("GET", GEOAGENT, "/health", status=503)

    response = await client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "degraded"
    assert response.json()["services"]["geoagent"] is False


async def test_readiness_and_liveness(client: httpx.AsyncClient) -> None:
    ready = await client.get("/health/ready")
    live = await client.get("/health/live")

    assert ready.status_code == 200
    assert ready.json() == {"ready": True}
    assert live.json() == {"alive": True}


async def test_graphql_health_is_public(client: httpx.AsyncClient, upstream: UpstreamStub) -> None:
    upstream.on("GET", GRAPHRAG, "/health", json={"postgres": "healthy", "neo4j": "healthy", "qdrant": "down"})

    body = await graphql(
        client,
        "query { health { status services { mage geo graphRAG { postgres qdrant } } } }",
        token=None,
    )

    health = body["data"]["health"]
    assert health["status"] == "degraded"
    assert health["services"]["graphRAG"] == {"postgres": True, "qdrant": False}
    assert health["services"]["mage"] is True


async def test_metrics_requires_authentication(client: httpx.AsyncClient) -> None:
    response = await client.get("/metrics")

    assert response.status_code == 401
    assert response.json()["detail"] == "No authorization token provided"


async def test_metrics_requires_permission(client: httpx.AsyncClient, upstream: UpstreamStub) -> None:
    upstream.on("POST", AUTH, "/api/auth/check-permission", json={"hasPermission": False})

    response = await client.get("/metrics", headers=AUTH_HEADER)

    assert response.status_code == 403


async def test_metrics_hidden_when_disabled(client: httpx.AsyncClient, upstream: UpstreamStub) -> None:
    upstream.on("POST", AUTH, "/api/auth/check-permission", json={"hasPermission": True})

    response = await client.get("/metrics", headers=AUTH_HEADER)

    assert response.status_code == 404
    assert response.json()["detail"] == "not found"


async def test_metrics_exposed_when_enabled(
    make_container: Callable[..., ServiceContainer],
    upstream: UpstreamStub,
) -> None:
    upstream.on("POST", AUTH, "/api/auth/check-permission", json={"hasPermission": True})
    container = make_container(metrics_enabled=True)

    async with asgi_client(container) as client:
        await client.get("/health/live")
        response = await client.get("/metrics", headers=AUTH_HEADER)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "http_requests_total" in response.text


async def test_startup_check_passes_when_only_optional_services_are_down(
    container: ServiceContainer,
    upstream: UpstreamStub,
) -> None:
    upstream.on("GET", GEOAGENT, "/health", status=503)

    await _check_dependencies(container)


async def test_startup_check_fails_without_auth(container: ServiceContainer, upstream: UpstreamStub) -> None:
    upstream.on("GET", AUTH, "/health", status=503)

    with pytest.raises(DependencyUnavailableError, match="Auth service is unavailable"):
        await _check_dependencies(container)


async def test_startup_check_fails_without_search_store_database(
    container: ServiceContainer,
    upstream: UpstreamStub,
) -> None:
    upstream.on("GET", GRAPHRAG, "/health", json={"postgres": "down", "neo4j": "healthy", "qdrant": "healthy"})

    with pytest.raises(DependencyUnavailableError, match="PostgreSQL is unavailable"):
        await _check_dependencies(container)
