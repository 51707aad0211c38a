from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass

from nexuscrm.clients.auth import AuthClient
from nexuscrm.clients.base import ServiceClient
from nexuscrm.clients.geo import GeoClient
from nexuscrm.clients.orchestration import OrchestrationClient
from nexuscrm.clients.reasoning import ReasoningClient
from nexuscrm.clients.schemas import SearchHealth
from nexuscrm.clients.search import SearchClient
from nexuscrm.core.config import Settings


logger = logging.getLogger("nexuscrm.clients")


@dataclass(slots=True)
class PlatformClients:
    orchestration: OrchestrationClient
    reasoning: ReasoningClient
    search: SearchClient
    geo: GeoClient
    auth: AuthClient

    @classmethod
    def from_settings(cls, settings: Settings) -> PlatformClients:
        return cls(
            orchestration=OrchestrationClient(settings.orchestration_agent_url),
            reasoning=ReasoningClient(settings.mage_agent_url),
            search=SearchClient(settings.graphrag_url),
            geo=GeoClient(settings.geo_agent_url),
            auth=AuthClient(settings.auth_service_url),
        )

    async def aclose(self) -> None:
        for client in (self.orchestration, self.reasoning, self.search, self.geo, self.auth):
            await client.aclose()


@dataclass(slots=True)
class ServicesHealth:
    orchestration: bool
    mageagent: bool
    graphrag: SearchHealth
    geoagent: bool
    auth: bool

    @property
    def all_healthy(self) -> bool:
        return self.orchestration and self.mageagent and self.graphrag.healthy and self.geoagent and self.auth

    def as_dict(self) -> dict[str, object]:
        return {
            "orchestration": self.orchestration,
            "mageagent": self.mageagent,
            "graphrag": {
                "postgres": self.graphrag.postgres,
                "neo4j": self.graphrag.neo4j,
                "qdrant": self.graphrag.qdrant,
            },
            "geoagent": self.geoagent,
            "auth": self.auth,
        }


async def _safe(check: Awaitable[bool], name: str) -> bool:
    try:
        return bool(await check)
    except Exception as exc:
        logger.warning("upstream.health_failed", extra={"service": name, "error": str(exc)})
        return False


async def _safe_search(client: SearchClient) -> SearchHealth:
    try:
        return await client.health_check()
    except Exception as exc:
        logger.warning("upstream.health_failed", extra={"service": client.service_name, "error": str(exc)})
        return SearchHealth(postgres=False, neo4j=False, qdrant=False)


async def health_check_all(clients: PlatformClients) -> ServicesHealth:
    orchestration, mageagent, graphrag, geoagent, auth = await asyncio.gather(
        _safe(clients.orchestration.health_check(), "orchestration"),
        _safe(clients.reasoning.health_check(), "mageagent"),
        _safe_search(clients.search),
        _safe(clients.geo.health_check(), "geoagent"),
        _safe(clients.auth.health_check(), "auth"),
    )
    return ServicesHealth(
        orchestration=orchestration,
        mageagent=mageagent,
        graphrag=graphrag,
        geoagent=geoagent,
        auth=auth,
    )


__all__ = [
    "AuthClient",
    "GeoClient",
    "OrchestrationClient",
    "PlatformClients",
    "ReasoningClient",
    "SearchClient",
    "ServiceClient",
    "ServicesHealth",
    "health_check_all",
]
