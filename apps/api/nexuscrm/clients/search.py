from __future__ import annotations

import logging
from typing import Any

import httpx

from nexuscrm.clients.base import ServiceClient
from nexuscrm.clients.schemas import (
    ContactEnrichment,
    EntityContext,
    RelatedCompany,
    SearchHealth,
    SearchResults,
    SimilarContact,
    StoredDocument,
)


logger = logging.getLogger("nexuscrm.clients")

DEFAULT_RELATIONSHIP_TYPES = ("HAS_CONTACT", "HAS_DEAL", "IN_INDUSTRY")


class SearchClient(ServiceClient):
    """Semantic search and knowledge graph operations on GraphRAG."""

    service_name = "graphrag"
    display_name = "GraphRAG"
    default_timeout = 30.0

    async def search(
        self,
        query: str,
        *,
        collections: list[str] | None = None,
        limit: int = 10,
        strategy: str = "semantic_chunks",
        rerank: bool = False,
    ) -> SearchResults:
        data = await self._request(
            "POST",
            "/api/search",
            operation="search",
            json={
                "query": query,
                "collections": collections or [],
                "limit": limit,
                "strategy": strategy,
                "rerank": rerank,
            },
        )
        return SearchResults.model_validate(data)

    async def find_similar_contacts(self, contact_id: str, limit: int = 10) -> list[SimilarContact]:
        data = await self._request(
            "POST",
            "/api/similarity/contacts",
            operation="similar contacts",
            json={"contactId": contact_id, "limit": limit},
        )
        return [SimilarContact.model_validate(item) for item in data.get("results", [])]

    async def find_related_companies(
        self,
        company_id: str,
        relationship_types: list[str] | None = None,
        max_depth: int = 2,
    ) -> list[RelatedCompany]:
        data = await self._request(
            "POST",
            "/api/graph/related-companies",
            operation="related companies",
            json={
                "companyId": company_id,
                "relationshipTypes": relationship_types or list(DEFAULT_RELATIONSHIP_TYPES),
                "maxDepth": max_depth,
            },
        )
        return [RelatedCompany.model_validate(item) for item in data.get("results", [])]

    async def store_document(self, content: str, metadata: dict[str, Any]) -> StoredDocument:
        logger.info(
            "graphrag.store_document",
            extra={"kind": metadata.get("type"), "service": self.service_name},
        )
        data = await self._request(
            "POST",
            "/api/documents",
            operation="store document",
            json={"content": content, "metadata": metadata},
        )
        return StoredDocument.model_validate(data)

    async def get_entity_context(
        self,
        entity_type: str,
        entity_id: str,
        context_types: list[str] | None = None,
    ) -> EntityContext:
        params = {"types": ",".join(context_types)} if context_types else None
        data = await self._request(
            "GET",
            f"/api/context/{entity_type}/{entity_id}",
            operation="entity context",
            params=params,
        )
        return EntityContext.model_validate(data)

    async def enrich_contact(self, contact_id: str) -> ContactEnrichment:
        data = await self._request(
            "POST",
            "/api/enrich/contact",
            operation="enrich contact",
            json={"contactId": contact_id},
        )
        return ContactEnrichment.model_validate(data)

    async def create_relationship(
        self,
        source_type: str,
        source_id: str,
        target_type: str,
        target_id: str,
        relationship_type: str,
        properties: dict[str, Any] | None = None,
    ) -> str:
        data = await self._request(
            "POST",
            "/api/graph/relationships",
            operation="create relationship",
            json={
                "source": {"type": source_type, "id": source_id},
                "target": {"type": target_type, "id": target_id},
                "relationshipType": relationship_type,
                "properties": properties or {},
            },
        )
        return str(data["relationshipId"])

    async def health_check(self) -> SearchHealth:  # type: ignore[override]
        try:
            response = await self._http.get(self.health_path)
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("upstream.health_failed", extra={"service": self.service_name, "error": str(exc)})
            return SearchHealth(postgres=False, neo4j=False, qdrant=False)
        if not isinstance(body, dict):
            return SearchHealth(postgres=False, neo4j=False, qdrant=False)
        return SearchHealth(
            postgres=body.get("postgres") == "healthy",
            neo4j=body.get("neo4j") == "healthy",
            qdrant=body.get("qdrant") == "healthy",
        )
