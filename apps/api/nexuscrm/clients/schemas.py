from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class UpstreamModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class OrchestrationResult(UpstreamModel):
    execution_id: str
    status: str
    output: Any = None
    duration: float | None = None


class ReasoningResult(UpstreamModel):
    output: Any = None
    confidence: float | None = None
    model: str | None = None
    tokens_used: int | None = None
    cost: float | None = None


class SearchResults(UpstreamModel):
    results: list[dict[str, Any]] = Field(default_factory=list)
    total_found: int = 0


class SimilarContact(UpstreamModel):
    id: str
    similarity: float
    attributes: dict[str, Any] | None = None


class RelatedCompany(UpstreamModel):
    id: str
    relationship_path: list[str] = Field(default_factory=list)
    distance: int = 0


class StoredDocument(UpstreamModel):
    document_id: str
    chunks: int = 0


class EntityContext(UpstreamModel):
    documents: list[Any] = Field(default_factory=list)
    activities: list[Any] = Field(default_factory=list)
    relationships: list[Any] = Field(default_factory=list)
    insights: list[Any] = Field(default_factory=list)


class ContactEnrichment(UpstreamModel):
    enrichment_data: dict[str, Any] = Field(default_factory=dict)
    sources: list[str] = Field(default_factory=list)
    confidence: float = 0.0


class Coordinates(UpstreamModel):
    lat: float
    lng: float


class NearbyEntity(UpstreamModel):
    id: str
    name: str | None = None
    distance: float | None = None
    coordinates: Coordinates | None = None
    h3_index: str | None = None


class GeocodeResult(UpstreamModel):
    lat: float
    lng: float
    formatted_address: str | None = None
    h3_index: str | None = None
    confidence: float | None = None


class ReverseGeocodeResult(UpstreamModel):
    address: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    postal_code: str | None = None
    h3_index: str | None = None


class TerritoryDefinition(UpstreamModel):
    territory_id: str
    h3_cells: list[str] = Field(default_factory=list)
    area_km2: float | None = None


class TerritoryMatch(UpstreamModel):
    territory_id: str
    territory_name: str | None = None
    assigned_to: str | None = None


class RoutePlan(UpstreamModel):
    optimized_sequence: list[str] = Field(default_factory=list)
    total_distance: float | None = None
    estimated_duration: float | None = None
    waypoints: list[dict[str, Any]] = Field(default_factory=list)


class Geofence(UpstreamModel):
    geofence_id: str
    h3_index: str | None = None


class AuthUser(UpstreamModel):
    id: str
    email: str
    organization_id: str
    role: str
    permissions: list[str] = Field(default_factory=list)


class Organization(UpstreamModel):
    id: str
    name: str
    plan: str | None = None
    features: list[str] = Field(default_factory=list)
    limits: dict[str, float] = Field(default_factory=dict)


class UsageCheck(UpstreamModel):
    allowed: bool
    current: float = 0
    limit: float = 0
    remaining: float = 0


@dataclass(slots=True)
class SearchHealth:
    postgres: bool
    neo4j: bool
    qdrant: bool

    @property
    def healthy(self) -> bool:
        return self.postgres and self.neo4j and self.qdrant
