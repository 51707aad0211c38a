from __future__ import annotations

from typing import Any

from nexuscrm.clients.base import ServiceClient
from nexuscrm.clients.schemas import (
    GeocodeResult,
    Geofence,
    NearbyEntity,
    ReverseGeocodeResult,
    RoutePlan,
    TerritoryDefinition,
    TerritoryMatch,
)


class GeoClient(ServiceClient):
    service_name = "geoagent"
    display_name = "GeoAgent"
    default_timeout = 15.0

    async def proximity_search(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        entity_type: str,
        *,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
    ) -> list[NearbyEntity]:
        data = await self._request(
            "POST",
            "/api/proximity",
            operation="proximity search",
            json={
                "location": {"lat": lat, "lng": lng},
                "radiusKm": radius_km,
                "entityType": entity_type,
                "filters": filters or {},
                "limit": limit,
            },
        )
        return [NearbyEntity.model_validate(item) for item in data.get("results", [])]

    async def geocode(self, address: str) -> GeocodeResult:
        data = await self._request("POST", "/api/geocode", operation="geocode", json={"address": address})
        return GeocodeResult.model_validate(data)

    async def reverse_geocode(self, lat: float, lng: float) -> ReverseGeocodeResult:
        data = await self._request(
            "POST",
            "/api/reverse-geocode",
            operation="reverse geocode",
            json={"lat": lat, "lng": lng},
        )
        return ReverseGeocodeResult.model_validate(data)

    async def define_territory(
        self,
        name: str,
        territory_type: str,
        *,
        polygon: list[dict[str, float]] | None = None,
        center: dict[str, float] | None = None,
        radius_km: float | None = None,
        assigned_to: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TerritoryDefinition:
        payload: dict[str, Any] = {"name": name, "type": territory_type}
        optional = {
            "polygon": polygon,
            "center": center,
            "radiusKm": radius_km,
            "assignedTo": assigned_to,
            "metadata": metadata,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        data = await self._request("POST", "/api/territory", operation="define territory", json=payload)
        return TerritoryDefinition.model_validate(data)

    async def find_territory_for_location(self, lat: float, lng: float) -> TerritoryMatch | None:
        data = await self._request(
            "POST",
            "/api/territory/find",
            operation="find territory",
            json={"lat": lat, "lng": lng},
        )
        territory = data.get("territory") if isinstance(data, dict) else None
        if not territory:
            return None
        return TerritoryMatch.model_validate(territory)

    async def optimize_route(
        self,
        start_location: dict[str, float],
        locations: list[dict[str, Any]],
        *,
        end_location: dict[str, float] | None = None,
        optimization_goal: str = "distance",
    ) -> RoutePlan:
        payload: dict[str, Any] = {
            "startLocation": start_location,
            "locations": locations,
            "optimizationGoal": optimization_goal,
        }
        if end_location is not None:
            payload["endLocation"] = end_location
        data = await self._request("POST", "/api/route/optimize", operation="route optimization", json=payload)
        return RoutePlan.model_validate(data)

    async def create_geofence(
        self,
        name: str,
        center: dict[str, float],
        radius_meters: float,
        *,
        triggers: dict[str, str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Geofence:
        data = await self._request(
            "POST",
            "/api/geofence",
            operation="create geofence",
            json={
                "name": name,
                "center": center,
                "radiusMeters": radius_meters,
                "triggers": triggers or {},
                "metadata": metadata or {},
            },
        )
        return Geofence.model_validate(data)

    async def get_entities_in_territory(
        self,
        territory_id: str,
        entity_type: str,
        filters: dict[str, Any] | None = None,
    ) -> list[NearbyEntity]:
        data = await self._request(
            "GET",
            f"/api/territory/{territory_id}/entities",
            operation="territory entities",
            params={"entityType": entity_type, **(filters or {})},
        )
        return [NearbyEntity.model_validate(item) for item in data.get("results", [])]
