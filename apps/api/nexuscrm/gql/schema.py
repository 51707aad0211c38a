from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import datetime, timezone
from typing import Any

import strawberry
from graphql import GraphQLError
from graphql.validation import NoSchemaIntrospectionCustomRule
from strawberry.extensions import AddValidationRules, SchemaExtension
from strawberry.fastapi import GraphQLRouter
from strawberry.types import ExecutionContext, Info

from nexuscrm.clients import health_check_all
from nexuscrm.core.config import Settings
from nexuscrm.crm.repositories import (
    ActivityRepository,
    CampaignRepository,
    CompanyRepository,
    ContactFilter,
    DealRepository,
    VoiceCallRepository,
    activity_repository,
    campaign_repository,
    company_repository,
    contact_repository,
    deal_repository,
    voice_call_repository,
)
from nexuscrm.crm.service import RecordReader, parse_id, resolve_page
from nexuscrm.errors import CRMError
from nexuscrm.gql import types as gql
from nexuscrm.gql.context import CRMContext, IsAuthenticated, get_context
from nexuscrm.voice.call_manager import MakeCallRequest, VoiceTool


logger = logging.getLogger("nexuscrm.graphql")

CRMInfo = Info[CRMContext, None]

INTERNAL_ERROR_MESSAGE = "Internal server error"


def _reader(info: CRMInfo) -> RecordReader:
    return RecordReader(info.context.container.db)


def _page(info: CRMInfo, limit: int | None, offset: int | None):
    return resolve_page(limit, offset, info.context.container.settings)


def _contact_filter(filter: gql.ContactFilterInput | None) -> ContactFilter | None:
    if filter is None:
        return None
    return ContactFilter(
        company_id=parse_id(filter.company_id, "companyId") if filter.company_id else None,
        lead_status=filter.lead_status.value if filter.lead_status else None,
        lifecycle_stage=filter.lifecycle_stage.value if filter.lifecycle_stage else None,
        owner_id=parse_id(filter.owner_id, "ownerId") if filter.owner_id else None,
        min_lead_score=filter.min_lead_score,
        max_lead_score=filter.max_lead_score,
        search=filter.search,
    )


def _optional_id(value: strawberry.ID | None, label: str):
    return parse_id(value, label) if value else None


@strawberry.type
class Query:
    @strawberry.field(permission_classes=[IsAuthenticated])
    async def contact(self, info: CRMInfo, id: strawberry.ID) -> gql.Contact | None:
        return await _reader(info).get(info.context.principal, contact_repository, id)

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def contacts(
        self,
        info: CRMInfo,
        filter: gql.ContactFilterInput | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[gql.Contact]:
        return await info.context.container.contact_service.list_contacts(
            info.context.principal,
            _contact_filter(filter),
            _page(info, limit, offset),
        )

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def contacts_count(self, info: CRMInfo, filter: gql.ContactFilterInput | None = None) -> int:
        return await info.context.container.contact_service.count_contacts(info.context.principal, _contact_filter(filter))

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def company(self, info: CRMInfo, id: strawberry.ID) -> gql.Company | None:
        return await _reader(info).get(info.context.principal, company_repository, id)

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def companies(
        self,
        info: CRMInfo,
        search: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[gql.Company]:
        return await _reader(info).find(
            info.context.principal,
            company_repository,
            CompanyRepository.filter_clauses(search),
            _page(info, limit, offset),
        )

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def deal(self, info: CRMInfo, id: strawberry.ID) -> gql.Deal | None:
        return await _reader(info).get(info.context.principal, deal_repository, id)

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def deals(
        self,
        info: CRMInfo,
        stage: str | None = None,
        owner_id: strawberry.ID | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[gql.Deal]:
        return await _reader(info).find(
            info.context.principal,
            deal_repository,
            DealRepository.filter_clauses(stage=stage, owner_id=_optional_id(owner_id, "ownerId")),
            _page(info, limit, offset),
        )

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def activity(self, info: CRMInfo, id: strawberry.ID) -> gql.Activity | None:
        return await _reader(info).get(info.context.principal, activity_repository, id)

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def activities(
        self,
        info: CRMInfo,
        contact_id: strawberry.ID | None = None,
        company_id: strawberry.ID | None = None,
        deal_id: strawberry.ID | None = None,
        type: gql.ActivityType | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[gql.Activity]:
        clauses = ActivityRepository.filter_clauses(
            contact_id=_optional_id(contact_id, "contactId"),
            company_id=_optional_id(company_id, "companyId"),
            deal_id=_optional_id(deal_id, "dealId"),
            activity_type=type.value if type else None,
        )
        return await _reader(info).find(info.context.principal, activity_repository, clauses, _page(info, limit, offset))

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def campaign(self, info: CRMInfo, id: strawberry.ID) -> gql.Campaign | None:
        return await _reader(info).get(info.context.principal, campaign_repository, id)

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def campaigns(
        self,
        info: CRMInfo,
        status: gql.CampaignStatus | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[gql.Campaign]:
        return await _reader(info).find(
            info.context.principal,
            campaign_repository,
            CampaignRepository.filter_clauses(status.value if status else None),
            _page(info, limit, offset),
        )

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def voice_call(self, info: CRMInfo, id: strawberry.ID) -> gql.VoiceCall | None:
        return await _reader(info).get(info.context.principal, voice_call_repository, id)

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def voice_calls(
        self,
        info: CRMInfo,
        status: gql.VoiceCallStatus | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[gql.VoiceCall]:
        return await _reader(info).find(
            info.context.principal,
            voice_call_repository,
            VoiceCallRepository.filter_clauses(status.value if status else None),
            _page(info, limit, offset),
        )

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def similar_contacts(self, info: CRMInfo, contact_id: strawberry.ID, limit: int = 10) -> list[gql.SimilarContact]:
        contact = await _reader(info).get(info.context.principal, contact_repository, contact_id)
        if contact is None:
            return []
        matches = await info.context.container.clients.search.find_similar_contacts(str(contact.id), limit)
        return [
            gql.SimilarContact(id=strawberry.ID(match.id), similarity=match.similarity, attributes=match.attributes)
            for match in matches
        ]

    @strawberry.field(permission_classes=[IsAuthenticated])
    async def nearby(
        self,
        info: CRMInfo,
        latitude: float,
        longitude: float,
        radius_km: float = 10.0,
        entity_type: str = "contact",
    ) -> list[gql.NearbyEntity]:
        entities = await info.context.container.clients.geo.proximity_search(
            latitude,
            longitude,
            radius_km,
            entity_type,
            filters={"organizationId": str(info.context.principal.organization_id)},
        )
        return [
            gql.NearbyEntity(
                id=strawberry.ID(entity.id),
                name=entity.name,
                distance=entity.distance,
                latitude=entity.coordinates.lat if entity.coordinates else None,
                longitude=entity.coordinates.lng if entity.coordinates else None,
            )
            for entity in entities
        ]

    @strawberry.field
    async def health(self, info: CRMInfo) -> gql.HealthStatus:
        services = await health_check_all(info.context.container.clients)
        return gql.HealthStatus(
            status="healthy" if services.all_healthy else "degraded",
            services=gql.ServiceHealth(
                orchestration=services.orchestration,
                mage=services.mageagent,
                graph_rag=gql.SearchStoreHealth(
                    postgres=services.graphrag.postgres,
                    neo4j=services.graphrag.neo4j,
                    qdrant=services.graphrag.qdrant,
                ),
                geo=services.geoagent,
                auth=services.auth,
            ),
            timestamp=datetime.now(timezone.utc),
        )


@strawberry.type
class Mutation:
    @strawberry.mutation(permission_classes=[IsAuthenticated])
    async def create_contact(self, info: CRMInfo, input: gql.CreateContactInput) -> gql.Contact:
        return await info.context.container.contact_service.create_contact(
            info.context.principal,
            gql.input_values(input, drop_none=True),
        )

    @strawberry.mutation(permission_classes=[IsAuthenticated])
    async def update_contact(self, info: CRMInfo, id: strawberry.ID, input: gql.UpdateContactInput) -> gql.Contact:
        return await info.context.container.contact_service.update_contact(
            info.context.principal,
            id,
            gql.input_values(input),
        )

    @strawberry.mutation(permission_classes=[IsAuthenticated])
    async def delete_contact(self, info: CRMInfo, id: strawberry.ID) -> bool:
        return await info.context.container.contact_service.delete_contact(info.context.principal, id)

    @strawberry.mutation(permission_classes=[IsAuthenticated])
    async def enrich_contact(self, info: CRMInfo, id: strawberry.ID) -> gql.Contact:
        return await info.context.container.contact_service.enrich_contact(info.context.principal, id)

    @strawberry.mutation(permission_classes=[IsAuthenticated])
    async def make_call(self, info: CRMInfo, input: gql.MakeCallInput) -> gql.CallResult:
        request = MakeCallRequest(
            to_number=input.to_number,
            script=input.script,
            contact_id=input.contact_id,
            language=input.language or "en",
            voice_id=input.voice_id,
            tools=[
                VoiceTool(name=tool.name, description=tool.description, parameters=tool.parameters or {})
                for tool in input.tools or []
            ],
        )
        if input.model:
            request.model = input.model
        result = await info.context.container.call_service.make_call(info.context.principal, request)
        return gql.CallResult(
            call_id=strawberry.ID(str(result.call_id)),
            status=result.status,
            message="Call initiated successfully",
        )

    @strawberry.mutation(permission_classes=[IsAuthenticated])
    async def cancel_call(self, info: CRMInfo, call_id: strawberry.ID) -> bool:
        return await info.context.container.call_service.cancel_call(info.context.principal, call_id)

    @strawberry.mutation(permission_classes=[IsAuthenticated])
    async def launch_campaign(self, info: CRMInfo, input: gql.LaunchCampaignInput) -> gql.CampaignLaunchResult:
        launch = await info.context.container.campaign_service.launch(
            info.context.principal,
            input.campaign_id,
            str(input.segment_id),
        )
        return gql.CampaignLaunchResult(
            campaign_id=strawberry.ID(str(launch.campaign_id)),
            jobs_created=launch.jobs_created,
            jobs=[strawberry.ID(job) for job in launch.jobs],
        )

    @strawberry.mutation(permission_classes=[IsAuthenticated])
    async def pause_campaign(self, info: CRMInfo, campaign_id: strawberry.ID) -> gql.Campaign:
        return await info.context.container.campaign_service.pause(info.context.principal, campaign_id)

    @strawberry.mutation(permission_classes=[IsAuthenticated])
    async def resume_campaign(self, info: CRMInfo, campaign_id: strawberry.ID) -> gql.Campaign:
        return await info.context.container.campaign_service.resume(info.context.principal, campaign_id)

    @strawberry.mutation(permission_classes=[IsAuthenticated])
    async def cancel_campaign(self, info: CRMInfo, campaign_id: strawberry.ID) -> gql.Campaign:
        return await info.context.container.campaign_service.cancel(info.context.principal, campaign_id)


def _error_code(error: GraphQLError) -> str:
    code = (error.extensions or {}).get("code")
    if code:
        return str(code)
    if error.original_error is None:
        return "GRAPHQL_VALIDATION_FAILED"
    return "INTERNAL_SERVER_ERROR"


def _is_unexpected(error: GraphQLError) -> bool:
    original = error.original_error
    return original is not None and not isinstance(original, (CRMError, GraphQLError))


class ErrorCodes(SchemaExtension):
    """Tags every error with ``extensions.code``."""

    mask_unexpected = False

    def _format(self, error: GraphQLError) -> GraphQLError:
        if self.mask_unexpected and _is_unexpected(error):
            return GraphQLError(
                INTERNAL_ERROR_MESSAGE,
                nodes=error.nodes,
                source=error.source,
                positions=error.positions,
                path=error.path,
                extensions={"code": "INTERNAL_SERVER_ERROR"},
            )
        error.extensions = {**(error.extensions or {}), "code": _error_code(error)}
        return error

    def on_operation(self) -> Iterator[None]:
        yield
        result = self.execution_context.result
        if result is not None and getattr(result, "errors", None):
            result.errors = [self._format(error) for error in result.errors]


class MaskedErrorCodes(ErrorCodes):
    """Production variant: only ``CRMError`` and GraphQL errors keep their message."""

    mask_unexpected = True


class CRMSchema(strawberry.Schema):
    def process_errors(self, errors: list[GraphQLError], execution_context: ExecutionContext | None = None) -> None:
        operation = execution_context.operation_name if execution_context is not None else None
        for error in errors:
            extra: dict[str, Any] = {"operation": operation, "error": error.message}
            if _is_unexpected(error):
                logger.error("graphql.error", exc_info=error.original_error, extra=extra)
            else:
                logger.warning("graphql.error", extra=extra)


def build_schema(settings: Settings) -> CRMSchema:
    extensions: list[Any] = [MaskedErrorCodes if settings.is_production else ErrorCodes]
    if settings.is_production:
        extensions.append(AddValidationRules([NoSchemaIntrospectionCustomRule]))
    return CRMSchema(query=Query, mutation=Mutation, extensions=extensions)


def build_graphql_router(settings: Settings) -> GraphQLRouter:
    return GraphQLRouter(build_schema(settings), context_getter=get_context)
