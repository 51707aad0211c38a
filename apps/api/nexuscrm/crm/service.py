from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import ColumnElement
from sqlalchemy.ext.asyncio import AsyncSession

from nexuscrm.clients.orchestration import OrchestrationClient
from nexuscrm.clients.search import SearchClient
from nexuscrm.core.auth import AuthPrincipal
from nexuscrm.core.config import Settings
from nexuscrm.core.database import Database
from nexuscrm.crm.models import Campaign, Contact, OutboxEvent, utcnow
from nexuscrm.crm.repositories import (
    BaseRepository,
    ContactFilter,
    Page,
    campaign_repository,
    contact_repository,
)
from nexuscrm.errors import FeatureDisabledError, NotFoundError, UpstreamServiceError, ValidationError
from nexuscrm.voice.call_manager import CallManager, MakeCallRequest, MakeCallResult


logger = logging.getLogger("nexuscrm.crm")

STORE_DOCUMENT_KIND = "search.store_document"

CONTACT_CREATE_FIELDS = frozenset(
    {
        "company_id",
        "first_name",
        "last_name",
        "email",
        "phone",
        "mobile",
        "job_title",
        "department",
        "seniority",
        "lead_source",
        "owner_id",
        "tags",
        "custom_fields",
    }
)
CONTACT_UPDATE_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "email",
        "phone",
        "mobile",
        "job_title",
        "department",
        "seniority",
        "lead_status",
        "lead_score",
        "lifecycle_stage",
        "do_not_call",
        "do_not_email",
        "tags",
        "custom_fields",
    }
)
# Columns that cannot hold NULL; an explicit null in an update is rejected.
CONTACT_REQUIRED_COLUMNS = frozenset({"lead_status", "lead_score", "do_not_call", "do_not_email"})

TERMINAL_CAMPAIGN_STATUSES = frozenset({"completed", "cancelled"})


def parse_id(value: str | uuid.UUID | None, label: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid {label}: {value}") from exc


def resolve_page(limit: int | None, offset: int | None, settings: Settings) -> Page:
    """Apply the default page size and clamp to the configured maximum."""
    if limit is not None and limit < 0:
        raise ValidationError("limit must not be negative")
    if offset is not None and offset < 0:
        raise ValidationError("offset must not be negative")
    resolved = settings.graphql_default_limit if limit is None else limit
    return Page(limit=min(resolved, settings.graphql_max_limit), offset=offset or 0)


def full_name(first_name: str | None, last_name: str | None) -> str | None:
    parts = [part.strip() for part in (first_name, last_name) if part and part.strip()]
    return " ".join(parts) or None


def contact_document(contact: Contact) -> tuple[str, dict[str, Any]]:
    content = json.dumps(
        {
            "name": contact.full_name,
            "email": contact.email,
            "phone": contact.phone,
            "jobTitle": contact.job_title,
        }
    )
    metadata = {
        "type": "contact",
        "source": "crm",
        "entityType": "contact",
        "entityId": str(contact.id),
        "tags": contact.tags or [],
    }
    return content, metadata


@dataclass(slots=True)
class RecordReader:
    """Tenant-scoped reads shared by every entity query."""

    db: Database

    async def get(
        self,
        principal: AuthPrincipal,
        repository: BaseRepository[Any],
        record_id: str | uuid.UUID,
    ) -> Any | None:
        record_uuid = parse_id(record_id)

        async def _get(session: AsyncSession):
            return await repository.get(session, record_uuid)

        return await self.db.query_with_context(principal.organization_id, _get)

    async def find(
        self,
        principal: AuthPrincipal,
        repository: BaseRepository[Any],
        clauses: list[ColumnElement[bool]],
        page: Page,
    ) -> list[Any]:
        async def _find(session: AsyncSession):
            return await repository.find(session, clauses, page)

        return await self.db.query_with_context(principal.organization_id, _find)

    async def count(
        self,
        principal: AuthPrincipal,
        repository: BaseRepository[Any],
        clauses: list[ColumnElement[bool]],
    ) -> int:
        async def _count(session: AsyncSession):
            return await repository.count(session, clauses)

        return await self.db.query_with_context(principal.organization_id, _count)


@dataclass(slots=True)
class ContactService:
    db: Database
    search: SearchClient
    settings: Settings
    on_outbox_write: Callable[[], None] | None = None
    repository: BaseRepository[Contact] = field(default_factory=lambda: contact_repository)

    async def list_contacts(
        self,
        principal: AuthPrincipal,
        contact_filter: ContactFilter | None,
        page: Page,
    ) -> list[Contact]:
        return await RecordReader(self.db).find(
            principal,
            self.repository,
            contact_repository.filter_clauses(contact_filter),
            page,
        )

    async def count_contacts(self, principal: AuthPrincipal, contact_filter: ContactFilter | None) -> int:
        return await RecordReader(self.db).count(
            principal,
            self.repository,
            contact_repository.filter_clauses(contact_filter),
        )

    async def create_contact(self, principal: AuthPrincipal, values: dict[str, Any]) -> Contact:
        unknown = set(values) - CONTACT_CREATE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown contact fields: {', '.join(sorted(unknown))}")

        payload = {key: value for key, value in values.items() if value is not None}
        if "company_id" in payload:
            payload["company_id"] = parse_id(payload["company_id"], "companyId")
        payload["owner_id"] = parse_id(payload["owner_id"], "ownerId") if "owner_id" in payload else principal.user_uuid
        payload.setdefault("tags", [])
        payload.setdefault("custom_fields", {})

        async def _create(session: AsyncSession):
            contact = Contact(
                organization_id=principal.organization_id,
                full_name=full_name(payload.get("first_name"), payload.get("last_name")),
                **payload,
            )
            session.add(contact)
            await session.flush()

            queued = False
            if contact.email or contact.phone:
                content, metadata = contact_document(contact)
                session.add(
                    OutboxEvent(
                        organization_id=principal.organization_id,
                        kind=STORE_DOCUMENT_KIND,
                        payload={"content": content, "metadata": metadata},
                    )
                )
                queued = True
            return contact, queued

        contact, queued = await self.db.query_with_context(principal.organization_id, _create)
        if queued and self.on_outbox_write is not None:
            self.on_outbox_write()
        logger.info("contact.created", extra={"contact_id": str(contact.id), "organization_id": str(principal.organization_id)})
        return contact

    async def update_contact(self, principal: AuthPrincipal, contact_id: str | uuid.UUID, values: dict[str, Any]) -> Contact:
        """Apply only the supplied fields; omitted fields keep their stored values."""
        if not values:
            raise ValidationError("No fields to update")
        unknown = set(values) - CONTACT_UPDATE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown contact fields: {', '.join(sorted(unknown))}")
        nulled = sorted(key for key in CONTACT_REQUIRED_COLUMNS if key in values and values[key] is None)
        if nulled:
            raise ValidationError(f"Fields cannot be null: {', '.join(nulled)}")
        if "lead_score" in values and not 0 <= values["lead_score"] <= 100:
            raise ValidationError("leadScore must be between 0 and 100")

        record_uuid = parse_id(contact_id, "contact id")

        async def _update(session: AsyncSession):
            contact = await self.repository.get(session, record_uuid)
            if contact is None:
                return None
            for key, value in values.items():
                setattr(contact, key, value)
            if "first_name" in values or "last_name" in values:
                contact.full_name = full_name(contact.first_name, contact.last_name)
            contact.updated_at = utcnow()
            return contact

        contact = await self.db.query_with_context(principal.organization_id, _update)
        if contact is None:
            raise NotFoundError("Contact not found")
        logger.info("contact.updated", extra={"contact_id": str(record_uuid)})
        return contact

    async def delete_contact(self, principal: AuthPrincipal, contact_id: str | uuid.UUID) -> bool:
        record_uuid = parse_id(contact_id, "contact id")

        async def _delete(session: AsyncSession):
            contact = await self.repository.get(session, record_uuid)
            if contact is None:
                return False
            contact.deleted_at = utcnow()
            return True

        deleted = await self.db.query_with_context(principal.organization_id, _delete)
        logger.info("contact.deleted", extra={"contact_id": str(record_uuid), "status": "deleted" if deleted else "missing"})
        return deleted

    async def enrich_contact(self, principal: AuthPrincipal, contact_id: str | uuid.UUID) -> Contact:
        if not self.settings.enable_ai_enrichment:
            raise FeatureDisabledError("AI enrichment is disabled")

        contact = await RecordReader(self.db).get(principal, self.repository, contact_id)
        if contact is None:
            raise NotFoundError("Contact not found")

        enrichment = await self.search.enrich_contact(str(contact.id))

        async def _apply(session: AsyncSession):
            row = await self.repository.get(session, contact.id)
            if row is None:
                return None
            row.enrichment_data = enrichment.enrichment_data
            row.enrichment_source = ",".join(enrichment.sources)
            row.enrichment_confidence = enrichment.confidence
            row.enriched_at = utcnow()
            return row

        enriched = await self.db.query_with_context(principal.organization_id, _apply)
        if enriched is None:
            raise NotFoundError("Contact not found")
        logger.info("contact.enriched", extra={"contact_id": str(contact.id), "status": f"{enrichment.confidence:.2f}"})
        return enriched


@dataclass(slots=True)
class CampaignLaunch:
    campaign_id: uuid.UUID
    jobs_created: int
    jobs: list[str]


@dataclass(slots=True)
class CampaignService:
    db: Database
    orchestration: OrchestrationClient

    async def _load(self, principal: AuthPrincipal, campaign_id: str | uuid.UUID) -> Campaign:
        campaign = await RecordReader(self.db).get(principal, campaign_repository, parse_id(campaign_id, "campaign id"))
        if campaign is None:
            raise NotFoundError("Campaign not found")
        return campaign

    async def _transition(
        self,
        principal: AuthPrincipal,
        campaign_id: uuid.UUID,
        mutate: Callable[[Campaign], None],
    ) -> Campaign:
        async def _apply(session: AsyncSession):
            campaign = await campaign_repository.get(session, campaign_id)
            if campaign is None:
                return None
            mutate(campaign)
            campaign.updated_at = utcnow()
            return campaign

        campaign = await self.db.query_with_context(principal.organization_id, _apply)
        if campaign is None:
            raise NotFoundError("Campaign not found")
        return campaign

    async def launch(self, principal: AuthPrincipal, campaign_id: str | uuid.UUID, segment_id: str) -> CampaignLaunch:
        campaign = await self._load(principal, campaign_id)
        if campaign.status in TERMINAL_CAMPAIGN_STATUSES:
            raise ValidationError(f"Campaign is {campaign.status} and cannot be launched")

        logger.info("campaign.launching", extra={"campaign_id": str(campaign.id), "kind": campaign.type})
        result = await self.orchestration.execute(
            campaign.workflow_goal or f"Execute {campaign.type} campaign: {campaign.name}",
            {
                "campaignId": str(campaign.id),
                "segmentId": segment_id,
                "type": campaign.type,
                "targetCount": campaign.target_count,
            },
        )

        def _activate(row: Campaign) -> None:
            row.status = "active"
            row.orchestration_execution_id = result.execution_id
            row.target_segment_id = segment_id
            row.launched_at = utcnow()

        await self._transition(principal, campaign.id, _activate)
        logger.info(
            "campaign.launched",
            extra={"campaign_id": str(campaign.id), "execution_id": result.execution_id},
        )
        return CampaignLaunch(campaign_id=campaign.id, jobs_created=1, jobs=[result.execution_id])

    async def pause(self, principal: AuthPrincipal, campaign_id: str | uuid.UUID) -> Campaign:
        campaign = await self._load(principal, campaign_id)
        if campaign.status != "active":
            raise ValidationError(f"Only active campaigns can be paused (status: {campaign.status})")

        def _pause(row: Campaign) -> None:
            row.status = "paused"

        updated = await self._transition(principal, campaign.id, _pause)
        logger.info("campaign.paused", extra={"campaign_id": str(campaign.id)})
        return updated

    async def resume(self, principal: AuthPrincipal, campaign_id: str | uuid.UUID) -> Campaign:
        campaign = await self._load(principal, campaign_id)
        if campaign.status != "paused":
            raise ValidationError(f"Only paused campaigns can be resumed (status: {campaign.status})")

        def _resume(row: Campaign) -> None:
            row.status = "active"

        updated = await self._transition(principal, campaign.id, _resume)
        logger.info("campaign.resumed", extra={"campaign_id": str(campaign.id)})
        return updated

    async def cancel(self, principal: AuthPrincipal, campaign_id: str | uuid.UUID) -> Campaign:
        campaign = await self._load(principal, campaign_id)
        if campaign.status in TERMINAL_CAMPAIGN_STATUSES:
            raise ValidationError(f"Campaign is already {campaign.status}")

        def _cancel(row: Campaign) -> None:
            row.status = "cancelled"
            row.completed_at = utcnow()

        updated = await self._transition(principal, campaign.id, _cancel)
        if updated.orchestration_execution_id:
            try:
                await self.orchestration.cancel(updated.orchestration_execution_id)
            except UpstreamServiceError as exc:
                logger.warning(
                    "campaign.orchestration_cancel_failed",
                    extra={"campaign_id": str(campaign.id), "error": str(exc)},
                )
        logger.info("campaign.cancelled", extra={"campaign_id": str(campaign.id)})
        return updated


@dataclass(slots=True)
class CallService:
    """Voice call mutations: the orchestration run is registered before dialing."""

    orchestration: OrchestrationClient
    call_manager: CallManager
    settings: Settings

    async def make_call(self, principal: AuthPrincipal, request: MakeCallRequest) -> MakeCallResult:
        if not self.settings.enable_voice_calling:
            raise FeatureDisabledError("Voice calling is disabled")

        execution = await self.orchestration.execute(
            f"Make a voice call to {request.to_number} using the following script: {request.script}",
            {
                "contactId": request.contact_id,
                "toNumber": request.to_number,
                "script": request.script,
                "language": request.language,
                "voiceId": request.voice_id,
                "model": request.model,
                "tools": [{"name": tool.name, "description": tool.description} for tool in request.tools],
            },
        )
        return await self.call_manager.make_call(
            request,
            principal,
            orchestration_execution_id=execution.execution_id,
        )

    async def cancel_call(self, principal: AuthPrincipal, call_id: str | uuid.UUID) -> bool:
        await self.call_manager.cancel_call(parse_id(call_id, "call id"), principal)
        return True
