from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy import ColumnElement, Select, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from nexuscrm.crm.models import Activity, Campaign, Company, Contact, Deal, VoiceCall


ModelT = TypeVar("ModelT", Company, Contact, Deal, Activity, Campaign, VoiceCall)


@dataclass(slots=True)
class ContactFilter:
    company_id: uuid.UUID | None = None
    lead_status: str | None = None
    lifecycle_stage: str | None = None
    owner_id: uuid.UUID | None = None
    min_lead_score: int | None = None
    max_lead_score: int | None = None
    search: str | None = None


@dataclass(slots=True)
class Page:
    limit: int
    offset: int = 0


def _like(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class BaseRepository(Generic[ModelT]):
    """Soft-delete aware reads for one tenant table.

    Tenant isolation is applied by the database session, so queries here never
    filter on ``organization_id``.
    """

    model: type[ModelT]

    def active_query(self) -> Select[Any]:
        return select(self.model).where(self.model.deleted_at.is_(None))

    async def get(self, session: AsyncSession, record_id: uuid.UUID) -> ModelT | None:
        return await session.scalar(self.active_query().where(self.model.id == record_id))

    async def find(
        self,
        session: AsyncSession,
        clauses: list[ColumnElement[bool]],
        page: Page,
    ) -> list[ModelT]:
        query = (
            self.active_query()
            .where(*clauses)
            .order_by(self.model.created_at.desc())
            .limit(page.limit)
            .offset(page.offset)
        )
        return list((await session.scalars(query)).all())

    async def count(self, session: AsyncSession, clauses: list[ColumnElement[bool]]) -> int:
        query = (
            select(func.count())
            .select_from(self.model)
            .where(self.model.deleted_at.is_(None), *clauses)
        )
        return int(await session.scalar(query) or 0)


class ContactRepository(BaseRepository[Contact]):
    model = Contact

    @staticmethod
    def filter_clauses(contact_filter: ContactFilter | None) -> list[ColumnElement[bool]]:
        if contact_filter is None:
            return []
        clauses: list[ColumnElement[bool]] = []
        if contact_filter.company_id is not None:
            clauses.append(Contact.company_id == contact_filter.company_id)
        if contact_filter.lead_status:
            clauses.append(Contact.lead_status == contact_filter.lead_status)
        if contact_filter.lifecycle_stage:
            clauses.append(Contact.lifecycle_stage == contact_filter.lifecycle_stage)
        if contact_filter.owner_id is not None:
            clauses.append(Contact.owner_id == contact_filter.owner_id)
        if contact_filter.min_lead_score is not None:
            clauses.append(Contact.lead_score >= contact_filter.min_lead_score)
        if contact_filter.max_lead_score is not None:
            clauses.append(Contact.lead_score <= contact_filter.max_lead_score)
        if contact_filter.search:
            pattern = _like(contact_filter.search)
            clauses.append(
                or_(
                    Contact.first_name.ilike(pattern, escape="\\"),
                    Contact.last_name.ilike(pattern, escape="\\"),
                    Contact.email.ilike(pattern, escape="\\"),
                )
            )
        return clauses


class CompanyRepository(BaseRepository[Company]):
    model = Company

    @staticmethod
    def filter_clauses(search: str | None) -> list[ColumnElement[bool]]:
        if not search:
            return []
        pattern = _like(search)
        return [or_(Company.name.ilike(pattern, escape="\\"), Company.domain.ilike(pattern, escape="\\"))]


class DealRepository(BaseRepository[Deal]):
    model = Deal

    @staticmethod
    def filter_clauses(*, stage: str | None = None, owner_id: uuid.UUID | None = None) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        if stage:
            clauses.append(Deal.stage == stage)
        if owner_id is not None:
            clauses.append(Deal.owner_id == owner_id)
        return clauses


class ActivityRepository(BaseRepository[Activity]):
    model = Activity

    @staticmethod
    def filter_clauses(
        *,
        contact_id: uuid.UUID | None = None,
        company_id: uuid.UUID | None = None,
        deal_id: uuid.UUID | None = None,
        activity_type: str | None = None,
    ) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        if contact_id is not None:
            clauses.append(Activity.contact_id == contact_id)
        if company_id is not None:
            clauses.append(Activity.company_id == company_id)
        if deal_id is not None:
            clauses.append(Activity.deal_id == deal_id)
        if activity_type:
            clauses.append(Activity.type == activity_type)
        return clauses

    async def for_voice_call(self, session: AsyncSession, voice_call_id: uuid.UUID) -> Activity | None:
        return await session.scalar(self.active_query().where(Activity.voice_call_id == voice_call_id))


class CampaignRepository(BaseRepository[Campaign]):
    model = Campaign

    @staticmethod
    def filter_clauses(status: str | None) -> list[ColumnElement[bool]]:
        return [Campaign.status == status] if status else []


class VoiceCallRepository(BaseRepository[VoiceCall]):
    model = VoiceCall

    @staticmethod
    def filter_clauses(status: str | None) -> list[ColumnElement[bool]]:
        return [VoiceCall.status == status] if status else []

    async def by_external_id(self, session: AsyncSession, external_call_id: str) -> VoiceCall | None:
        return await session.scalar(self.active_query().where(VoiceCall.external_call_id == external_call_id))


contact_repository = ContactRepository()
company_repository = CompanyRepository()
deal_repository = DealRepository()
activity_repository = ActivityRepository()
campaign_repository = CampaignRepository()
voice_call_repository = VoiceCallRepository()
