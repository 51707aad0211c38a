from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

import strawberry
from sqlalchemy.ext.asyncio import AsyncSession
from strawberry.scalars import JSON
from strawberry.types import Info

from nexuscrm.crm.repositories import ActivityRepository, ContactFilter, activity_repository, company_repository, contact_repository
from nexuscrm.crm.service import RecordReader, resolve_page
from nexuscrm.gql.context import CRMContext


logger = logging.getLogger("nexuscrm.graphql")

EnumT = TypeVar("EnumT", bound=Enum)


def coerce_enum(enum_cls: type[EnumT], value: str | None) -> EnumT | None:
    """Map a stored string onto its GraphQL enum; unknown values surface as null."""
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning("graphql.unknown_enum_value", extra={"kind": enum_cls.__name__, "status": value})
        return None


@strawberry.enum
class Seniority(Enum):
    IC = "IC"
    MANAGER = "Manager"
    DIRECTOR = "Director"
    VP = "VP"
    C_LEVEL = "C_Level"
    OWNER = "Owner"


@strawberry.enum
class LeadStatus(Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    UNQUALIFIED = "unqualified"
    CUSTOMER = "customer"
    CHURNED = "churned"
    UNSUBSCRIBED = "unsubscribed"


@strawberry.enum
class LifecycleStage(Enum):
    SUBSCRIBER = "subscriber"
    LEAD = "lead"
    MQL = "mql"
    SQL = "sql"
    OPPORTUNITY = "opportunity"
    CUSTOMER = "customer"
    EVANGELIST = "evangelist"


@strawberry.enum
class ActivityType(Enum):
    CALL = "call"
    EMAIL = "email"
    MEETING = "meeting"
    TASK = "task"
    NOTE = "note"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    LINKEDIN_MESSAGE = "linkedin_message"


@strawberry.enum
class Direction(Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    INTERNAL = "internal"


@strawberry.enum
class TaskStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@strawberry.enum
class TaskPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@strawberry.enum
class Sentiment(Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    MIXED = "mixed"


@strawberry.enum
class DealType(Enum):
    NEW_BUSINESS = "new_business"
    EXPANSION = "expansion"
    RENEWAL = "renewal"
    UPSELL = "upsell"
    CROSS_SELL = "cross_sell"


@strawberry.enum
class CampaignType(Enum):
    EMAIL_DRIP = "email_drip"
    VOICE_OUTBOUND = "voice_outbound"
    SMS_BLAST = "sms_blast"
    WHATSAPP_CAMPAIGN = "whatsapp_campaign"
    MULTI_CHANNEL = "multi_channel"


@strawberry.enum
class CampaignStatus(Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@strawberry.enum
class VoicePlatform(Enum):
    VAPI = "vapi"
    TWILIO = "twilio"
    INTERNAL = "internal"


@strawberry.enum
class VoiceCallStatus(Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    NO_ANSWER = "no-answer"
    BUSY = "busy"
    FAILED = "failed"
    VOICEMAIL = "voicemail"
    CANCELLED = "cancelled"


# Object types below are resolved straight off ORM rows: plain fields read the
# attribute of the same name and method resolvers receive the row as ``self``.


@strawberry.type
class Company:
    id: strawberry.ID
    name: str
    domain: str | None
    industry: str | None
    size: str | None
    revenue_range: str | None
    employee_count: int | None
    founded_year: int | None
    description: str | None
    website: str | None
    phone: str | None
    address: JSON | None
    social_links: JSON | None
    enrichment_data: JSON | None
    enrichment_source: str | None
    enrichment_confidence: float | None
    enriched_at: datetime | None
    tags: list[str] | None
    custom_fields: JSON | None
    owner_id: strawberry.ID | None
    organization_id: strawberry.ID
    created_at: datetime
    updated_at: datetime

    @strawberry.field
    async def contacts(self, info: Info[CRMContext, None], limit: int | None = None) -> list[Contact]:
        context = info.context
        return await RecordReader(context.container.db).find(
            context.principal,
            contact_repository,
            contact_repository.filter_clauses(ContactFilter(company_id=self.id)),
            resolve_page(limit, 0, context.container.settings),
        )


@strawberry.type
class Contact:
    id: strawberry.ID
    company_id: strawberry.ID | None
    first_name: str | None
    last_name: str | None
    full_name: str | None
    email: str | None
    email_verified: bool
    phone: str | None
    phone_verified: bool
    mobile: str | None
    job_title: str | None
    department: str | None
    decision_maker: bool
    linkedin_url: str | None
    twitter_handle: str | None
    address: JSON | None
    timezone: str | None
    language: str
    lead_score: int
    lead_source: str | None
    do_not_call: bool
    do_not_email: bool
    unsubscribed: bool
    unsubscribed_at: datetime | None
    bounced: bool
    bounced_at: datetime | None
    enrichment_data: JSON | None
    enrichment_source: str | None
    enrichment_confidence: float | None
    enriched_at: datetime | None
    tags: list[str] | None
    custom_fields: JSON | None
    owner_id: strawberry.ID | None
    organization_id: strawberry.ID
    created_at: datetime
    updated_at: datetime
    last_contacted_at: datetime | None
    last_scored_at: datetime | None

    @strawberry.field
    def seniority(self) -> Seniority | None:
        return coerce_enum(Seniority, self.seniority)

    @strawberry.field
    def lead_status(self) -> LeadStatus:
        return coerce_enum(LeadStatus, self.lead_status) or LeadStatus.NEW

    @strawberry.field
    def lifecycle_stage(self) -> LifecycleStage | None:
        return coerce_enum(LifecycleStage, self.lifecycle_stage)

    @strawberry.field
    async def company(self, info: Info[CRMContext, None]) -> Company | None:
        if self.company_id is None:
            return None
        context = info.context
        return await RecordReader(context.container.db).get(context.principal, company_repository, self.company_id)

    @strawberry.field
    async def activities(self, info: Info[CRMContext, None], limit: int | None = None) -> list[Activity]:
        context = info.context
        return await RecordReader(context.container.db).find(
            context.principal,
            activity_repository,
            ActivityRepository.filter_clauses(contact_id=self.id),
            resolve_page(limit, 0, context.container.settings),
        )


@strawberry.type
class Deal:
    id: strawberry.ID
    name: str
    company_id: strawberry.ID | None
    primary_contact_id: strawberry.ID | None
    amount: float | None
    currency: str
    stage: str
    stage_changed_at: datetime | None
    probability: float | None
    expected_close_date: datetime | None
    actual_close_date: datetime | None
    close_reason: str | None
    lost_reason: str | None
    lost_to_competitor: str | None
    mrr: float | None
    arr: float | None
    contract_term_months: int | None
    products_sold: list[JSON] | None
    custom_fields: JSON | None
    tags: list[str] | None
    owner_id: strawberry.ID | None
    organization_id: strawberry.ID
    created_at: datetime
    updated_at: datetime

    @strawberry.field
    def deal_type(self) -> DealType | None:
        return coerce_enum(DealType, self.deal_type)

    @strawberry.field
    async def company(self, info: Info[CRMContext, None]) -> Company | None:
        if self.company_id is None:
            return None
        context = info.context
        return await RecordReader(context.container.db).get(context.principal, company_repository, self.company_id)


@strawberry.type
class TranscriptSegment:
    speaker: str
    text: str
    start_time: float
    end_time: float


@strawberry.type
class Activity:
    id: strawberry.ID
    subject: str | None
    body: str | None
    contact_id: strawberry.ID | None
    company_id: strawberry.ID | None
    deal_id: strawberry.ID | None
    voice_call_id: strawberry.ID | None
    from_number: str | None
    to_number: str | None
    duration_seconds: int | None
    recording_url: str | None
    transcript: str | None
    sentiment_score: float | None
    keywords_detected: list[str] | None
    ai_summary: str | None
    action_items: list[JSON] | None
    objections_raised: list[JSON] | None
    buying_signals: list[JSON] | None
    from_email: str | None
    to_emails: list[str] | None
    email_opened: bool
    email_opened_at: datetime | None
    email_clicked: bool
    email_clicked_at: datetime | None
    email_bounced: bool
    meeting_start_time: datetime | None
    meeting_end_time: datetime | None
    meeting_location: str | None
    meeting_url: str | None
    task_due_date: datetime | None
    task_completed_at: datetime | None
    cost_usd: float | None
    external_id: str | None
    tags: list[str] | None
    created_by: strawberry.ID | None
    assigned_to: strawberry.ID | None
    organization_id: strawberry.ID
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    metadata_json: JSON | None = strawberry.field(name="metadata")

    @strawberry.field
    def type(self) -> ActivityType:
        return ActivityType(self.type)

    @strawberry.field
    def direction(self) -> Direction | None:
        return coerce_enum(Direction, self.direction)

    @strawberry.field
    def call_status(self) -> VoiceCallStatus | None:
        return coerce_enum(VoiceCallStatus, self.call_status)

    @strawberry.field
    def sentiment(self) -> Sentiment | None:
        return coerce_enum(Sentiment, self.sentiment)

    @strawberry.field
    def task_status(self) -> TaskStatus | None:
        return coerce_enum(TaskStatus, self.task_status)

    @strawberry.field
    def task_priority(self) -> TaskPriority | None:
        return coerce_enum(TaskPriority, self.task_priority)

    @strawberry.field
    def transcript_segments(self) -> list[TranscriptSegment] | None:
        segments = (self.metadata_json or {}).get("transcriptSegments")
        if not isinstance(segments, list):
            return None
        return [
            TranscriptSegment(
                speaker=str(item.get("speaker") or "user"),
                text=str(item.get("text") or ""),
                start_time=float(item.get("startTime") or 0),
                end_time=float(item.get("endTime") or 0),
            )
            for item in segments
            if isinstance(item, dict)
        ]


@strawberry.type
class Campaign:
    id: strawberry.ID
    name: str
    description: str | None
    workflow_goal: str | None
    workflow_config: JSON | None
    orchestration_execution_id: strawberry.ID | None
    target_segment_id: strawberry.ID | None
    target_count: int
    scheduled_at: datetime | None
    launched_at: datetime | None
    completed_at: datetime | None
    email_subject: str | None
    sms_message: str | None
    voice_script: str | None
    voice_assistant_config: JSON | None
    sent_count: int
    delivered_count: int
    opened_count: int
    clicked_count: int
    replied_count: int
    converted_count: int
    bounced_count: int
    unsubscribed_count: int
    failed_count: int
    total_cost_usd: float
    tags: list[str] | None
    custom_fields: JSON | None
    created_by: strawberry.ID | None
    organization_id: strawberry.ID
    created_at: datetime
    updated_at: datetime

    @strawberry.field
    def type(self) -> CampaignType:
        return CampaignType(self.type)

    @strawberry.field
    def status(self) -> CampaignStatus:
        return CampaignStatus(self.status)

    @strawberry.field
    def open_rate(self) -> float | None:
        return self.opened_count / self.delivered_count if self.delivered_count else None

    @strawberry.field
    def click_rate(self) -> float | None:
        return self.clicked_count / self.opened_count if self.opened_count else None

    @strawberry.field
    def conversion_rate(self) -> float | None:
        return self.converted_count / self.sent_count if self.sent_count else None


@strawberry.type
class VoiceCall:
    id: strawberry.ID
    external_call_id: str | None
    from_number: str
    to_number: str
    initiated_at: datetime | None
    answered_at: datetime | None
    ended_at: datetime | None
    duration_seconds: int | None
    assistant_config: JSON | None
    stt_provider: str | None
    tts_provider: str | None
    llm_model: str | None
    recording_url: str | None
    transcript: str | None
    transcript_language: str | None
    sentiment_overall: str | None
    keywords_detected: list[str] | None
    topics_discussed: list[JSON] | None
    objections_raised: list[JSON] | None
    buying_signals: list[JSON] | None
    action_items: list[JSON] | None
    call_outcome: str | None
    deal_score: float | None
    cost_usd: float | None
    cost_breakdown: JSON | None
    organization_id: strawberry.ID
    created_at: datetime
    updated_at: datetime
    metadata_json: JSON | None = strawberry.field(name="metadata")

    @strawberry.field
    def platform(self) -> VoicePlatform:
        return coerce_enum(VoicePlatform, self.platform) or VoicePlatform.VAPI

    @strawberry.field
    def status(self) -> VoiceCallStatus:
        return coerce_enum(VoiceCallStatus, self.status) or VoiceCallStatus.INITIATED

    @strawberry.field
    async def activity(self, info: Info[CRMContext, None]) -> Activity | None:
        context = info.context
        call_id = self.id

        async def _get(session: AsyncSession):
            return await activity_repository.for_voice_call(session, call_id)

        return await context.container.db.query_with_context(context.principal.organization_id, _get)


@strawberry.type
class CallResult:
    call_id: strawberry.ID
    status: str
    message: str | None = None


@strawberry.type
class CampaignLaunchResult:
    campaign_id: strawberry.ID
    jobs_created: int
    jobs: list[strawberry.ID]


@strawberry.type
class SearchStoreHealth:
    postgres: bool
    neo4j: bool
    qdrant: bool


@strawberry.type
class ServiceHealth:
    orchestration: bool
    mage: bool
    graph_rag: SearchStoreHealth = strawberry.field(name="graphRAG")
    geo: bool
    auth: bool


@strawberry.type
class HealthStatus:
    status: str
    services: ServiceHealth
    timestamp: datetime


@strawberry.type
class SimilarContact:
    id: strawberry.ID
    similarity: float
    attributes: JSON | None = None


@strawberry.type
class NearbyEntity:
    id: strawberry.ID
    name: str | None = None
    distance: float | None = None
    latitude: float | None = None
    longitude: float | None = None


@strawberry.input
class ContactFilterInput:
    company_id: strawberry.ID | None = None
    lead_status: LeadStatus | None = None
    lifecycle_stage: LifecycleStage | None = None
    owner_id: strawberry.ID | None = None
    min_lead_score: int | None = None
    max_lead_score: int | None = None
    search: str | None = None


@strawberry.input
class CreateContactInput:
    company_id: strawberry.ID | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    mobile: str | None = None
    job_title: str | None = None
    department: str | None = None
    seniority: Seniority | None = None
    lead_source: str | None = None
    owner_id: strawberry.ID | None = None
    tags: list[str] | None = None
    custom_fields: JSON | None = None


@strawberry.input
class UpdateContactInput:
    first_name: str | None = strawberry.UNSET
    last_name: str | None = strawberry.UNSET
    email: str | None = strawberry.UNSET
    phone: str | None = strawberry.UNSET
    mobile: str | None = strawberry.UNSET
    job_title: str | None = strawberry.UNSET
    department: str | None = strawberry.UNSET
    seniority: Seniority | None = strawberry.UNSET
    lead_status: LeadStatus | None = strawberry.UNSET
    lead_score: int | None = strawberry.UNSET
    lifecycle_stage: LifecycleStage | None = strawberry.UNSET
    do_not_call: bool | None = strawberry.UNSET
    do_not_email: bool | None = strawberry.UNSET
    tags: list[str] | None = strawberry.UNSET
    custom_fields: JSON | None = strawberry.UNSET


@strawberry.input
class VoiceToolInput:
    name: str
    description: str
    parameters: JSON


@strawberry.input
class MakeCallInput:
    to_number: str
    script: str
    contact_id: strawberry.ID | None = None
    language: str | None = None
    voice_id: str | None = None
    model: str | None = None
    tools: list[VoiceToolInput] | None = None


@strawberry.input
class LaunchCampaignInput:
    campaign_id: strawberry.ID
    segment_id: strawberry.ID


def input_values(data: Any, *, drop_none: bool = False) -> dict[str, Any]:
    """Fields the client actually sent, with enums lowered to their stored values."""
    values: dict[str, Any] = {}
    for key, value in vars(data).items():
        if value is strawberry.UNSET or (drop_none and value is None):
            continue
        values[key] = value.value if isinstance(value, Enum) else value
    return values
