from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from nexuscrm.clients.reasoning import ReasoningClient
from nexuscrm.core.auth import AuthPrincipal
from nexuscrm.core.database import Database
from nexuscrm.crm.models import Activity, Contact, VoiceCall, utcnow
from nexuscrm.crm.repositories import activity_repository, contact_repository, voice_call_repository
from nexuscrm.errors import NotFoundError, UpstreamServiceError, ValidationError
from nexuscrm.realtime.broadcaster import Broadcaster
from nexuscrm.voice.vapi import DEFAULT_LLM_MODEL, VapiClient, VapiFunction, build_assistant


logger = logging.getLogger("nexuscrm.voice.calls")

GREETING_MARKERS = ("hello", "hi ", "good morning", "good afternoon")
TERMINAL_STATUSES = frozenset({"completed", "no-answer", "busy", "failed", "voicemail", "cancelled"})

TRANSCRIPT_ANALYSIS_TASK = "Analyze this sales call transcript and extract key information"
TRANSCRIPT_ANALYSIS_SCHEMA: dict[str, Any] = {
    "sentiment": {"type": "string", "enum": ["positive", "neutral", "negative", "mixed"]},
    "sentimentScore": {"type": "number", "minimum": -1, "maximum": 1},
    "keywords": {"type": "array", "items": {"type": "string"}},
    "topicsDiscussed": {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {"topic": {"type": "string"}, "importance": {"type": "number"}},
        },
    },
    "objectionsRaised": {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {
                "objection": {"type": "string"},
                "response": {"type": "string"},
                "resolved": {"type": "boolean"},
            },
        },
    },
    "buyingSignals": {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {"signal": {"type": "string"}, "strength": {"type": "number"}},
        },
    },
    "actionItems": {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {
                "action": {"type": "string"},
                "owner": {"type": "string"},
                "dueDate": {"type": "string"},
            },
        },
    },
    "callOutcome": {
        "type": "string",
        "enum": [
            "qualified",
            "not_interested",
            "needs_follow_up",
            "callback_requested",
            "meeting_scheduled",
            "deal_closed",
            "voicemail",
        ],
    },
    "dealScore": {
        "type": "number",
        "minimum": 0,
        "maximum": 100,
        "description": "Likelihood of deal closing (0-100)",
    },
    "summary": {"type": "string"},
}


@dataclass(slots=True)
class VoiceTool:
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MakeCallRequest:
    to_number: str
    script: str
    contact_id: str | None = None
    language: str = "en"
    voice_id: str | None = None
    model: str = DEFAULT_LLM_MODEL
    tools: list[VoiceTool] = field(default_factory=list)


@dataclass(slots=True)
class MakeCallResult:
    call_id: uuid.UUID
    external_call_id: str
    status: str


@dataclass(slots=True)
class CallStatusUpdate:
    """Fields reported by the voice platform. ``None`` means "keep stored value"."""

    answered_at: datetime | None = None
    ended_at: datetime | None = None
    duration_seconds: int | None = None
    transcript: str | None = None
    recording_url: str | None = None
    cost: float | None = None
    cost_breakdown: dict[str, Any] | None = None


def extract_first_message(script: str) -> str:
    lines = [line.strip() for line in script.splitlines() if line.strip()]
    if not lines:
        return "Hello!"
    for line in lines:
        lowered = line.lower()
        if any(marker in lowered for marker in GREETING_MARKERS):
            return line
    return lines[0]


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _tool_functions(tools: list[VoiceTool]) -> list[VapiFunction]:
    return [
        VapiFunction(
            name=tool.name,
            description=tool.description,
            parameters={"type": "object", "properties": tool.parameters, "required": []},
        )
        for tool in tools
    ]


class CallManager:
    def __init__(
        self,
        db: Database,
        vapi: VapiClient,
        reasoning: ReasoningClient,
        broadcaster: Broadcaster,
    ) -> None:
        self.db = db
        self.vapi = vapi
        self.reasoning = reasoning
        self.broadcaster = broadcaster

    async def _load_contact(self, organization_id: uuid.UUID, contact_id: str | None) -> Contact | None:
        contact_uuid = _parse_uuid(contact_id)
        if contact_uuid is None:
            return None

        async def _get(session: AsyncSession):
            return await contact_repository.get(session, contact_uuid)

        return await self.db.query_with_context(organization_id, _get)

    async def _personalize_script(self, script: str, contact: Contact) -> str:
        previous = (
            f"Last contacted: {contact.last_contacted_at.isoformat()}"
            if contact.last_contacted_at
            else "First contact"
        )
        personalized = await self.reasoning.generate(
            f"Enhance this call script with personalized details for the contact: {script}",
            context={
                "contact": {
                    "name": contact.full_name,
                    "company": str(contact.company_id) if contact.company_id else None,
                    "jobTitle": contact.job_title,
                    "previousInteractions": previous,
                },
                "originalScript": script,
            },
            temperature=0.8,
        )
        return personalized or script

    async def make_call(
        self,
        request: MakeCallRequest,
        principal: AuthPrincipal,
        *,
        orchestration_execution_id: str | None = None,
    ) -> MakeCallResult:
        organization_id = principal.organization_id
        logger.info("call.requested", extra={"contact_id": request.contact_id, "organization_id": str(organization_id)})

        contact = await self._load_contact(organization_id, request.contact_id)
        script = request.script
        if contact is not None:
            script = await self._personalize_script(request.script, contact)

        assistant = build_assistant(
            name=f"Call to {request.to_number}",
            system_prompt=script,
            first_message=extract_first_message(script),
            language=request.language or "en",
            voice_id=request.voice_id,
            model=request.model or DEFAULT_LLM_MODEL,
            temperature=0.7,
            functions=_tool_functions(request.tools),
        )

        async def _insert_call(session: AsyncSession):
            call = VoiceCall(
                organization_id=organization_id,
                platform="vapi",
                from_number="system",
                to_number=request.to_number,
                status="initiated",
                assistant_config=assistant.as_payload(),
                stt_provider="deepgram",
                tts_provider="elevenlabs",
                llm_model=request.model or DEFAULT_LLM_MODEL,
                metadata_json={
                    "contactId": request.contact_id,
                    "script": script,
                    "orchestrationExecutionId": orchestration_execution_id,
                },
            )
            session.add(call)
            await session.flush()
            return call.id

        call_id = await self.db.query_with_context(organization_id, _insert_call)

        try:
            vapi_call = await self.vapi.make_call(
                request.to_number,
                assistant,
                metadata={
                    "nexusCallId": str(call_id),
                    "contactId": request.contact_id,
                    "organizationId": str(organization_id),
                    "userId": principal.user_id,
                },
            )
        except Exception as exc:
            logger.error("call.initiation_failed", extra={"call_id": str(call_id), "error": str(exc)})
            await self._mark_failed(organization_id, call_id)
            raise

        async def _record_external(session: AsyncSession):
            call = await session.get(VoiceCall, call_id)
            call.external_call_id = vapi_call.id
            call.from_number = vapi_call.phone_number_id or self.vapi.phone_number_id or "system"
            call.initiated_at = parse_timestamp(vapi_call.started_at) or utcnow()
            if contact is not None:
                session.add(
                    Activity(
                        organization_id=organization_id,
                        type="call",
                        direction="outbound",
                        contact_id=contact.id,
                        company_id=contact.company_id,
                        voice_call_id=call_id,
                        to_number=request.to_number,
                        call_status="initiated",
                        metadata_json={"voiceCallId": str(call_id), "vapiCallId": vapi_call.id},
                        created_by=principal.user_uuid,
                    )
                )

        await self.db.query_with_context(organization_id, _record_external)

        status = vapi_call.status or "initiated"
        await self.broadcaster.broadcast_call_status(call_id, organization_id, "initiated", {"externalCallId": vapi_call.id})
        logger.info(
            "call.initiated",
            extra={"call_id": str(call_id), "external_call_id": vapi_call.id, "status": status},
        )
        return MakeCallResult(call_id=call_id, external_call_id=vapi_call.id, status=status)

    async def _mark_failed(self, organization_id: uuid.UUID, call_id: uuid.UUID) -> None:
        async def _update(session: AsyncSession):
            call = await session.get(VoiceCall, call_id)
            if call is not None:
                call.status = "failed"
                call.ended_at = utcnow()

        await self.db.query_with_context(organization_id, _update)

    async def get_call(self, external_call_id: str) -> VoiceCall | None:
        async def _get(session: AsyncSession):
            return await voice_call_repository.by_external_id(session, external_call_id)

        return await self.db.query(_get)

    async def update_call_status(
        self,
        external_call_id: str,
        status: str,
        update: CallStatusUpdate | None = None,
    ) -> VoiceCall | None:
        """Apply a platform-reported status, keeping stored values for omitted fields.

        Runs without tenant context: the external call id is the trust anchor.
        """
        update = update or CallStatusUpdate()
        logger.info("call.status_update", extra={"external_call_id": external_call_id, "status": status})

        async def _apply(session: AsyncSession):
            call = await voice_call_repository.by_external_id(session, external_call_id)
            if call is None:
                return None

            call.status = status
            if update.answered_at is not None:
                call.answered_at = update.answered_at
            if update.ended_at is not None:
                call.ended_at = update.ended_at
            if update.duration_seconds is not None:
                call.duration_seconds = update.duration_seconds
            if update.transcript is not None:
                call.transcript = update.transcript
            if update.recording_url is not None:
                call.recording_url = update.recording_url
            if update.cost is not None:
                call.cost_usd = update.cost
            if update.cost_breakdown is not None:
                call.cost_breakdown = update.cost_breakdown

            activity = await activity_repository.for_voice_call(session, call.id)
            if activity is not None:
                activity.call_status = status
                if update.duration_seconds is not None:
                    activity.duration_seconds = update.duration_seconds
                if update.transcript is not None:
                    activity.transcript = update.transcript
                if update.recording_url is not None:
                    activity.recording_url = update.recording_url
                if update.cost is not None:
                    activity.cost_usd = update.cost
                if update.ended_at is not None:
                    activity.completed_at = update.ended_at
            return call

        call = await self.db.query(_apply)
        if call is None:
            logger.warning("call.not_found", extra={"external_call_id": external_call_id})
            return None

        if status == "completed" and update.transcript and update.transcript.strip():
            await self.analyze_call_transcript(call.id, update.transcript, call.organization_id)

        logger.info("call.status_updated", extra={"call_id": str(call.id), "status": status})
        return call

    async def analyze_call_transcript(self, call_id: uuid.UUID, transcript: str, organization_id: uuid.UUID) -> None:
        """Best-effort AI annotation of a finished call. Never raises."""
        try:
            analysis = await self.reasoning.analyze(TRANSCRIPT_ANALYSIS_TASK, transcript, TRANSCRIPT_ANALYSIS_SCHEMA)
            if not isinstance(analysis, dict):
                raise ValueError(f"unexpected analysis payload: {type(analysis).__name__}")

            deal_score = analysis.get("dealScore")

            async def _store(session: AsyncSession):
                call = await session.get(VoiceCall, call_id)
                if call is not None:
                    call.sentiment_overall = analysis.get("sentiment")
                    call.keywords_detected = analysis.get("keywords")
                    call.topics_discussed = analysis.get("topicsDiscussed")
                    call.objections_raised = analysis.get("objectionsRaised")
                    call.buying_signals = analysis.get("buyingSignals")
                    call.action_items = analysis.get("actionItems")
                    call.call_outcome = analysis.get("callOutcome")
                    call.deal_score = round(deal_score) if isinstance(deal_score, (int, float)) else None

                activity = await activity_repository.for_voice_call(session, call_id)
                if activity is not None:
                    activity.sentiment = analysis.get("sentiment")
                    activity.sentiment_score = analysis.get("sentimentScore")
                    activity.keywords_detected = analysis.get("keywords")
                    activity.ai_summary = analysis.get("summary")
                    activity.action_items = analysis.get("actionItems")
                    activity.objections_raised = analysis.get("objectionsRaised")
                    activity.buying_signals = analysis.get("buyingSignals")

            await self.db.query_with_context(organization_id, _store)
            logger.info(
                "call.transcript_analyzed",
                extra={"call_id": str(call_id), "status": analysis.get("callOutcome")},
            )
        except Exception as exc:
            logger.error("call.transcript_analysis_failed", extra={"call_id": str(call_id), "error": str(exc)})

    async def find_for_organization(self, organization_id: uuid.UUID | str, call_id: str | None) -> VoiceCall | None:
        """The call, only when it belongs to ``organization_id``."""
        call_uuid = _parse_uuid(call_id)
        if call_uuid is None:
            return None

        async def _get(session: AsyncSession):
            return await voice_call_repository.get(session, call_uuid)

        call = await self.db.query_with_context(organization_id, _get)
        if call is None or str(call.organization_id) != str(organization_id):
            return None
        return call

    async def cancel_call(self, call_id: uuid.UUID, principal: AuthPrincipal) -> VoiceCall:
        organization_id = principal.organization_id

        call = await self.find_for_organization(organization_id, str(call_id))
        if call is None:
            raise NotFoundError("Call not found")
        if call.status in TERMINAL_STATUSES:
            raise ValidationError(f"Call is already {call.status}")

        if call.external_call_id:
            try:
                await self.vapi.cancel_call(call.external_call_id)
            except UpstreamServiceError as exc:
                # The platform may have ended the call already; the local row is still cancelled.
                logger.warning(
                    "call.platform_cancel_failed",
                    extra={"call_id": str(call_id), "external_call_id": call.external_call_id, "error": str(exc)},
                )

        ended_at = datetime.now(timezone.utc)

        async def _cancel(session: AsyncSession):
            row = await session.get(VoiceCall, call_id)
            if row.status in TERMINAL_STATUSES:
                return row
            row.status = "cancelled"
            row.ended_at = ended_at
            activity = await activity_repository.for_voice_call(session, call_id)
            if activity is not None:
                activity.call_status = "cancelled"
                activity.completed_at = ended_at
            return row

        call = await self.db.query_with_context(organization_id, _cancel)
        if call.status != "cancelled":
            # The platform reported an end state while the hang-up was in flight.
            raise ValidationError(f"Call is already {call.status}")

        await self.broadcaster.broadcast_call_status(call.id, organization_id, "cancelled")
        logger.info("call.cancelled", extra={"call_id": str(call_id)})
        return call

    async def schedule_follow_up(self, external_call_id: str, parameters: dict[str, Any]) -> uuid.UUID | None:
        """Create a pending task for the contact on a call, as requested by the voice assistant."""
        call = await self.get_call(external_call_id)
        if call is None:
            logger.warning("call.not_found", extra={"external_call_id": external_call_id})
            return None

        async def _create(session: AsyncSession):
            call_activity = await activity_repository.for_voice_call(session, call.id)
            task = Activity(
                organization_id=call.organization_id,
                type="task",
                subject=parameters.get("subject") or f"Follow up on call to {call.to_number}",
                body=parameters.get("notes") or parameters.get("reason"),
                contact_id=call_activity.contact_id if call_activity else None,
                company_id=call_activity.company_id if call_activity else None,
                task_status="pending",
                task_priority=parameters.get("priority") or "medium",
                task_due_date=parse_timestamp(parameters.get("dueDate") or parameters.get("date")),
                metadata_json={
                    "source": "voice_function",
                    "voiceCallId": str(call.id),
                    "vapiCallId": external_call_id,
                },
            )
            session.add(task)
            await session.flush()
            return task.id

        task_id = await self.db.query_with_context(call.organization_id, _create)
        logger.info("call.follow_up_scheduled", extra={"call_id": str(call.id)})
        return task_id
