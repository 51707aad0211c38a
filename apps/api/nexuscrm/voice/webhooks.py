from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from nexuscrm.core.config import Settings
from nexuscrm.metrics import observe_webhook_event
from nexuscrm.otel import traced
from nexuscrm.realtime.broadcaster import Broadcaster
from nexuscrm.voice.call_manager import TERMINAL_STATUSES, CallManager, CallStatusUpdate, parse_timestamp


logger = logging.getLogger("nexuscrm.voice.webhooks")

SIGNATURE_HEADER = "x-vapi-signature"

router = APIRouter(tags=["webhooks"])


class VapiWebhookEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    call_id: str = Field(alias="callId")
    timestamp: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    return hmac.compare_digest(sign_payload(body, secret), signature.strip().lower())


def check_webhook_signature(body: bytes, signature: str | None, settings: Settings) -> None:
    secret = settings.vapi_webhook_secret
    if not secret:
        if settings.webhook_require_signature:
            logger.error("webhook.secret_missing")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Webhook secret not configured")
        logger.warning("webhook.signature_skipped")
        return
    if not signature:
        logger.warning("webhook.signature_missing")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Signature required")
    if not verify_signature(body, signature, secret):
        logger.warning("webhook.signature_invalid")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _float_or_none(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


class WebhookHandler:
    """Maps voice platform lifecycle events onto call state and realtime pushes."""

    def __init__(self, call_manager: CallManager, broadcaster: Broadcaster) -> None:
        self.call_manager = call_manager
        self.broadcaster = broadcaster
        self._handlers: dict[str, Callable[[VapiWebhookEvent], Awaitable[None]]] = {
            "call.started": self.on_call_started,
            "call.answered": self.on_call_answered,
            "call.ended": self.on_call_ended,
            "call.failed": self.on_call_failed,
            "function.called": self.on_function_called,
            "transcript.updated": self.on_transcript_updated,
        }

    async def handle(self, event: VapiWebhookEvent) -> None:
        logger.info("webhook.received", extra={"event_type": event.type, "external_call_id": event.call_id})
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("webhook.unhandled", extra={"event_type": event.type})
            return
        with traced("nexuscrm.voice", "vapi.webhook", event_type=event.type, external_call_id=event.call_id):
            await handler(event)

    async def on_call_started(self, event: VapiWebhookEvent) -> None:
        call = await self.call_manager.update_call_status(event.call_id, "ringing")
        if call is not None:
            await self.broadcaster.broadcast_call_status(
                call.id,
                call.organization_id,
                "ringing",
                {"externalCallId": event.call_id, "startedAt": event.timestamp},
            )

    async def on_call_answered(self, event: VapiWebhookEvent) -> None:
        call = await self.call_manager.update_call_status(
            event.call_id,
            "in-progress",
            CallStatusUpdate(answered_at=parse_timestamp(event.timestamp)),
        )
        if call is not None:
            await self.broadcaster.broadcast_call_status(
                call.id,
                call.organization_id,
                "in-progress",
                {"externalCallId": event.call_id, "answeredAt": event.timestamp},
            )

    async def on_call_ended(self, event: VapiWebhookEvent) -> None:
        data = event.data
        reported = data.get("status")
        final_status = reported if reported in TERMINAL_STATUSES else "completed"
        transcript = data.get("transcript")
        cost_breakdown = data.get("costBreakdown")
        update = CallStatusUpdate(
            ended_at=parse_timestamp(data.get("endedAt") or event.timestamp),
            duration_seconds=_int_or_none(data.get("durationSeconds")),
            transcript=transcript if isinstance(transcript, str) else None,
            recording_url=data.get("recordingUrl"),
            cost=_float_or_none(data.get("cost")),
            cost_breakdown=cost_breakdown if isinstance(cost_breakdown, dict) else None,
        )
        call = await self.call_manager.update_call_status(event.call_id, final_status, update)
        if call is not None:
            await self.broadcaster.broadcast_call_status(
                call.id,
                call.organization_id,
                final_status,
                {
                    "externalCallId": event.call_id,
                    "endedAt": event.timestamp,
                    "durationSeconds": update.duration_seconds,
                    "cost": update.cost,
                },
            )

    async def on_call_failed(self, event: VapiWebhookEvent) -> None:
        reason = event.data.get("reason")
        final_status = "no-answer" if reason == "no-answer" else "failed"
        call = await self.call_manager.update_call_status(
            event.call_id,
            final_status,
            CallStatusUpdate(ended_at=parse_timestamp(event.timestamp)),
        )
        if call is not None:
            await self.broadcaster.broadcast_call_status(
                call.id,
                call.organization_id,
                final_status,
                {"externalCallId": event.call_id, "endedAt": event.timestamp, "reason": reason},
            )

    async def on_function_called(self, event: VapiWebhookEvent) -> None:
        function_name = event.data.get("functionName")
        parameters = event.data.get("parameters") or {}
        logger.info(
            "webhook.function_called",
            extra={"external_call_id": event.call_id, "operation": function_name},
        )
        if function_name == "schedule_follow_up" and isinstance(parameters, dict):
            await self.call_manager.schedule_follow_up(event.call_id, parameters)

    async def on_transcript_updated(self, event: VapiWebhookEvent) -> None:
        messages = event.data.get("transcript")
        if not isinstance(messages, list) or not messages:
            return
        call = await self.call_manager.get_call(event.call_id)
        if call is None:
            logger.warning("call.not_found", extra={"external_call_id": event.call_id})
            return

        latest = messages[-1] if isinstance(messages[-1], dict) else {}
        segment = {
            "text": latest.get("text") or latest.get("content") or "",
            "speaker": "assistant" if latest.get("role") == "assistant" else "user",
            "timestamp": latest.get("timestamp") or event.timestamp,
            "confidence": latest.get("confidence"),
        }
        await self.broadcaster.broadcast_transcript_update(call.id, call.organization_id, segment)


@router.post("/webhooks/vapi")
async def vapi_webhook(request: Request) -> dict[str, Any]:
    container = request.app.state.container
    body = await request.body()
    check_webhook_signature(body, request.headers.get(SIGNATURE_HEADER), container.settings)

    event_type = "unknown"
    try:
        event = VapiWebhookEvent.model_validate(json.loads(body))
        event_type = event.type
        await container.webhook_handler.handle(event)
    except (ValueError, PydanticValidationError) as exc:
        observe_webhook_event(event_type, "invalid")
        logger.error("webhook.invalid_payload", extra={"event_type": event_type, "error": str(exc)})
        return {"received": True, "error": str(exc)}
    except Exception as exc:
        # Acknowledge anyway so the platform does not retry.
        observe_webhook_event(event_type, "error")
        logger.exception("webhook.processing_failed", extra={"event_type": event_type, "error": str(exc)})
        return {"received": True, "error": str(exc)}

    observe_webhook_event(event_type, "ok")
    return {"received": True}
