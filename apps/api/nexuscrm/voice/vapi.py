from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import Field

from nexuscrm.clients.base import ServiceClient
from nexuscrm.clients.schemas import UpstreamModel
from nexuscrm.errors import UpstreamServiceError


logger = logging.getLogger("nexuscrm.voice.vapi")

DEFAULT_VOICES = {
    "en": "pNInz6obpgDQGcFmaJgB",
    "th": "onwK4e9ZLuTAKqWW03F9",
    "es": "EXAVITQu4vr4xnSDxMaL",
    "fr": "XB0fDUnXU5powFXDhCwa",
    "de": "ErXwobaYiN019PkySvjV",
    "ja": "CwhRBWXzGAHq8TQ4Fs17",
    "zh": "TX3LPaxmHKxFdv7VOQHJ",
}
DEFAULT_LLM_MODEL = "gpt-4o"
VOICE_MODEL = "eleven_turbo_v2"
END_CALL_MESSAGE = "Thank you for your time. Goodbye!"
MAX_CALL_DURATION_SECONDS = 600


class VapiFunction(UpstreamModel):
    name: str
    description: str
    parameters: dict[str, Any]
    url: str | None = None


class VapiVoice(UpstreamModel):
    provider: str = "elevenlabs"
    voice_id: str
    model: str | None = VOICE_MODEL


class VapiModel(UpstreamModel):
    provider: str = "openai"
    model: str = DEFAULT_LLM_MODEL
    temperature: float = 0.7
    system_prompt: str
    functions: list[VapiFunction] = Field(default_factory=list)


class VapiAssistant(UpstreamModel):
    name: str
    voice: VapiVoice
    model: VapiModel
    first_message: str | None = None
    end_call_message: str = END_CALL_MESSAGE
    recording_enabled: bool = True
    transcription_provider: str = "deepgram"
    max_duration_seconds: int = MAX_CALL_DURATION_SECONDS

    def as_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class VapiCall(UpstreamModel):
    id: str
    status: str | None = None
    phone_number: str | None = None
    phone_number_id: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    cost: float | None = None
    transcript: str | None = None


def build_assistant(
    *,
    name: str,
    system_prompt: str,
    first_message: str,
    language: str = "en",
    voice_id: str | None = None,
    model: str = DEFAULT_LLM_MODEL,
    temperature: float = 0.7,
    functions: list[VapiFunction] | None = None,
) -> VapiAssistant:
    return VapiAssistant(
        name=name,
        voice=VapiVoice(voice_id=voice_id or DEFAULT_VOICES.get(language, DEFAULT_VOICES["en"])),
        model=VapiModel(
            model=model,
            temperature=temperature,
            system_prompt=system_prompt,
            functions=functions or [],
        ),
        first_message=first_message,
    )


class VapiClient(ServiceClient):
    """Outbound calls and assistants on the Vapi voice platform."""

    service_name = "vapi"
    display_name = "Vapi"
    default_timeout = 30.0
    health_path = "/call?limit=1"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None,
        phone_number_id: str | None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            logger.warning("vapi.api_key_missing")
        self.api_key = api_key
        self.phone_number_id = phone_number_id
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        super().__init__(base_url, headers=headers, transport=transport)

    def _require_key(self) -> None:
        if not self.api_key:
            raise UpstreamServiceError(self.service_name, "Vapi API key not configured")

    async def make_call(
        self,
        phone_number: str,
        assistant: VapiAssistant,
        metadata: dict[str, Any] | None = None,
    ) -> VapiCall:
        self._require_key()
        logger.info("vapi.call_requested", extra={"operation": "make call"})
        data = await self._request(
            "POST",
            "/call",
            operation="make call",
            json={
                "phoneNumberId": self.phone_number_id,
                "customer": {"number": phone_number},
                "assistant": assistant.as_payload(),
                "metadata": metadata or {},
            },
        )
        call = VapiCall.model_validate({**data, "phoneNumber": phone_number})
        logger.info("vapi.call_initiated", extra={"external_call_id": call.id, "status": call.status})
        return call

    async def make_call_with_assistant(
        self,
        phone_number: str,
        assistant_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> VapiCall:
        self._require_key()
        data = await self._request(
            "POST",
            "/call",
            operation="make call with assistant",
            json={
                "phoneNumberId": self.phone_number_id,
                "customer": {"number": phone_number},
                "assistantId": assistant_id,
                "metadata": metadata or {},
            },
        )
        return VapiCall.model_validate({**data, "phoneNumber": phone_number})

    async def get_call(self, call_id: str) -> VapiCall:
        data = await self._request("GET", f"/call/{call_id}", operation="get call")
        customer = data.get("customer") or {}
        return VapiCall.model_validate({**data, "phoneNumber": customer.get("number")})

    async def cancel_call(self, call_id: str) -> None:
        await self._request("DELETE", f"/call/{call_id}", operation="cancel call")
        logger.info("vapi.call_cancelled", extra={"external_call_id": call_id})

    async def create_assistant(self, assistant: VapiAssistant) -> str:
        data = await self._request("POST", "/assistant", operation="create assistant", json=assistant.as_payload())
        return str(data["id"])
