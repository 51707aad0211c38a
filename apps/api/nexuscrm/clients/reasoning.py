from __future__ import annotations

from typing import Any

from nexuscrm.clients.base import ServiceClient
from nexuscrm.clients.schemas import ReasoningResult


DEFAULT_ANALYSIS_MODEL = "gpt-4o"


class ReasoningClient(ServiceClient):
    """LLM reasoning, generation and structured analysis on MageAgent."""

    service_name = "mageagent"
    display_name = "MageAgent"
    default_timeout = 60.0

    async def reason(
        self,
        task: str,
        *,
        context: dict[str, Any] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        output_format: str = "text",
        schema: dict[str, Any] | None = None,
        tools: list[str] | None = None,
    ) -> ReasoningResult:
        payload: dict[str, Any] = {
            "task": task,
            "context": context or {},
            "temperature": temperature,
            "outputFormat": output_format,
            "tools": tools or [],
        }
        if model is not None:
            payload["model"] = model
        if schema is not None:
            payload["schema"] = schema
        data = await self._request("POST", "/api/reason", operation="reasoning", json=payload)
        return ReasoningResult.model_validate(data)

    async def generate(
        self,
        task: str,
        *,
        context: dict[str, Any] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
    ) -> str:
        result = await self.reason(task, context=context, model=model, temperature=temperature, output_format="text")
        return "" if result.output is None else str(result.output)

    async def analyze(
        self,
        task: str,
        data: Any,
        schema: dict[str, Any],
        *,
        model: str = DEFAULT_ANALYSIS_MODEL,
    ) -> Any:
        result = await self.reason(
            task,
            context={"data": data},
            model=model,
            temperature=0.2,
            output_format="json",
            schema=schema,
        )
        return result.output

    async def extract_entities(self, text: str, entity_types: list[str]) -> dict[str, list[str]]:
        schema = {
            "type": "object",
            "properties": {name: {"type": "array", "items": {"type": "string"}} for name in entity_types},
        }
        output = await self.analyze(
            f"Extract the following entity types from the text: {', '.join(entity_types)}",
            text,
            schema,
        )
        return output or {}

    async def analyze_sentiment(self, text: str) -> dict[str, Any]:
        return await self.analyze(
            "Analyze the sentiment of this text and provide a score from -1 (very negative) to 1 (very positive)",
            text,
            {
                "sentiment": {"type": "string", "enum": ["positive", "neutral", "negative", "mixed"]},
                "score": {"type": "number", "minimum": -1, "maximum": 1},
            },
        )

    async def summarize(self, text: str, max_length: int | None = None) -> str:
        limit = f" in no more than {max_length} words" if max_length else ""
        return await self.generate(f"Summarize the following text{limit}", context={"text": text}, temperature=0.3)

    async def translate(self, text: str, target_language: str) -> str:
        return await self.generate(
            f"Translate the following text to {target_language}",
            context={"text": text},
            temperature=0.3,
        )
