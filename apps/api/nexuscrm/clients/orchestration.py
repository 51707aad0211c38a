from __future__ import annotations

from typing import Any

from nexuscrm.clients.base import ServiceClient
from nexuscrm.clients.schemas import OrchestrationResult


class OrchestrationClient(ServiceClient):
    """Goal-driven workflow execution on the orchestration agent."""

    service_name = "orchestration"
    display_name = "Orchestration"
    default_timeout = 120.0

    async def execute(self, goal: str, metadata: dict[str, Any] | None = None) -> OrchestrationResult:
        data = await self._request(
            "POST",
            "/api/orchestration/execute",
            operation="execute",
            json={"goal": goal, "metadata": metadata or {}},
        )
        return OrchestrationResult.model_validate(data)

    async def get_status(self, execution_id: str) -> OrchestrationResult:
        data = await self._request("GET", f"/api/orchestration/status/{execution_id}", operation="status")
        return OrchestrationResult.model_validate(data)

    async def cancel(self, execution_id: str) -> None:
        await self._request("POST", f"/api/orchestration/cancel/{execution_id}", operation="cancel")
