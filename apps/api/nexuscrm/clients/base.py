from __future__ import annotations

import logging
import time
from typing import Any

import httpx
from opentelemetry import trace

from nexuscrm.context import get_correlation_id
from nexuscrm.errors import UpstreamServiceError
from nexuscrm.metrics import observe_upstream_request


tracer = trace.get_tracer("nexuscrm.clients")
logger = logging.getLogger("nexuscrm.clients")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    text = response.text.strip()
    return text[:200] if text else f"HTTP {response.status_code} {response.reason_phrase}"


class ServiceClient:
    """Thin JSON-over-HTTP wrapper shared by the platform service clients.

    Every request gets a span, a correlation header, request and response log
    lines and an upstream metric. Non-2xx responses and transport failures are
    raised as ``UpstreamServiceError``; nothing is retried here.
    """

    service_name = "service"
    display_name = "Service"
    default_timeout = 30.0
    health_path = "/health"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or self.default_timeout
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Content-Type": "application/json", **(headers or {})},
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
        allow_statuses: tuple[int, ...] = (),
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Statuses listed in ``allow_statuses`` are not treated as failures and
        yield ``None`` so callers can map them (404 -> not found, 401 -> no
        principal).
        """
        headers: dict[str, str] = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id

        with tracer.start_as_current_span(f"{self.service_name}.{operation}") as span:
            span.set_attribute("peer.service", self.service_name)
            span.set_attribute("http.method", method)
            span.set_attribute("http.route", path)
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)

            logger.debug(
                "upstream.request",
                extra={"service": self.service_name, "operation": operation, "method": method, "url": path},
            )
            started = time.perf_counter()
            try:
                response = await self._http.request(method, path, json=json, params=params, headers=headers)
            except httpx.HTTPError as exc:
                duration = time.perf_counter() - started
                observe_upstream_request(self.service_name, "transport_error", duration)
                span.set_attribute("error", True)
                logger.error(
                    "upstream.error",
                    extra={"service": self.service_name, "operation": operation, "url": path, "error": str(exc)},
                )
                raise UpstreamServiceError(
                    self.service_name,
                    f"{self.display_name} {operation} failed: {str(exc) or type(exc).__name__}",
                ) from exc

            duration = time.perf_counter() - started
            span.set_attribute("http.status_code", response.status_code)
            logger.debug(
                "upstream.response",
                extra={
                    "service": self.service_name,
                    "operation": operation,
                    "status_code": response.status_code,
                    "duration_ms": round(duration * 1000, 2),
                },
            )

            if response.status_code in allow_statuses:
                observe_upstream_request(self.service_name, "ok", duration)
                return None

            if response.is_error:
                observe_upstream_request(self.service_name, "http_error", duration)
                span.set_attribute("error", True)
                detail = _error_detail(response)
                logger.error(
                    "upstream.error",
                    extra={
                        "service": self.service_name,
                        "operation": operation,
                        "status_code": response.status_code,
                        "error": detail,
                    },
                )
                raise UpstreamServiceError(
                    self.service_name,
                    f"{self.display_name} {operation} failed: {detail}",
                    status_code=response.status_code,
                )

            observe_upstream_request(self.service_name, "ok", duration)
            if not response.content:
                return {}
            return response.json()

    async def health_check(self) -> bool:
        try:
            response = await self._http.get(self.health_path)
        except httpx.HTTPError as exc:
            logger.warning("upstream.health_failed", extra={"service": self.service_name, "error": str(exc)})
            return False
        return response.status_code == 200

    async def aclose(self) -> None:
        await self._http.aclose()
