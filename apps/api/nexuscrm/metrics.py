from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

upstream_requests_total = Counter(
    "upstream_requests_total",
    "Total requests to platform services by outcome",
    ["service", "outcome"],
)

upstream_request_duration_seconds = Histogram(
    "upstream_request_duration_seconds",
    "Platform service request duration in seconds",
    ["service"],
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Voice platform webhook events by type and outcome",
    ["event_type", "outcome"],
)

realtime_broadcasts_total = Counter(
    "realtime_broadcasts_total",
    "Realtime broadcasts by event and whether they were delivered to the socket server",
    ["event", "delivered"],
)

outbox_events_total = Counter(
    "outbox_events_total",
    "Outbox deliveries by kind and outcome",
    ["kind", "outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_upstream_request(service: str, outcome: str, duration: float) -> None:
    upstream_requests_total.labels(service=service, outcome=outcome).inc()
    upstream_request_duration_seconds.labels(service=service).observe(duration)


def observe_webhook_event(event_type: str, outcome: str) -> None:
    webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()


def observe_broadcast(event: str, delivered: bool) -> None:
    realtime_broadcasts_total.labels(event=event, delivered=str(delivered).lower()).inc()


def observe_outbox_event(kind: str, outcome: str) -> None:
    outbox_events_total.labels(kind=kind, outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
