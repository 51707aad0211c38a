from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from nexuscrm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("nexuscrm.request")

# Liveness and readiness checks hit these every few seconds.
HEALTH_CHECK_PATHS = frozenset({"/health/live", "/health/ready"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One structured line and one metric sample per HTTP request.

    The path label is the matched route template, resolved after dispatch, so
    ids in URLs never become label values. Socket.IO traffic is mounted outside
    this app and is not seen here.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - started
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=elapsed)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": method, "path": path, "status_code": 500, "duration_ms": round(elapsed * 1000, 2)},
            )
            raise

        elapsed = time.perf_counter() - started
        path = resolve_http_path_label(request)
        observe_http_request(method=method, path=path, status=response.status_code, duration=elapsed)

        level = logging.DEBUG if path in HEALTH_CHECK_PATHS and response.status_code < 400 else logging.INFO
        logger.log(
            level,
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round(elapsed * 1000, 2),
                "user_agent": request.headers.get("user-agent"),
            },
        )
        return response
