from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response

from nexuscrm import __version__
from nexuscrm.clients import health_check_all
from nexuscrm.core.auth import require_permission
from nexuscrm.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()


@router.get("/health", tags=["system"])
async def health(request: Request) -> JSONResponse:
    container = request.app.state.container
    database = await container.db.health_check()
    services = await health_check_all(container.clients)
    healthy = database and services.all_healthy
    body: dict[str, Any] = {
        "status": "healthy" if healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": container.settings.service_name,
        "version": __version__,
        "database": database,
        "services": services.as_dict(),
    }
    return JSONResponse(body, status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE)


@router.get("/health/ready", tags=["system"])
async def ready(request: Request) -> JSONResponse:
    database = await request.app.state.container.db.health_check()
    return JSONResponse(
        {"ready": database},
        status_code=status.HTTP_200_OK if database else status.HTTP_503_SERVICE_UNAVAILABLE,
    )


@router.get("/health/live", tags=["system"])
async def live() -> dict[str, bool]:
    return {"alive": True}


@router.get("/metrics", tags=["system"], dependencies=[Depends(require_permission("system.metrics.read"))])
async def metrics(request: Request) -> Response:
    if not request.app.state.container.settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
