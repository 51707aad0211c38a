from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from nexuscrm import __version__
from nexuscrm.api.routes import router as system_router
from nexuscrm.clients import health_check_all
from nexuscrm.container import ServiceContainer
from nexuscrm.core.config import get_settings
from nexuscrm.errors import DependencyUnavailableError
from nexuscrm.gql.schema import build_graphql_router
from nexuscrm.logging import configure_logging
from nexuscrm.middleware.correlation_id import CorrelationIdMiddleware
from nexuscrm.middleware.request_logging import RequestLoggingMiddleware
from nexuscrm.otel import server_request_hook, setup_otel
from nexuscrm.realtime.server import SOCKET_PATH
from nexuscrm.voice.webhooks import router as webhook_router


configure_logging()
logger = logging.getLogger("nexuscrm.lifecycle")


async def _check_dependencies(container: ServiceContainer) -> None:
    services = await health_check_all(container.clients)
    if services.all_healthy:
        logger.info("service.dependencies_healthy")
        return

    unhealthy = ",".join(name for name, ok in _flatten(services.as_dict()) if not ok)
    logger.warning("service.dependencies_unhealthy", extra={"status": unhealthy})
    if not services.auth:
        raise DependencyUnavailableError("Auth service is unavailable - cannot start without authentication")
    if not services.graphrag.postgres:
        raise DependencyUnavailableError("PostgreSQL is unavailable - cannot start without database")
    logger.warning("service.degraded")


def _flatten(health: dict[str, object], prefix: str = "") -> list[tuple[str, bool]]:
    items: list[tuple[str, bool]] = []
    for name, value in health.items():
        if isinstance(value, dict):
            items.extend(_flatten(value, f"{prefix}{name}."))
        else:
            items.append((f"{prefix}{name}", bool(value)))
    return items


@asynccontextmanager
async def lifespan(app: FastAPI):
    container: ServiceContainer = app.state.container
    settings = container.settings
    logger.info("service.starting", extra={"service": settings.service_name, "status": settings.app_env})

    await container.db.connect()
    await _check_dependencies(container)
    if settings.outbox_worker_enabled:
        container.outbox_worker.start()
    logger.info("service.started", extra={"service": settings.service_name})
    try:
        yield
    finally:
        logger.info("service.stopping", extra={"service": settings.service_name})
        await container.outbox_worker.stop()
        await container.aclose()


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    container = container or ServiceContainer.build(get_settings())
    settings = container.settings

    app = FastAPI(title=settings.app_name, version=__version__, lifespan=lifespan)
    app.state.container = container
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(system_router)
    app.include_router(webhook_router)
    app.include_router(build_graphql_router(settings), prefix="/graphql")

    setup_otel(settings)

    if not getattr(app, "_is_instrumented_by_opentelemetry", False):
        FastAPIInstrumentor().instrument_app(app, server_request_hook=server_request_hook)
    return app


app = create_app()
asgi_app = socketio.ASGIApp(app.state.container.sio, other_asgi_app=app, socketio_path=SOCKET_PATH)
