from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from sqlalchemy import MetaData, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from nexuscrm.context import reset_organization_id, set_organization_id
from nexuscrm.core.config import Settings
from nexuscrm.errors import SchemaMissingError


SCHEMA = "nexuscrm"
TENANT_SETTING = "app.current_organization_id"

T = TypeVar("T")

logger = logging.getLogger("nexuscrm.db")


class Base(DeclarativeBase):
    metadata = MetaData(schema=SCHEMA)


class Database:
    """Async engine plus the two execution modes used by the service.

    ``query`` runs without tenant context and is reserved for trusted callers
    such as the voice webhook. ``query_with_context`` sets the organization id
    for row-level security before running anything else in the transaction.
    """

    def __init__(
        self,
        url: str,
        *,
        schema: str = SCHEMA,
        engine_options: dict[str, Any] | None = None,
        schema_translate_map: dict[str | None, str | None] | None = None,
    ) -> None:
        self.url = url
        self.schema = schema
        engine = create_async_engine(url, **(engine_options or {}))
        if schema_translate_map is not None:
            engine = engine.execution_options(schema_translate_map=schema_translate_map)
        self.engine = engine
        self.session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> Database:
        engine_options: dict[str, Any] = {"echo": settings.db_echo, "pool_pre_ping": True}
        if make_url(settings.database_url).get_backend_name() == "postgresql":
            engine_options.update(
                pool_size=settings.db_pool_size,
                pool_timeout=settings.db_pool_timeout_seconds,
                pool_recycle=settings.db_pool_recycle_seconds,
            )
        return cls(settings.database_url, schema=settings.db_schema, engine_options=engine_options)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def connect(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            if self.dialect_name == "postgresql":
                found = await conn.scalar(
                    text("SELECT schema_name FROM information_schema.schemata WHERE schema_name = :schema"),
                    {"schema": self.schema},
                )
                if found is None:
                    raise SchemaMissingError(
                        f"NexusCRM schema not found. The '{self.schema}' schema must be created "
                        "by the platform database migrations before this service starts."
                    )
        logger.info("db.connected", extra={"pool": self.pool_status()})

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def tenant_transaction(self, organization_id: uuid.UUID | str) -> AsyncIterator[AsyncSession]:
        token = set_organization_id(str(organization_id))
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await self._set_organization_context(session, organization_id)
                    yield session
        finally:
            reset_organization_id(token)

    async def query(self, callback: Callable[[AsyncSession], Awaitable[T]]) -> T:
        started = time.perf_counter()
        async with self.transaction() as session:
            result = await callback(session)
        logger.debug("db.query", extra={"duration_ms": round((time.perf_counter() - started) * 1000, 2)})
        return result

    async def query_with_context(
        self,
        organization_id: uuid.UUID | str,
        callback: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        started = time.perf_counter()
        async with self.tenant_transaction(organization_id) as session:
            result = await callback(session)
        logger.debug(
            "db.query",
            extra={
                "organization_id": str(organization_id),
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return result

    async def _set_organization_context(self, session: AsyncSession, organization_id: uuid.UUID | str) -> None:
        # set_config(..., true) is the bindable form of SET LOCAL.
        if self.dialect_name != "postgresql":
            return
        await session.execute(
            text("SELECT set_config(:setting, :organization_id, true)"),
            {"setting": TENANT_SETTING, "organization_id": str(organization_id)},
        )

    async def health_check(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as exc:
            logger.error("db.health_check_failed", extra={"error": str(exc)})
            return False

    def pool_status(self) -> dict[str, str]:
        pool = self.engine.pool
        return {"class": type(pool).__name__, "status": pool.status()}

    async def dispose(self) -> None:
        await self.engine.dispose()
