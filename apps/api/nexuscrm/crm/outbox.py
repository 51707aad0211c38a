from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from nexuscrm.clients.search import SearchClient
from nexuscrm.core.config import Settings
from nexuscrm.core.database import Database
from nexuscrm.crm.models import OutboxEvent, utcnow
from nexuscrm.crm.service import STORE_DOCUMENT_KIND
from nexuscrm.metrics import observe_outbox_event
from nexuscrm.otel import traced


logger = logging.getLogger("nexuscrm.outbox")

# Pending rows, and processing rows whose lease has expired.
CLAIMABLE_STATUSES = ("pending", "processing")

OutboxHandler = Callable[[dict[str, Any]], Awaitable[None]]


def retry_delay(attempts: int, base_seconds: float) -> timedelta:
    return timedelta(seconds=base_seconds * 2 ** max(attempts - 1, 0))


def search_handlers(search: SearchClient) -> dict[str, OutboxHandler]:
    async def store_document(payload: dict[str, Any]) -> None:
        await search.store_document(payload["content"], payload.get("metadata") or {})

    return {STORE_DOCUMENT_KIND: store_document}


class OutboxWorker:
    """Delivers side effects recorded alongside CRM writes.

    Rows are claimed oldest first. A claim is a lease: the row stays
    ``processing`` until the delivery outcome is recorded or the lease
    expires. A failed delivery is rescheduled with exponential backoff until
    ``outbox_max_attempts`` is reached, after which the row is parked as
    ``failed``.
    """

    def __init__(self, db: Database, handlers: Mapping[str, OutboxHandler], settings: Settings) -> None:
        self.db = db
        self.handlers = dict(handlers)
        self.batch_size = settings.outbox_batch_size
        self.max_attempts = settings.outbox_max_attempts
        self.backoff_base = settings.outbox_backoff_base_seconds
        self.poll_interval = settings.outbox_poll_interval_seconds
        self.lease_seconds = settings.outbox_lease_seconds
        self._wakeup = asyncio.Event()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def notify(self) -> None:
        self._wakeup.set()

    async def _claim_due(self) -> list[OutboxEvent]:
        """Lease a batch of due rows to this worker.

        Each claimed row moves to ``processing`` inside the claiming
        transaction, its ``attempts`` bumped and ``available_at`` pushed out by
        the lease. The update is conditional on the values just read, so two
        workers that select the same row cannot both claim it. Rows left in
        ``processing`` by a worker that died become claimable once the lease
        runs out.
        """

        async def _claim(session: AsyncSession):
            now = utcnow()
            query = select(OutboxEvent).where(
                OutboxEvent.status.in_(CLAIMABLE_STATUSES),
                OutboxEvent.available_at <= now,
            )
            if self.db.dialect_name == "postgresql":
                query = query.with_for_update(skip_locked=True)
            query = query.order_by(OutboxEvent.created_at.asc()).limit(self.batch_size)
            candidates = list((await session.scalars(query)).all())

            lease_until = now + timedelta(seconds=self.lease_seconds)
            claimed: list[OutboxEvent] = []
            for event in candidates:
                result = await session.execute(
                    update(OutboxEvent)
                    .where(
                        OutboxEvent.id == event.id,
                        OutboxEvent.status == event.status,
                        OutboxEvent.attempts == event.attempts,
                    )
                    .values(status="processing", attempts=event.attempts + 1, available_at=lease_until),
                    execution_options={"synchronize_session": False},
                )
                if result.rowcount != 1:
                    continue
                set_committed_value(event, "status", "processing")
                set_committed_value(event, "attempts", event.attempts + 1)
                set_committed_value(event, "available_at", lease_until)
                claimed.append(event)
            return claimed

        return await self.db.query(_claim)

    async def _record(self, event: OutboxEvent, error: str | None) -> None:
        async def _update(session: AsyncSession):
            row = await session.get(OutboxEvent, event.id)
            if row is None or row.status != "processing" or row.attempts != event.attempts:
                # The lease ran out and another worker owns the row now.
                logger.warning("outbox.lease_lost", extra={"outbox_id": str(event.id), "kind": event.kind})
                return
            if error is None:
                row.status = "delivered"
                row.delivered_at = utcnow()
                row.last_error = None
                return
            row.last_error = error
            if row.attempts >= self.max_attempts:
                row.status = "failed"
            else:
                row.status = "pending"
                row.available_at = utcnow() + retry_delay(row.attempts, self.backoff_base)

        await self.db.query(_update)

    async def drain(self) -> int:
        """Process one batch of due events; returns how many were delivered."""
        delivered = 0
        for event in await self._claim_due():
            handler = self.handlers.get(event.kind)
            with traced("nexuscrm.outbox", "outbox.deliver", outbox_id=str(event.id), kind=event.kind) as span:
                if handler is None:
                    error = f"No handler for outbox kind {event.kind}"
                else:
                    try:
                        await handler(event.payload)
                        error = None
                    except Exception as exc:
                        error = str(exc) or type(exc).__name__
                span.set_attribute("attempt", event.attempts)
                if error is not None:
                    span.set_attribute("error", True)

            await self._record(event, error)
            if error is None:
                delivered += 1
                observe_outbox_event(event.kind, "delivered")
                logger.info("outbox.delivered", extra={"outbox_id": str(event.id), "kind": event.kind})
            else:
                attempts = event.attempts
                outcome = "failed" if attempts >= self.max_attempts else "retry"
                observe_outbox_event(event.kind, outcome)
                logger.warning(
                    "outbox.delivery_failed",
                    extra={
                        "outbox_id": str(event.id),
                        "kind": event.kind,
                        "attempts": attempts,
                        "status": outcome,
                        "error": error,
                    },
                )
        return delivered

    async def run(self) -> None:
        logger.info("outbox.started", extra={"status": "running"})
        while not self._stopping.is_set():
            self._wakeup.clear()
            try:
                await self.drain()
            except Exception as exc:
                logger.exception("outbox.drain_failed", extra={"error": str(exc)})
            waiters = [asyncio.ensure_future(self._wakeup.wait()), asyncio.ensure_future(self._stopping.wait())]
            try:
                await asyncio.wait(waiters, timeout=self.poll_interval, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()
        logger.info("outbox.stopped", extra={"status": "stopped"})

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self.run(), name="nexuscrm-outbox")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
