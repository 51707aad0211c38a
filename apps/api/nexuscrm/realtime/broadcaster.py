from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from nexuscrm.metrics import observe_broadcast


logger = logging.getLogger("nexuscrm.realtime")

CALL_STATUS_EVENT = "call:status"
TRANSCRIPT_UPDATE_EVENT = "call:transcript:update"


class RealtimeServer(Protocol):
    async def emit(self, event: str, data: Any = None, *, room: str | None = None, **kwargs: Any) -> None: ...


def organization_room(organization_id: object) -> str:
    return f"org:{organization_id}"


def call_room(call_id: object) -> str:
    return f"call:{call_id}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Broadcaster:
    """Fan-out of call events to Socket.IO rooms.

    One instance is built at startup and handed to every component that needs
    to push events. Until a server is attached, broadcasts log a warning and are
    dropped; they are never queued. A failing emit is logged and reported as not
    delivered, never raised to the caller.
    """

    def __init__(self) -> None:
        self._server: RealtimeServer | None = None

    @property
    def initialized(self) -> bool:
        return self._server is not None

    def attach(self, server: RealtimeServer) -> None:
        if self._server is not None:
            logger.warning("realtime.already_initialized")
            return
        self._server = server
        logger.info("realtime.initialized")

    async def _emit(self, room: str, event: str, payload: dict[str, Any]) -> bool:
        if self._server is None:
            logger.warning("realtime.not_initialized", extra={"event_type": event, "room": room})
            observe_broadcast(event, delivered=False)
            return False
        try:
            await self._server.emit(event, payload, room=room)
        except Exception as exc:
            logger.error("realtime.broadcast_failed", extra={"event_type": event, "room": room, "error": str(exc)})
            observe_broadcast(event, delivered=False)
            return False
        observe_broadcast(event, delivered=True)
        logger.debug("realtime.broadcast", extra={"event_type": event, "room": room})
        return True

    async def broadcast_to_organization(self, organization_id: object, event: str, payload: dict[str, Any]) -> bool:
        return await self._emit(organization_room(organization_id), event, payload)

    async def broadcast_to_call(self, call_id: object, event: str, payload: dict[str, Any]) -> bool:
        return await self._emit(call_room(call_id), event, payload)

    async def broadcast_call_status(
        self,
        call_id: object,
        organization_id: object,
        status: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        payload = {
            "callId": str(call_id),
            "status": status,
            "metadata": metadata,
            "timestamp": _now_iso(),
        }
        await self.broadcast_to_call(call_id, CALL_STATUS_EVENT, payload)
        await self.broadcast_to_organization(organization_id, CALL_STATUS_EVENT, payload)

    async def broadcast_transcript_update(
        self,
        call_id: object,
        organization_id: object,
        segment: dict[str, Any],
    ) -> None:
        payload = {"callId": str(call_id), "transcript": segment, "timestamp": _now_iso()}
        await self.broadcast_to_call(call_id, TRANSCRIPT_UPDATE_EVENT, payload)
        await self.broadcast_to_organization(organization_id, TRANSCRIPT_UPDATE_EVENT, payload)

    def stats(self) -> dict[str, Any]:
        if self._server is None:
            return {"initialized": False, "connected_clients": 0, "rooms": 0}
        rooms = getattr(getattr(self._server, "manager", None), "rooms", {}) or {}
        namespace_rooms = rooms.get("/", {})
        connected = len(namespace_rooms.get(None, {}))
        named_rooms = sum(1 for name in namespace_rooms if name is not None)
        return {"initialized": True, "connected_clients": connected, "rooms": named_rooms}
