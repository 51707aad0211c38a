from __future__ import annotations

import logging
from typing import Any

import socketio
from socketio.exceptions import ConnectionRefusedError as SocketConnectionRefused

from nexuscrm.clients.auth import AuthClient
from nexuscrm.errors import UpstreamServiceError
from nexuscrm.realtime.broadcaster import Broadcaster, call_room, organization_room
from nexuscrm.voice.call_manager import CallManager


logger = logging.getLogger("nexuscrm.realtime")

SOCKET_PATH = "ws"
RELAYED_EVENTS = ("call:status", "campaign:progress")


def create_socket_server(
    auth_client: AuthClient,
    call_manager: CallManager,
    broadcaster: Broadcaster,
    cors_origins: list[str],
) -> socketio.AsyncServer:
    """Build the Socket.IO server, register handlers and attach it to the broadcaster."""
    sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=cors_origins)

    @sio.event
    async def connect(sid: str, environ: dict[str, Any], auth: dict[str, Any] | None = None) -> None:
        token = (auth or {}).get("token")
        if not token:
            raise SocketConnectionRefused("Authentication token required")
        try:
            principal = await auth_client.verify_token(token)
        except UpstreamServiceError as exc:
            logger.error("realtime.auth_failed", extra={"sid": sid, "error": str(exc)})
            raise SocketConnectionRefused("Authentication failed") from exc
        if principal is None:
            raise SocketConnectionRefused("Invalid token")

        organization_id = str(principal.organization_id)
        await sio.save_session(sid, {"user_id": principal.user_id, "organization_id": organization_id})
        await sio.enter_room(sid, organization_room(organization_id))
        logger.info("realtime.connected", extra={"sid": sid, "organization_id": organization_id})

    @sio.event
    async def disconnect(sid: str, *args: Any) -> None:
        logger.info("realtime.disconnected", extra={"sid": sid})

    async def _relay(event: str, sid: str, data: Any) -> None:
        session = await sio.get_session(sid)
        room = organization_room(session["organization_id"])
        await sio.emit(event, data, room=room)
        logger.debug("realtime.relayed", extra={"sid": sid, "event_type": event, "room": room})

    for event_name in RELAYED_EVENTS:

        async def handler(sid: str, data: Any = None, _event: str = event_name) -> None:
            await _relay(_event, sid, data)

        sio.on(event_name, handler)

    @sio.on("call:subscribe")
    async def call_subscribe(sid: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        call_id = (data or {}).get("callId")
        if not call_id:
            return {"subscribed": False, "error": "callId is required"}
        session = await sio.get_session(sid)
        # Only calls of the socket's own organization can be followed.
        call = await call_manager.find_for_organization(session["organization_id"], str(call_id))
        if call is None:
            logger.warning(
                "realtime.subscribe_refused",
                extra={"sid": sid, "call_id": str(call_id), "organization_id": session["organization_id"]},
            )
            return {"subscribed": False, "error": "Call not found"}
        await sio.enter_room(sid, call_room(call.id))
        return {"subscribed": True}

    @sio.on("call:unsubscribe")
    async def call_unsubscribe(sid: str, data: dict[str, Any] | None = None) -> None:
        call_id = (data or {}).get("callId")
        if call_id:
            await sio.leave_room(sid, call_room(call_id))

    broadcaster.attach(sio)
    return sio
