from __future__ import annotations

from typing import Any

from nexuscrm.realtime.broadcaster import CALL_STATUS_EVENT, Broadcaster, call_room, organization_room


class RecordingServer:
    def __init__(self) -> None:
        self.emitted: list[tuple[str, Any, str | None]] = []

    async def emit(self, event: str, data: Any = None, *, room: str | None = None, **kwargs: Any) -> None:
        self.emitted.append((event, data, room))


async def test_broadcast_before_attach_is_dropped() -> None:
    broadcaster = Broadcaster()

    delivered = await broadcaster.broadcast_to_organization("org-1", CALL_STATUS_EVENT, {"status": "ringing"})
    await broadcaster.broadcast_call_status("call-1", "org-1", "ringing")

    assert delivered is False
    assert broadcaster.initialized is False
    assert broadcaster.stats() == {"initialized": False, "connected_clients": 0, "rooms": 0}


async def test_call_status_goes_to_call_and_organization_rooms() -> None:
    server = RecordingServer()
    broadcaster = Broadcaster()
    broadcaster.attach(server)

    await broadcaster.broadcast_call_status("call-1", "org-1", "completed", {"durationSeconds": 30})

    assert [room for _, _, room in server.emitted] == [call_room("call-1"), organization_room("org-1")]
    payload = server.emitted[0][1]
    assert payload["callId"] == "call-1"
    assert payload["status"] == "completed"
    assert payload["metadata"] == {"durationSeconds": 30}
    assert payload["timestamp"]


def test_second_attach_is_ignored() -> None:
    first, second = RecordingServer(), RecordingServer()
    broadcaster = Broadcaster()

    broadcaster.attach(first)
    broadcaster.attach(second)

    assert broadcaster._server is first


class FailingServer:
    def __init__(self) -> None:
        self.attempts = 0

    async def emit(self, event: str, data: Any = None, *, room: str | None = None, **kwargs: Any) -> None:
        self.attempts += 1
        raise ConnectionError("socket manager unavailable")


async def test_failed_emit_is_reported_not_raised() -> None:
    server = FailingServer()
    broadcaster = Broadcaster()
    broadcaster.attach(server)

    delivered = await broadcaster.broadcast_to_call("call-1", CALL_STATUS_EVENT, {"status": "ringing"})
    await broadcaster.broadcast_call_status("call-1", "org-1", "ringing")

    assert delivered is False
    assert server.attempts == 3
