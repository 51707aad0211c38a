from nexuscrm.realtime.broadcaster import Broadcaster, call_room, organization_room

__all__ = ["Broadcaster", "call_room", "organization_room"]
