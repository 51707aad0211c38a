from nexuscrm.voice.call_manager import CallManager, CallStatusUpdate, MakeCallRequest, MakeCallResult, VoiceTool
from nexuscrm.voice.vapi import VapiClient
from nexuscrm.voice.webhooks import WebhookHandler

__all__ = [
    "CallManager",
    "CallStatusUpdate",
    "MakeCallRequest",
    "MakeCallResult",
    "VapiClient",
    "VoiceTool",
    "WebhookHandler",
]
