from __future__ import annotations

from dataclasses import dataclass

import socketio

from nexuscrm.clients import PlatformClients
from nexuscrm.clients.auth import AuthClient
from nexuscrm.core.config import Settings
from nexuscrm.core.database import Database
from nexuscrm.crm.outbox import OutboxWorker, search_handlers
from nexuscrm.crm.service import CallService, CampaignService, ContactService
from nexuscrm.realtime.broadcaster import Broadcaster
from nexuscrm.realtime.server import create_socket_server
from nexuscrm.voice.call_manager import CallManager
from nexuscrm.voice.vapi import VapiClient
from nexuscrm.voice.webhooks import WebhookHandler


@dataclass(slots=True)
class ServiceContainer:
    """Everything the app wires together at startup, built once per process."""

    settings: Settings
    db: Database
    clients: PlatformClients
    vapi: VapiClient
    broadcaster: Broadcaster
    call_manager: CallManager
    webhook_handler: WebhookHandler
    outbox_worker: OutboxWorker
    contact_service: ContactService
    campaign_service: CampaignService
    call_service: CallService
    sio: socketio.AsyncServer

    @property
    def auth_client(self) -> AuthClient:
        return self.clients.auth

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        db: Database | None = None,
        clients: PlatformClients | None = None,
        vapi: VapiClient | None = None,
    ) -> ServiceContainer:
        db = db or Database.from_settings(settings)
        clients = clients or PlatformClients.from_settings(settings)
        vapi = vapi or VapiClient(
            settings.vapi_base_url,
            api_key=settings.vapi_api_key,
            phone_number_id=settings.vapi_phone_number_id,
        )
        broadcaster = Broadcaster()
        call_manager = CallManager(
            db,
            vapi,
            clients.reasoning,
            broadcaster,
        )
        outbox_worker = OutboxWorker(db, search_handlers(clients.search), settings)
        sio = create_socket_server(clients.auth, call_manager, broadcaster, settings.cors_origin_list)
        return cls(
            settings=settings,
            db=db,
            clients=clients,
            vapi=vapi,
            broadcaster=broadcaster,
            call_manager=call_manager,
            webhook_handler=WebhookHandler(call_manager, broadcaster),
            outbox_worker=outbox_worker,
            contact_service=ContactService(db, clients.search, settings, on_outbox_write=outbox_worker.notify),
            campaign_service=CampaignService(db, clients.orchestration),
            call_service=CallService(clients.orchestration, call_manager, settings),
            sio=sio,
        )

    async def aclose(self) -> None:
        await self.clients.aclose()
        await self.vapi.aclose()
        await self.db.dispose()
