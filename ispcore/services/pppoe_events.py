"""
ISPCore - Eventos de sesión PPPoE
Los scripts on-up / on-down del perfil PPP llaman al webhook con el
usuario que se conectó o desconectó. Aquí se marca el servicio como
en línea / fuera de línea y se publica en "mikrotik:events":

    {"type": "pppoe_event", "status": "connected", "username": ..., ...}
"""
import logging
from typing import Optional

from ispcore.cancellation import CancelToken
from ispcore.repositories.customer import ServiceRecord
from ispcore.repositories.handle import Database
from ispcore.repositories.result import require
from ispcore.services.kv import EventPublisher

logger = logging.getLogger("pppoe_events")


class PPPoEEventHandler:
    def __init__(self, db: Database, publisher: Optional[EventPublisher] = None):
        self.db = db
        self.publisher = publisher

    async def _apply(self, tenant_id: int, username: str, online: bool, caller_id: Optional[str],
                     address: Optional[str], interface: Optional[str],
                     cancel: Optional[CancelToken]) -> ServiceRecord:
        service = require(
            await self.db.services.get_by_username(tenant_id, username, cancel),
            "customer_service", tenant_id=tenant_id, username=username,
        )
        updated = require(
            await self.db.services.set_session_state(
                service.id, online, caller_id=caller_id, address=address, interface=interface, cancel=cancel
            ),
            "customer_service", service_id=service.id,
        )
        status = "connected" if online else "disconnected"
        logger.info(f"PPPoE {status}: {username} (servicio {service.id}) {address or ''}")

        if self.publisher is not None:
            await self.publisher.notify(
                "pppoe_event",
                cancel=cancel,
                status=status,
                tenant_id=tenant_id,
                service_id=service.id,
                customer_id=service.customer_id,
                username=username,
                caller_id=caller_id,
                address=address,
                interface=interface,
            )
        return updated

    async def pppoe_up(self, tenant_id: int, username: str, caller_id: Optional[str] = None,
                       address: Optional[str] = None, interface: Optional[str] = None,
                       cancel: Optional[CancelToken] = None) -> ServiceRecord:
        return await self._apply(tenant_id, username, True, caller_id, address, interface, cancel)

    async def pppoe_down(self, tenant_id: int, username: str, caller_id: Optional[str] = None,
                         interface: Optional[str] = None,
                         cancel: Optional[CancelToken] = None) -> ServiceRecord:
        return await self._apply(tenant_id, username, False, caller_id, None, interface, cancel)
