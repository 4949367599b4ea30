"""
ISPCore - Router: Webhooks PPPoE
Los scripts on-up / on-down del MikroTik avisan aquí cuando un cliente
se conecta o desconecta. El tenant se identifica igual que en el resto
de la API (subdominio o X-Tenant-Slug).
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ispcore.dependencies import get_pppoe_handler, get_tenant_id
from ispcore.services.pppoe_events import PPPoEEventHandler

logger = logging.getLogger("webhooks")

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


class PPPoEEvent(BaseModel):
    username: str
    caller_id: Optional[str] = None
    address: Optional[str] = None
    interface: Optional[str] = None


@router.post("/pppoe/up")
async def pppoe_up(
    event: PPPoEEvent,
    tenant_id: int = Depends(get_tenant_id),
    handler: PPPoEEventHandler = Depends(get_pppoe_handler),
):
    service = await handler.pppoe_up(tenant_id, event.username, event.caller_id, event.address, event.interface)
    return {"status": "ok", "service_id": service.id, "is_online": service.is_online}


@router.post("/pppoe/down")
async def pppoe_down(
    event: PPPoEEvent,
    tenant_id: int = Depends(get_tenant_id),
    handler: PPPoEEventHandler = Depends(get_pppoe_handler),
):
    service = await handler.pppoe_down(tenant_id, event.username, event.caller_id, event.interface)
    return {"status": "ok", "service_id": service.id, "is_online": service.is_online}
