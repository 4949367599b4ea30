"""
ISPCore - Resolución del MikroTik activo
Para un tenant elige el único MikroTik con is_active = true y entrega
una sesión conectada. Nunca modifica is_active.
"""
import logging
from typing import Optional

from ispcore.cancellation import CancelToken
from ispcore.errors import NoActiveDeviceError, ProvisioningError
from ispcore.models.mikrotik import Mikrotik
from ispcore.repositories.handle import Database
from ispcore.services.routeros.factory import SessionFactory
from ispcore.services.routeros.session import RouterOSSession

logger = logging.getLogger("device_resolver")


class ActiveDeviceResolver:
    def __init__(self, db: Database, factory: SessionFactory):
        self.db = db
        self.factory = factory

    async def active_device(self, tenant_id: int, cancel: Optional[CancelToken] = None) -> Mikrotik:
        devices = await self.db.mikrotiks.list_active(tenant_id, cancel)
        if not devices:
            raise NoActiveDeviceError(
                f"El tenant {tenant_id} no tiene MikroTik activo"
            ).annotate("resolver", tenant_id=tenant_id)
        if len(devices) > 1:
            # Invariante roto: se usa el actualizado más recientemente, sin tocar is_active
            logger.warning(
                f"Tenant {tenant_id} tiene {len(devices)} MikroTiks activos; "
                f"usando {devices[0].name}#{devices[0].id}",
                extra={"tenant_id": tenant_id, "device_ids": [d.id for d in devices]},
            )
        return devices[0]

    async def session_for(self, device: Mikrotik, cancel: Optional[CancelToken] = None) -> RouterOSSession:
        """Sesión conectada a un MikroTik concreto. No toca la base de datos."""
        try:
            return await self.factory.open(device, cancel)
        except ProvisioningError as e:
            raise e.annotate("resolver", tenant_id=device.tenant_id, device_id=device.id)

    async def resolve(self, tenant_id: int, cancel: Optional[CancelToken] = None) -> RouterOSSession:
        device = await self.active_device(tenant_id, cancel)
        return await self.session_for(device, cancel)
