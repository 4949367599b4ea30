"""
ISPCore - Repositorio de MikroTiks (Devices)
set_active es el único que modifica is_active: apaga los demás equipos
del tenant en la misma transacción.
"""
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update

from ispcore.cancellation import CancelToken
from ispcore.models.mikrotik import Mikrotik, DeviceStatus
from ispcore.repositories.base import BaseRepository, apply_changes
from ispcore.repositories.result import Found, Lookup, Missing, found_or_none


class MikrotikRepository(BaseRepository):
    entity = "mikrotik"

    async def create(self, tenant_id: int, cancel: Optional[CancelToken] = None, **fields) -> Mikrotik:
        # is_active solo cambia vía set_active
        fields.pop("is_active", None)

        async def fn(session):
            device = Mikrotik(tenant_id=tenant_id, is_active=False, **fields)
            session.add(device)
            await session.flush()
            return device
        return await self._run(fn, cancel)

    async def get(self, tenant_id: int, mikrotik_id: int, cancel: Optional[CancelToken] = None) -> Lookup:
        async def fn(session):
            result = await session.execute(
                select(Mikrotik).where(Mikrotik.id == mikrotik_id, Mikrotik.tenant_id == tenant_id)
            )
            return found_or_none(result.scalar_one_or_none())
        return await self._run(fn, cancel)

    async def list(self, tenant_id: int, cancel: Optional[CancelToken] = None) -> List[Mikrotik]:
        async def fn(session):
            result = await session.execute(
                select(Mikrotik).where(Mikrotik.tenant_id == tenant_id).order_by(Mikrotik.id)
            )
            return list(result.scalars().all())
        return await self._run(fn, cancel)

    async def list_active(self, tenant_id: int, cancel: Optional[CancelToken] = None) -> List[Mikrotik]:
        """Equipos activos del tenant, el actualizado más recientemente primero."""
        async def fn(session):
            result = await session.execute(
                select(Mikrotik)
                .where(Mikrotik.tenant_id == tenant_id, Mikrotik.is_active == True)  # noqa: E712
                .order_by(Mikrotik.updated_at.desc(), Mikrotik.id.desc())
            )
            return list(result.scalars().all())
        return await self._run(fn, cancel)

    async def list_all_active(self, cancel: Optional[CancelToken] = None) -> List[Mikrotik]:
        """Equipos activos de todos los tenants (reconciliador y listeners)."""
        async def fn(session):
            result = await session.execute(
                select(Mikrotik)
                .where(Mikrotik.is_active == True)  # noqa: E712
                .order_by(Mikrotik.tenant_id, Mikrotik.updated_at.desc(), Mikrotik.id.desc())
            )
            return list(result.scalars().all())
        return await self._run(fn, cancel)

    async def set_active(self, tenant_id: int, mikrotik_id: int, cancel: Optional[CancelToken] = None) -> Lookup:
        async def fn(session):
            device = await session.get(Mikrotik, mikrotik_id)
            if device is None or device.tenant_id != tenant_id:
                return Missing
            await session.execute(
                update(Mikrotik)
                .where(Mikrotik.tenant_id == tenant_id, Mikrotik.id != mikrotik_id)
                .values(is_active=False)
            )
            device.is_active = True
            await session.flush()
            return Found(device)
        return await self._run(fn, cancel)

    async def update(self, tenant_id: int, mikrotik_id: int, changes: dict,
                     cancel: Optional[CancelToken] = None) -> Lookup:
        changes = {k: v for k, v in changes.items() if k != "is_active"}

        async def fn(session):
            device = await session.get(Mikrotik, mikrotik_id)
            if device is None or device.tenant_id != tenant_id:
                return Missing
            apply_changes(device, changes)
            await session.flush()
            return Found(device)
        return await self._run(fn, cancel)

    async def update_status(self, mikrotik_id: int, status: DeviceStatus,
                            cancel: Optional[CancelToken] = None) -> None:
        values = {"status": status}
        if status == DeviceStatus.ONLINE:
            values["last_sync"] = datetime.now(timezone.utc)

        async def fn(session):
            await session.execute(update(Mikrotik).where(Mikrotik.id == mikrotik_id).values(**values))
        await self._run(fn, cancel)
