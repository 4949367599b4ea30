"""
ISPCore - Repositorio de Perfiles MikroTik
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select, update, delete

from ispcore.cancellation import CancelToken
from ispcore.models.profile import (
    Profile, ProfileType, ProfilePPPoE, ProfileHotspot, ProfileStaticIP
)
from ispcore.repositories.base import BaseRepository, apply_changes
from ispcore.repositories.result import Found, Lookup, Missing, found_or_none

SIDE_TABLES = {
    ProfileType.PPPOE: ("pppoe", ProfilePPPoE),
    ProfileType.HOTSPOT: ("hotspot", ProfileHotspot),
    ProfileType.STATIC_IP: ("static_ip", ProfileStaticIP),
}


class ProfileRepository(BaseRepository):
    entity = "profile"

    async def insert(self, tenant_id: int, mikrotik_id: int, fields: dict,
                     cancel: Optional[CancelToken] = None) -> Profile:
        """Inserta la fila sin aprovisionar (remote_handle vacío)."""
        async def fn(session):
            profile = Profile(tenant_id=tenant_id, mikrotik_id=mikrotik_id, remote_handle="", **fields)
            session.add(profile)
            await session.flush()
            return profile
        return await self._run(fn, cancel)

    async def insert_side(self, profile: Profile, fields: dict,
                          cancel: Optional[CancelToken] = None) -> Profile:
        """Inserta la tabla por protocolo que corresponde al tipo del perfil."""
        _, model = SIDE_TABLES[profile.profile_type]

        async def fn(session):
            side = model(profile_id=profile.id, **fields)
            session.add(side)
            await session.flush()
            # Carga las tres relaciones laterales (evita lazy load fuera del greenlet)
            await session.refresh(profile, attribute_names=[a for a, _ in SIDE_TABLES.values()])
            return profile
        return await self._run(fn, cancel)

    async def get(self, tenant_id: int, profile_id: int, cancel: Optional[CancelToken] = None) -> Lookup:
        async def fn(session):
            result = await session.execute(
                select(Profile).where(Profile.id == profile_id, Profile.tenant_id == tenant_id)
            )
            return found_or_none(result.scalar_one_or_none())
        return await self._run(fn, cancel)

    async def list(self, tenant_id: int, mikrotik_id: Optional[int] = None,
                   cancel: Optional[CancelToken] = None) -> List[Profile]:
        async def fn(session):
            q = select(Profile).where(Profile.tenant_id == tenant_id)
            if mikrotik_id is not None:
                q = q.where(Profile.mikrotik_id == mikrotik_id)
            result = await session.execute(q.order_by(Profile.id))
            return list(result.scalars().all())
        return await self._run(fn, cancel)

    async def update(self, tenant_id: int, profile_id: int, changes: dict, side_changes: dict,
                     cancel: Optional[CancelToken] = None) -> Lookup:
        async def fn(session):
            result = await session.execute(
                select(Profile).where(Profile.id == profile_id, Profile.tenant_id == tenant_id)
            )
            profile = result.scalar_one_or_none()
            if profile is None:
                return Missing
            apply_changes(profile, changes)
            if side_changes:
                attr, model = SIDE_TABLES[profile.profile_type]
                side = getattr(profile, attr)
                if side is None:
                    side = model(profile_id=profile.id)
                    session.add(side)
                    setattr(profile, attr, side)
                apply_changes(side, side_changes)
            await session.flush()
            return Found(profile)
        return await self._run(fn, cancel)

    async def set_remote_handle(self, profile_id: int, handle: str,
                                cancel: Optional[CancelToken] = None) -> Lookup:
        async def fn(session):
            profile = await session.get(Profile, profile_id)
            if profile is None:
                return Missing
            profile.remote_handle = handle
            profile.sync_error = None
            profile.last_sync = datetime.now(timezone.utc)
            await session.flush()
            return Found(profile)
        return await self._run(fn, cancel)

    async def set_sync_error(self, profile_id: int, message: Optional[str],
                             cancel: Optional[CancelToken] = None) -> None:
        async def fn(session):
            await session.execute(update(Profile).where(Profile.id == profile_id).values(sync_error=message))
        await self._run(fn, cancel)

    async def delete(self, profile_id: int, cancel: Optional[CancelToken] = None) -> None:
        async def fn(session):
            for _, model in SIDE_TABLES.values():
                await session.execute(delete(model).where(model.profile_id == profile_id))
            await session.execute(delete(Profile).where(Profile.id == profile_id))
        await self._run(fn, cancel)

    async def handles(self, mikrotik_id: int, profile_type: ProfileType,
                      cancel: Optional[CancelToken] = None) -> Dict[str, int]:
        """Handles remotos conocidos: {remote_handle: profile_id}."""
        async def fn(session):
            result = await session.execute(
                select(Profile.remote_handle, Profile.id).where(
                    Profile.mikrotik_id == mikrotik_id,
                    Profile.profile_type == profile_type,
                    Profile.remote_handle != "",
                )
            )
            return {handle: pid for handle, pid in result.all()}
        return await self._run(fn, cancel)
