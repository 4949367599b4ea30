"""
ISPCore - Repositorios de Tenant y User
"""
from typing import Optional

from sqlalchemy import select

from ispcore.cancellation import CancelToken
from ispcore.models.tenant import Tenant
from ispcore.models.user import User
from ispcore.repositories.base import BaseRepository
from ispcore.repositories.result import Lookup, found_or_none


class TenantRepository(BaseRepository):
    entity = "tenant"

    async def create(self, cancel: Optional[CancelToken] = None, **fields) -> Tenant:
        async def fn(session):
            tenant = Tenant(**fields)
            session.add(tenant)
            await session.flush()
            return tenant
        return await self._run(fn, cancel)

    async def get(self, tenant_id: int, cancel: Optional[CancelToken] = None) -> Lookup:
        async def fn(session):
            return found_or_none(await session.get(Tenant, tenant_id))
        return await self._run(fn, cancel)

    async def get_by_slug(self, slug: str, cancel: Optional[CancelToken] = None) -> Lookup:
        async def fn(session):
            result = await session.execute(
                select(Tenant).where(Tenant.slug == slug, Tenant.is_active == True)  # noqa: E712
            )
            return found_or_none(result.scalar_one_or_none())
        return await self._run(fn, cancel)


class UserRepository(BaseRepository):
    entity = "user"

    async def create(self, tenant_id: int, cancel: Optional[CancelToken] = None, **fields) -> User:
        async def fn(session):
            user = User(tenant_id=tenant_id, **fields)
            session.add(user)
            await session.flush()
            return user
        return await self._run(fn, cancel)

    async def get(self, tenant_id: int, user_id: int, cancel: Optional[CancelToken] = None) -> Lookup:
        async def fn(session):
            result = await session.execute(
                select(User).where(User.id == user_id, User.tenant_id == tenant_id)
            )
            return found_or_none(result.scalar_one_or_none())
        return await self._run(fn, cancel)

    async def creator_of(self, user: User, cancel: Optional[CancelToken] = None) -> Lookup:
        """Resuelve created_by_id bajo demanda (no hay relationship)."""
        if user.created_by_id is None:
            return found_or_none(None)
        return await self.get(user.tenant_id, user.created_by_id, cancel)
