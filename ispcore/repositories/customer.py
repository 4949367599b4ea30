"""
ISPCore - Repositorios de Customer y CustomerService
Las lecturas enumeran las columnas explícitamente, tanto en el SELECT
como al armar el registro: nunca dependen del orden de la tabla.
"""
from dataclasses import dataclass, fields as dc_fields
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select, update, delete, func

from ispcore.cancellation import CancelToken
from ispcore.models.customer import Customer, CustomerService, ServiceStatus
from ispcore.models.profile import Profile, ProfileType
from ispcore.repositories.base import BaseRepository
from ispcore.repositories.result import Lookup, Missing, Found


@dataclass(frozen=True)
class CustomerRecord:
    id: int
    tenant_id: int
    name: str
    username: str
    password: str
    phone: Optional[str]
    email: Optional[str]


@dataclass(frozen=True)
class ServiceRecord:
    id: int
    tenant_id: int
    customer_id: int
    profile_id: int
    mikrotik_id: int
    price: Optional[Decimal]
    tax_rate: Optional[Decimal]
    start_date: Optional[date]
    end_date: Optional[date]
    status: ServiceStatus
    ip_address: Optional[str]
    mac_address: Optional[str]
    remote_handle: str
    sync_error: Optional[str]
    last_sync: Optional[datetime]
    is_online: Optional[bool]
    last_caller_id: Optional[str]
    last_address: Optional[str]
    last_interface: Optional[str]

    @property
    def is_provisioned(self) -> bool:
        return bool(self.remote_handle)


CUSTOMER_COLUMNS = tuple(getattr(Customer, f.name) for f in dc_fields(CustomerRecord))
SERVICE_COLUMNS = tuple(getattr(CustomerService, f.name) for f in dc_fields(ServiceRecord))


def _customer_from_row(row) -> CustomerRecord:
    m = row._mapping
    return CustomerRecord(**{f.name: m[f.name] for f in dc_fields(CustomerRecord)})


def _service_from_row(row) -> ServiceRecord:
    m = row._mapping
    return ServiceRecord(**{f.name: m[f.name] for f in dc_fields(ServiceRecord)})


class CustomerRepository(BaseRepository):
    entity = "customer"

    async def create(self, tenant_id: int, fields: dict,
                     cancel: Optional[CancelToken] = None) -> CustomerRecord:
        async def fn(session):
            customer = Customer(tenant_id=tenant_id, **fields)
            session.add(customer)
            await session.flush()
            result = await session.execute(select(*CUSTOMER_COLUMNS).where(Customer.id == customer.id))
            return _customer_from_row(result.one())
        return await self._run(fn, cancel)

    async def get(self, tenant_id: int, customer_id: int, cancel: Optional[CancelToken] = None) -> Lookup:
        async def fn(session):
            result = await session.execute(
                select(*CUSTOMER_COLUMNS).where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
            )
            row = result.one_or_none()
            return Found(_customer_from_row(row)) if row is not None else Missing
        return await self._run(fn, cancel)

    async def list(self, tenant_id: int, cancel: Optional[CancelToken] = None) -> List[CustomerRecord]:
        async def fn(session):
            result = await session.execute(
                select(*CUSTOMER_COLUMNS).where(Customer.tenant_id == tenant_id).order_by(Customer.id)
            )
            return [_customer_from_row(r) for r in result.all()]
        return await self._run(fn, cancel)

    async def update(self, tenant_id: int, customer_id: int, changes: dict,
                     cancel: Optional[CancelToken] = None) -> Lookup:
        async def fn(session):
            result = await session.execute(
                update(Customer)
                .where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
                .values(**changes)
            )
            if result.rowcount == 0:
                return Missing
            row = (await session.execute(select(*CUSTOMER_COLUMNS).where(Customer.id == customer_id))).one()
            return Found(_customer_from_row(row))
        return await self._run(fn, cancel)


class CustomerServiceRepository(BaseRepository):
    entity = "customer_service"

    async def _read(self, session, service_id: int) -> Lookup:
        result = await session.execute(select(*SERVICE_COLUMNS).where(CustomerService.id == service_id))
        row = result.one_or_none()
        return Found(_service_from_row(row)) if row is not None else Missing

    async def insert(self, tenant_id: int, fields: dict,
                     cancel: Optional[CancelToken] = None) -> ServiceRecord:
        """Inserta el servicio sin aprovisionar (remote_handle vacío)."""
        async def fn(session):
            service = CustomerService(tenant_id=tenant_id, remote_handle="", **fields)
            session.add(service)
            await session.flush()
            return (await self._read(session, service.id)).value
        return await self._run(fn, cancel)

    async def get(self, tenant_id: int, service_id: int, cancel: Optional[CancelToken] = None) -> Lookup:
        async def fn(session):
            lookup = await self._read(session, service_id)
            if lookup and lookup.value.tenant_id == tenant_id:
                return lookup
            return Missing
        return await self._run(fn, cancel)

    async def get_by_username(self, tenant_id: int, username: str,
                              cancel: Optional[CancelToken] = None) -> Lookup:
        """Servicio vigente (no terminado) del cliente con ese usuario PPPoE/hotspot."""
        async def fn(session):
            result = await session.execute(
                select(*SERVICE_COLUMNS)
                .join(Customer, Customer.id == CustomerService.customer_id)
                .where(
                    Customer.tenant_id == tenant_id,
                    Customer.username == username,
                    CustomerService.status != ServiceStatus.TERMINATED,
                )
                .order_by(CustomerService.id.desc())
                .limit(1)
            )
            row = result.one_or_none()
            return Found(_service_from_row(row)) if row is not None else Missing
        return await self._run(fn, cancel)

    async def list(self, tenant_id: int, customer_id: Optional[int] = None,
                   cancel: Optional[CancelToken] = None) -> List[ServiceRecord]:
        async def fn(session):
            q = select(*SERVICE_COLUMNS).where(CustomerService.tenant_id == tenant_id)
            if customer_id is not None:
                q = q.where(CustomerService.customer_id == customer_id)
            result = await session.execute(q.order_by(CustomerService.id))
            return [_service_from_row(r) for r in result.all()]
        return await self._run(fn, cancel)

    async def update(self, service_id: int, changes: dict,
                     cancel: Optional[CancelToken] = None) -> Lookup:
        async def fn(session):
            if changes:
                await session.execute(
                    update(CustomerService).where(CustomerService.id == service_id).values(**changes)
                )
            return await self._read(session, service_id)
        return await self._run(fn, cancel)

    async def set_remote_handle(self, service_id: int, handle: str,
                                cancel: Optional[CancelToken] = None) -> Lookup:
        return await self.update(
            service_id,
            {"remote_handle": handle, "sync_error": None, "last_sync": datetime.now(timezone.utc)},
            cancel,
        )

    async def set_sync_error(self, service_id: int, message: Optional[str],
                             cancel: Optional[CancelToken] = None) -> Lookup:
        return await self.update(service_id, {"sync_error": message}, cancel)

    async def set_session_state(self, service_id: int, online: bool, caller_id: Optional[str] = None,
                                address: Optional[str] = None, interface: Optional[str] = None,
                                cancel: Optional[CancelToken] = None) -> Lookup:
        changes = {"is_online": online}
        if online:
            changes.update(last_caller_id=caller_id, last_address=address, last_interface=interface)
        return await self.update(service_id, changes, cancel)

    async def delete(self, service_id: int, cancel: Optional[CancelToken] = None) -> None:
        async def fn(session):
            await session.execute(delete(CustomerService).where(CustomerService.id == service_id))
        await self._run(fn, cancel)

    async def count_by_profile(self, profile_id: int, cancel: Optional[CancelToken] = None) -> int:
        """Servicios que todavía usan el perfil."""
        async def fn(session):
            result = await session.execute(
                select(func.count(CustomerService.id)).where(CustomerService.profile_id == profile_id)
            )
            return result.scalar_one()
        return await self._run(fn, cancel)

    async def handles(self, mikrotik_id: int, profile_type: ProfileType,
                      cancel: Optional[CancelToken] = None) -> Dict[str, int]:
        """Handles remotos conocidos: {remote_handle: service_id}."""
        async def fn(session):
            result = await session.execute(
                select(CustomerService.remote_handle, CustomerService.id)
                .join(Profile, Profile.id == CustomerService.profile_id)
                .where(
                    CustomerService.mikrotik_id == mikrotik_id,
                    Profile.profile_type == profile_type,
                    CustomerService.remote_handle != "",
                )
            )
            return {handle: sid for handle, sid in result.all()}
        return await self._run(fn, cancel)
