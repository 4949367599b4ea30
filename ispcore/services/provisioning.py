"""
ISPCore - Coordinador de aprovisionamiento
Mantiene en sincronía la base de datos y el MikroTik para crear,
actualizar y eliminar perfiles y servicios de clientes.

Patrón: la llamada al equipo va DENTRO de la transacción de BD.
  - CREATE: fila local sin handle → add en el equipo → guardar handle → commit.
    Si el add falla, el rollback elimina la fila local.
  - UPDATE: requiere handle; set en el equipo con los campos enviados.
  - DELETE: remove en el equipo ANTES de borrar la fila; "no such item" = éxito.
Si el commit falla después de un add exitoso queda un huérfano en el
equipo: se registra como warning y lo limpia el reconciliador.

No hay reintentos internos: un reintento aquí podría duplicar objetos.
"""
import logging
from typing import Optional

from ispcore.cancellation import CancelToken
from ispcore.errors import (
    ConflictError,
    DeviceError,
    DeviceProtocolError,
    ErrorKind,
    InvalidInputError,
    NotProvisionedError,
    ProvisioningError,
)
from ispcore.models.mikrotik import Mikrotik
from ispcore.models.profile import Profile, ProfileType
from ispcore.models.customer import ServiceStatus
from ispcore.repositories.customer import ServiceRecord
from ispcore.repositories.handle import Database, TxHandle
from ispcore.repositories.result import require
from ispcore.schemas.customer import ServiceCreate, ServiceUpdate
from ispcore.schemas.profile import ProfileCreate, ProfileUpdate
from ispcore.services.field_mapping import (
    Namespace,
    profile_add_args,
    profile_namespace,
    profile_set_args,
    service_add_args,
    service_namespace,
    service_set_args,
)
from ispcore.services.kv import EventPublisher
from ispcore.services.routeros.resolver import ActiveDeviceResolver
from ispcore.services.routeros.session import Reply, RouterOSSession

logger = logging.getLogger("provisioning")

# Errores que dejan constancia en sync_error de la fila (si sobrevive)
_SYNC_ERROR_KINDS = {
    ErrorKind.TRANSPORT,
    ErrorKind.DEVICE_ERROR,
    ErrorKind.DEVICE_PROTOCOL,
    ErrorKind.CLOSED,
}


class _ScopedSession:
    """
    Sesión que se abre dentro de la transacción (solo si hace falta) y
    se cierra después del commit o rollback, en cualquier salida.
    """

    def __init__(self, resolver: ActiveDeviceResolver, device: Optional[Mikrotik],
                 cancel: Optional[CancelToken]):
        self._resolver = resolver
        self._device = device
        self._cancel = cancel
        self.session: Optional[RouterOSSession] = None

    async def get(self) -> RouterOSSession:
        if self.session is None:
            self.session = await self._resolver.session_for(self._device, self._cancel)
        return self.session

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self.session is not None:
            await self.session.close()


class ProvisioningCoordinator:
    def __init__(self, db: Database, resolver: ActiveDeviceResolver,
                 publisher: Optional[EventPublisher] = None):
        self.db = db
        self.resolver = resolver
        self.publisher = publisher

    # ================================================================
    # HELPERS
    # ================================================================

    @staticmethod
    def _extract_handle(reply: Reply, command: str) -> str:
        handle = reply.created_handle()
        if not handle:
            raise DeviceProtocolError(
                f"{command}: el !done no trae 'ret' ni 'after'"
            ).annotate("coordinator", command=command, done=reply.done)
        return handle

    @staticmethod
    async def _remove(session: RouterOSSession, ns: Namespace, handle: str,
                      cancel: Optional[CancelToken]) -> None:
        try:
            await session.run(ns.command("remove"), {".id": handle}, cancel)
        except DeviceError as e:
            if not e.is_no_such_item:
                raise
            logger.info(f"{ns.path} {handle} ya no existía en {session.name}: se da por eliminado")

    @staticmethod
    def _warn_orphan(device: Mikrotik, ns: Namespace, handle: str, entity: str) -> None:
        logger.warning(
            f"Huérfano en {device.name}#{device.id}: {ns.path} {handle} ({entity}) "
            f"quedó en el equipo sin fila local",
            extra={
                "reconcile": "orphan",
                "device_id": device.id,
                "namespace": ns.path,
                "remote_handle": handle,
                "entity": entity,
            },
        )

    async def _record_sync_error(self, repo, row_id: int, error: ProvisioningError) -> None:
        if error.kind in _SYNC_ERROR_KINDS:
            await repo.set_sync_error(row_id, str(error))

    async def _notify(self, event_type: str, **data) -> None:
        if self.publisher is not None:
            await self.publisher.notify(event_type, **data)

    # ================================================================
    # PERFILES
    # ================================================================

    async def create_profile(self, tenant_id: int, data: ProfileCreate,
                             cancel: Optional[CancelToken] = None) -> Profile:
        if data.profile_type == ProfileType.STATIC_IP and data.static_ip is None:
            raise InvalidInputError("Un perfil de IP fija requiere los datos static_ip").annotate(
                "coordinator", operation="create_profile", tenant_id=tenant_id
            )
        device = await self.resolver.active_device(tenant_id, cancel)
        ns = profile_namespace(data.profile_type)
        created = {}

        async with _ScopedSession(self.resolver, device, cancel) as scoped:
            async def tx(db: TxHandle) -> Profile:
                fields = data.model_dump(exclude={"pppoe", "hotspot", "static_ip"})
                profile = await db.profiles.insert(tenant_id, device.id, fields, cancel)
                profile = await db.profiles.insert_side(profile, data.side_fields(), cancel)
                if ns is None:
                    return profile

                session = await scoped.get()
                command = ns.command("add")
                reply = await session.run(command, profile_add_args(profile), cancel)
                created["handle"] = self._extract_handle(reply, command)
                return (await db.profiles.set_remote_handle(profile.id, created["handle"], cancel)).value

            try:
                profile = await self.db.do_in_transaction(tx, cancel)
            except Exception as e:
                if "handle" in created:
                    self._warn_orphan(device, ns, created["handle"], "profile")
                if isinstance(e, ProvisioningError):
                    e.annotate("coordinator", operation="create_profile", tenant_id=tenant_id,
                               device_id=device.id, remote_handle=created.get("handle"))
                raise

        logger.info(f"Perfil creado: {profile.name} → {device.name} ({profile.remote_handle or 'local'})")
        await self._notify("profile_created", tenant_id=tenant_id, profile_id=profile.id,
                           remote_handle=profile.remote_handle)
        return profile

    async def update_profile(self, tenant_id: int, profile_id: int, data: ProfileUpdate,
                             cancel: Optional[CancelToken] = None) -> Profile:
        current = require(await self.db.profiles.get(tenant_id, profile_id, cancel), "profile",
                          profile_id=profile_id)
        ns = profile_namespace(current.profile_type)
        if ns is not None and not current.is_provisioned:
            raise NotProvisionedError(
                f"El perfil {current.name} no tiene objeto en el MikroTik"
            ).annotate("coordinator", operation="update_profile", profile_id=profile_id)

        changes, side_changes = data.split_changes(current.profile_type)
        touched = set(changes) | set(side_changes)
        previous_name = current.name
        handle = current.remote_handle
        device = None
        if ns is not None:
            device = require(await self.db.mikrotiks.get(tenant_id, current.mikrotik_id, cancel), "mikrotik",
                             mikrotik_id=current.mikrotik_id)

        async with _ScopedSession(self.resolver, device, cancel) as scoped:
            async def tx(db: TxHandle) -> Profile:
                profile = require(
                    await db.profiles.update(tenant_id, profile_id, changes, side_changes, cancel),
                    "profile", profile_id=profile_id,
                )
                if ns is None:
                    return profile
                args = profile_set_args(profile, touched, previous_name)
                if args:
                    session = await scoped.get()
                    await session.run(ns.command("set"), {".id": handle, **args}, cancel)
                return profile

            try:
                profile = await self.db.do_in_transaction(tx, cancel)
            except ProvisioningError as e:
                e.annotate("coordinator", operation="update_profile", profile_id=profile_id, remote_handle=handle)
                await self._record_sync_error(self.db.profiles, profile_id, e)
                raise

        logger.info(f"Perfil actualizado: {profile.name} ({handle or 'local'})")
        await self._notify("profile_updated", tenant_id=tenant_id, profile_id=profile_id, remote_handle=handle)
        return profile

    async def delete_profile(self, tenant_id: int, profile_id: int,
                             cancel: Optional[CancelToken] = None) -> None:
        current = require(await self.db.profiles.get(tenant_id, profile_id, cancel), "profile",
                          profile_id=profile_id)
        ns = profile_namespace(current.profile_type)
        handle = current.remote_handle if ns is not None else ""
        device = None
        if handle:
            device = require(await self.db.mikrotiks.get(tenant_id, current.mikrotik_id, cancel), "mikrotik",
                             mikrotik_id=current.mikrotik_id)

        async with _ScopedSession(self.resolver, device, cancel) as scoped:
            async def tx(db: TxHandle) -> None:
                # Antes de tocar el MikroTik: el RESTRICT de la base llegaría tarde
                in_use = await db.services.count_by_profile(profile_id, cancel)
                if in_use:
                    raise ConflictError(
                        f"El perfil {current.name} tiene {in_use} servicio(s) asignado(s)"
                    ).annotate("coordinator", services=in_use)
                if handle:
                    await self._remove(await scoped.get(), ns, handle, cancel)
                await db.profiles.delete(profile_id, cancel)

            try:
                await self.db.do_in_transaction(tx, cancel)
            except ProvisioningError as e:
                e.annotate("coordinator", operation="delete_profile", profile_id=profile_id, remote_handle=handle)
                await self._record_sync_error(self.db.profiles, profile_id, e)
                raise

        logger.info(f"Perfil eliminado: {current.name} ({handle or 'local'})")
        await self._notify("profile_deleted", tenant_id=tenant_id, profile_id=profile_id, remote_handle=handle)

    # ================================================================
    # SERVICIOS DE CLIENTES
    # ================================================================

    async def create_service(self, tenant_id: int, data: ServiceCreate,
                             cancel: Optional[CancelToken] = None) -> ServiceRecord:
        customer = require(await self.db.customers.get(tenant_id, data.customer_id, cancel), "customer",
                           customer_id=data.customer_id)
        profile = require(await self.db.profiles.get(tenant_id, data.profile_id, cancel), "profile",
                          profile_id=data.profile_id)
        device = await self.resolver.active_device(tenant_id, cancel)

        if profile.mikrotik_id != device.id:
            raise InvalidInputError(
                f"El perfil {profile.name} pertenece a otro MikroTik"
            ).annotate("coordinator", operation="create_service", profile_id=profile.id, device_id=device.id)
        if profile.profile_type != ProfileType.STATIC_IP and not profile.is_provisioned:
            raise NotProvisionedError(
                f"El perfil {profile.name} aún no existe en el MikroTik"
            ).annotate("coordinator", operation="create_service", profile_id=profile.id)
        if profile.profile_type == ProfileType.STATIC_IP and not data.ip_address:
            raise InvalidInputError("Un servicio de IP fija requiere ip_address").annotate(
                "coordinator", operation="create_service", profile_id=profile.id
            )

        ns = service_namespace(profile.profile_type)
        created = {}

        async with _ScopedSession(self.resolver, device, cancel) as scoped:
            async def tx(db: TxHandle) -> ServiceRecord:
                service = await db.services.insert(
                    tenant_id, {**data.model_dump(), "mikrotik_id": device.id}, cancel
                )
                session = await scoped.get()
                command = ns.command("add")
                reply = await session.run(command, service_add_args(service, customer, profile), cancel)
                created["handle"] = self._extract_handle(reply, command)
                return (await db.services.set_remote_handle(service.id, created["handle"], cancel)).value

            try:
                service = await self.db.do_in_transaction(tx, cancel)
            except Exception as e:
                if "handle" in created:
                    self._warn_orphan(device, ns, created["handle"], "service")
                if isinstance(e, ProvisioningError):
                    e.annotate("coordinator", operation="create_service", tenant_id=tenant_id,
                               customer_id=customer.id, remote_handle=created.get("handle"))
                raise

        logger.info(f"Servicio creado: {customer.username} → {device.name} {ns.path} ({service.remote_handle})")
        await self._notify("service_created", tenant_id=tenant_id, service_id=service.id,
                           customer_id=customer.id, remote_handle=service.remote_handle)
        return service

    async def update_service(self, tenant_id: int, service_id: int, data: ServiceUpdate,
                             cancel: Optional[CancelToken] = None) -> ServiceRecord:
        current = require(await self.db.services.get(tenant_id, service_id, cancel), "customer_service",
                          service_id=service_id)
        if not current.is_provisioned:
            raise NotProvisionedError(
                f"El servicio {service_id} no tiene objeto en el MikroTik"
            ).annotate("coordinator", operation="update_service", service_id=service_id)

        changes = data.changes()
        profile = require(
            await self.db.profiles.get(tenant_id, changes.get("profile_id", current.profile_id), cancel),
            "profile", profile_id=changes.get("profile_id", current.profile_id),
        )
        if "profile_id" in changes and changes["profile_id"] != current.profile_id:
            old_profile = require(await self.db.profiles.get(tenant_id, current.profile_id, cancel), "profile",
                                  profile_id=current.profile_id)
            if profile.profile_type != old_profile.profile_type or profile.mikrotik_id != current.mikrotik_id:
                raise InvalidInputError(
                    "El nuevo perfil debe ser del mismo tipo y del mismo MikroTik"
                ).annotate("coordinator", operation="update_service", service_id=service_id)
            if profile.profile_type != ProfileType.STATIC_IP and not profile.is_provisioned:
                raise NotProvisionedError(
                    f"El perfil {profile.name} aún no existe en el MikroTik"
                ).annotate("coordinator", operation="update_service", profile_id=profile.id)

        device = require(await self.db.mikrotiks.get(tenant_id, current.mikrotik_id, cancel), "mikrotik",
                         mikrotik_id=current.mikrotik_id)
        ns = service_namespace(profile.profile_type)
        handle = current.remote_handle

        async with _ScopedSession(self.resolver, device, cancel) as scoped:
            async def tx(db: TxHandle) -> ServiceRecord:
                service = require(await db.services.update(service_id, changes, cancel), "customer_service",
                                  service_id=service_id)
                args = service_set_args(service, profile, set(changes))
                if args:
                    session = await scoped.get()
                    await session.run(ns.command("set"), {".id": handle, **args}, cancel)
                return service

            try:
                service = await self.db.do_in_transaction(tx, cancel)
            except ProvisioningError as e:
                e.annotate("coordinator", operation="update_service", service_id=service_id, remote_handle=handle)
                await self._record_sync_error(self.db.services, service_id, e)
                raise

        logger.info(f"Servicio actualizado: {service_id} ({handle})")
        await self._notify("service_updated", tenant_id=tenant_id, service_id=service_id,
                           status=service.status.value, remote_handle=handle)
        return service

    async def suspend_service(self, tenant_id: int, service_id: int,
                              cancel: Optional[CancelToken] = None) -> ServiceRecord:
        """Suspende: disabled=yes en el equipo."""
        return await self.update_service(tenant_id, service_id, ServiceUpdate(status=ServiceStatus.SUSPENDED), cancel)

    async def activate_service(self, tenant_id: int, service_id: int,
                               cancel: Optional[CancelToken] = None) -> ServiceRecord:
        """Reactiva: disabled=no en el equipo."""
        return await self.update_service(tenant_id, service_id, ServiceUpdate(status=ServiceStatus.ACTIVE), cancel)

    async def delete_service(self, tenant_id: int, service_id: int,
                             cancel: Optional[CancelToken] = None) -> None:
        """Elimina el objeto del equipo (cualquiera que sea el estado) y luego la fila."""
        current = require(await self.db.services.get(tenant_id, service_id, cancel), "customer_service",
                          service_id=service_id)
        handle = current.remote_handle
        ns = None
        device = None
        if handle:
            profile = require(await self.db.profiles.get(tenant_id, current.profile_id, cancel), "profile",
                              profile_id=current.profile_id)
            ns = service_namespace(profile.profile_type)
            device = require(await self.db.mikrotiks.get(tenant_id, current.mikrotik_id, cancel), "mikrotik",
                             mikrotik_id=current.mikrotik_id)

        async with _ScopedSession(self.resolver, device, cancel) as scoped:
            async def tx(db: TxHandle) -> None:
                if handle:
                    await self._remove(await scoped.get(), ns, handle, cancel)
                await db.services.delete(service_id, cancel)

            try:
                await self.db.do_in_transaction(tx, cancel)
            except ProvisioningError as e:
                e.annotate("coordinator", operation="delete_service", service_id=service_id, remote_handle=handle)
                await self._record_sync_error(self.db.services, service_id, e)
                raise

        logger.info(f"Servicio eliminado: {service_id} ({handle or 'sin handle'})")
        await self._notify("service_deleted", tenant_id=tenant_id, service_id=service_id, remote_handle=handle)
