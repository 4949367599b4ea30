"""
ISPCore - Reconciliador (barrido en segundo plano)
Para cada MikroTik activo lista los objetos remotos y los compara con
la base de datos:
  - Huérfano: objeto administrado (comentario ISP-AUTO) cuyo .id no está
    en ninguna fila. Se elimina si RECONCILE_DELETE_ORPHANS está activo y
    el huérfano ya se vio en el barrido anterior (un create en curso
    todavía no ha hecho commit).
  - Fantasma: fila local cuyo handle ya no existe en el equipo. Solo se
    registra (warning + sync_error); borrarla es decisión del operador.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

from ispcore.cancellation import CancelToken
from ispcore.errors import DeviceError, OperationCancelled, ProvisioningError
from ispcore.models.mikrotik import Mikrotik, DeviceStatus
from ispcore.models.profile import ProfileType
from ispcore.repositories.handle import Database
from ispcore.services.field_mapping import (
    HOTSPOT_PROFILE, HOTSPOT_USER, PPP_PROFILE, PPP_SECRET, SIMPLE_QUEUE,
    Namespace, is_managed, parse_managed_comment,
)
from ispcore.services.routeros.factory import SessionFactory
from ispcore.services.routeros.session import RouterOSSession

logger = logging.getLogger("reconciler")


@dataclass
class NamespaceReport:
    namespace: str
    orphans: List[str] = field(default_factory=list)
    ghosts: List[Tuple[str, int]] = field(default_factory=list)     # (handle, id local)
    deleted: List[str] = field(default_factory=list)


@dataclass
class DeviceReport:
    device_id: int
    tenant_id: int
    namespaces: List[NamespaceReport] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def orphans(self) -> List[str]:
        return [h for ns in self.namespaces for h in ns.orphans]

    @property
    def ghosts(self) -> List[Tuple[str, int]]:
        return [g for ns in self.namespaces for g in ns.ghosts]

    @property
    def deleted(self) -> List[str]:
        return [h for ns in self.namespaces for h in ns.deleted]


@dataclass(frozen=True)
class _Target:
    entity: str                  # "profile" | "service"
    namespace: Namespace
    profile_type: ProfileType


TARGETS = [
    _Target("profile", PPP_PROFILE, ProfileType.PPPOE),
    _Target("profile", HOTSPOT_PROFILE, ProfileType.HOTSPOT),
    _Target("service", PPP_SECRET, ProfileType.PPPOE),
    _Target("service", HOTSPOT_USER, ProfileType.HOTSPOT),
    _Target("service", SIMPLE_QUEUE, ProfileType.STATIC_IP),
]


class Reconciler:
    """
    Uso:
        reconciler = Reconciler(db, factory, delete_orphans=True)
        reports = await reconciler.sweep(cancel)
    """

    def __init__(self, db: Database, factory: SessionFactory, delete_orphans: bool = True):
        self.db = db
        self.factory = factory
        self.delete_orphans = delete_orphans
        # Huérfanos vistos en el barrido anterior: (device_id, namespace, handle)
        self._suspects: Set[Tuple[int, str, str]] = set()

    def _repo(self, target: _Target):
        return self.db.profiles if target.entity == "profile" else self.db.services

    async def sweep(self, cancel: Optional[CancelToken] = None) -> List[DeviceReport]:
        devices = await self.db.mikrotiks.list_all_active(cancel)
        logger.info(f"Reconciliación iniciada: {len(devices)} MikroTik(s) activos")
        reports = []
        for device in devices:
            reports.append(await self.reconcile_device(device, cancel))
        return reports

    async def reconcile_device(self, device: Mikrotik, cancel: Optional[CancelToken] = None) -> DeviceReport:
        report = DeviceReport(device_id=device.id, tenant_id=device.tenant_id)
        try:
            session = await self.factory.open(device, cancel)
        except ProvisioningError as e:
            e.annotate("reconciler", device_id=device.id)
            if isinstance(e, OperationCancelled):
                raise
            logger.error(f"Reconciliación de {device.name}#{device.id} omitida: {e}")
            await self.db.mikrotiks.update_status(device.id, DeviceStatus.ERROR)
            report.error = str(e)
            return report

        seen: Set[Tuple[int, str, str]] = set()
        async with session:
            try:
                for target in TARGETS:
                    report.namespaces.append(
                        await self._reconcile_namespace(session, device, target, seen, cancel)
                    )
            except ProvisioningError as e:
                e.annotate("reconciler", device_id=device.id)
                logger.error(f"Reconciliación de {device.name}#{device.id} interrumpida: {e}")
                report.error = str(e)
                if isinstance(e, OperationCancelled):
                    raise

        # Solo sobreviven los sospechosos que se volvieron a ver
        self._suspects = {s for s in self._suspects if s[0] != device.id} | seen
        if report.error is None:
            await self.db.mikrotiks.update_status(device.id, DeviceStatus.ONLINE, cancel)
        return report

    async def _reconcile_namespace(self, session: RouterOSSession, device: Mikrotik, target: _Target,
                                   seen: Set[Tuple[int, str, str]], cancel: Optional[CancelToken]) -> NamespaceReport:
        ns = target.namespace
        result = NamespaceReport(namespace=ns.path)
        known = await self._repo(target).handles(device.id, target.profile_type, cancel)

        reply = await session.run(ns.command("print"), {".proplist": ".id,name,comment"}, cancel)
        remote = {row[".id"]: row for row in reply.re if row.get(".id")}

        # Huérfanos: solo objetos con nuestro comentario y de la misma entidad
        if ns.supports_comment:
            for handle, row in remote.items():
                if handle in known or not is_managed(row):
                    continue
                parsed = parse_managed_comment(row.get("comment", ""))
                if parsed is not None and parsed[0] != target.entity:
                    continue
                result.orphans.append(handle)
                logger.warning(
                    f"Huérfano en {device.name}#{device.id}: {ns.path} {handle} ({row.get('name', '')})",
                    extra={
                        "reconcile": "orphan",
                        "device_id": device.id,
                        "namespace": ns.path,
                        "remote_handle": handle,
                        "local_id": parsed[1] if parsed else None,
                    },
                )
                key = (device.id, ns.path, handle)
                if self.delete_orphans and key in self._suspects:
                    await self._delete_orphan(session, ns, handle, cancel)
                    result.deleted.append(handle)
                else:
                    seen.add(key)

        # Fantasmas: filas locales cuyo handle ya no existe
        for handle, local_id in known.items():
            if handle in remote:
                continue
            result.ghosts.append((handle, local_id))
            logger.warning(
                f"Fantasma en {device.name}#{device.id}: {target.entity} {local_id} apunta a "
                f"{ns.path} {handle} que ya no existe",
                extra={
                    "reconcile": "ghost",
                    "device_id": device.id,
                    "namespace": ns.path,
                    "remote_handle": handle,
                    "local_id": local_id,
                },
            )
            await self._repo(target).set_sync_error(local_id, f"El objeto {handle} ya no existe en {ns.path}", cancel)

        return result

    async def _delete_orphan(self, session: RouterOSSession, ns: Namespace, handle: str,
                             cancel: Optional[CancelToken]) -> None:
        try:
            await session.run(ns.command("remove"), {".id": handle}, cancel)
        except DeviceError as e:
            if not e.is_no_such_item:
                raise
        logger.info(f"Huérfano eliminado: {ns.path} {handle} en {session.name}")
