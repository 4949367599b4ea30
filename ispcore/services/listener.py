"""
ISPCore - Listener de cambios RouterOS
Se suscribe a comandos `.../listen` de un MikroTik y clasifica cada
frame en un evento tipado:

    log (/log/...)                     → CREATE (sin estado previo)
    .dead = "true"                     → DELETE (se purga el estado)
    sin estado previo para el .id      → CREATE
    disabled false → true              → DISABLE
    disabled true → false              → ENABLE
    cualquier otro                     → UPDATE

El mapa de estado (último snapshot por .id) es exclusivo de esta tarea;
los consumidores reciben copias en cada evento. Si la cola de salida
está llena el listener espera: nunca descarta eventos tipados.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from ispcore.cancellation import CancelToken, guarded
from ispcore.errors import OperationCancelled, ProvisioningError
from ispcore.models.mikrotik import Mikrotik
from ispcore.repositories.handle import Database
from ispcore.services.kv import EventPublisher
from ispcore.services.routeros.factory import SessionFactory
from ispcore.services.routeros.session import ListenStream, RouterOSSession

logger = logging.getLogger("change_listener")


class EventKind(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ENABLE = "ENABLE"
    DISABLE = "DISABLE"


@dataclass(frozen=True)
class ListenEvent:
    command: str
    id: str
    kind: EventKind
    attributes: Dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "id": self.id,
            "kind": self.kind.value,
            "attributes": dict(self.attributes),
            "timestamp": self.timestamp.isoformat(),
        }


def is_log_stream(command: str) -> bool:
    path = command[: -len("/listen")] if command.endswith("/listen") else command
    return path == "/log" or path.startswith("/log/")


def print_command(command: str) -> str:
    """/ppp/secret/listen → /ppp/secret/print"""
    base = command[: -len("/listen")] if command.endswith("/listen") else command
    return f"{base}/print"


class ChangeListener:
    """
    Uso:
        queue = asyncio.Queue(maxsize=1000)
        listener = ChangeListener(session, queue)
        await listener.run(["/ppp/secret/listen"], cancel)
    """

    def __init__(self, session: RouterOSSession, out: asyncio.Queue, device_id: Optional[int] = None):
        self.session = session
        self.out = out
        self.device_id = device_id
        self._state: Dict[str, Dict[str, Dict[str, str]]] = {}

    # ----------------------------------------------------------------
    # Estado y clasificación
    # ----------------------------------------------------------------

    def seed(self, command: str, rows: Iterable[Dict[str, str]]) -> None:
        """Carga snapshots iniciales sin emitir eventos."""
        state = self._state.setdefault(command, {})
        for row in rows:
            if row.get(".id"):
                state[row[".id"]] = dict(row)

    def snapshot(self, command: str, obj_id: str) -> Optional[Dict[str, str]]:
        prior = self._state.get(command, {}).get(obj_id)
        return dict(prior) if prior is not None else None

    def classify(self, command: str, attrs: Dict[str, str]) -> Optional[ListenEvent]:
        """Actualiza el estado y regresa el evento; None si el frame no trae .id."""
        if is_log_stream(command):
            return ListenEvent(command, attrs.get(".id", ""), EventKind.CREATE, dict(attrs))

        obj_id = attrs.get(".id")
        if not obj_id:
            return None

        state = self._state.setdefault(command, {})
        if attrs.get(".dead") == "true":
            state.pop(obj_id, None)
            return ListenEvent(command, obj_id, EventKind.DELETE, dict(attrs))

        prior = state.get(obj_id)
        if prior is None:
            state[obj_id] = dict(attrs)
            return ListenEvent(command, obj_id, EventKind.CREATE, dict(attrs))

        # Los frames pueden traer solo lo que cambió
        current = {**prior, **attrs}
        state[obj_id] = current
        was, now = prior.get("disabled"), current.get("disabled")
        if was == "false" and now == "true":
            kind = EventKind.DISABLE
        elif was == "true" and now == "false":
            kind = EventKind.ENABLE
        else:
            kind = EventKind.UPDATE
        return ListenEvent(command, obj_id, kind, dict(current))

    # ----------------------------------------------------------------
    # Ejecución
    # ----------------------------------------------------------------

    async def prime(self, command: str, cancel: Optional[CancelToken] = None) -> None:
        """Lee el estado actual con print para no reportar todo como CREATE."""
        reply = await self.session.run(print_command(command), cancel=cancel)
        self.seed(command, reply.re)
        logger.debug(f"{command}: {len(reply.re)} objetos precargados")

    async def _pump(self, stream: ListenStream, cancel: Optional[CancelToken]) -> None:
        reported_lag = 0
        async for frame in stream:
            if stream.lag > reported_lag:
                logger.warning(
                    f"{stream.command}: {stream.lag - reported_lag} frames descartados por atraso",
                    extra={"device_id": self.device_id, "lag": stream.lag},
                )
                reported_lag = stream.lag
            event = self.classify(stream.command, frame)
            if event is None:
                continue
            await guarded(self.out.put(event), cancel)
        logger.info(f"Listener de {stream.command} terminado ({self.session.name})")

    async def run(self, commands: List[str], cancel: Optional[CancelToken] = None, prime: bool = True) -> None:
        """Corre hasta que la sesión se cierre o se cancele el token."""
        streams: List[ListenStream] = []
        try:
            for command in commands:
                if prime and not is_log_stream(command):
                    await self.prime(command, cancel)
                streams.append(await self.session.listen(command, cancel=cancel))
            await asyncio.gather(*(self._pump(s, cancel) for s in streams))
        finally:
            for stream in streams:
                await stream.aclose()


# ================================================================
# LISTENERS POR MIKROTIK
# ================================================================

async def forward_events(queue: asyncio.Queue, publisher: EventPublisher, device: Mikrotik) -> None:
    """Reenvía los eventos de la cola al canal de Redis."""
    while True:
        event: ListenEvent = await queue.get()
        try:
            await publisher.notify(
                "listen_event", tenant_id=device.tenant_id, device_id=device.id, **event.to_dict()
            )
        except Exception as e:
            # Un evento perdido no detiene el reenvío de los siguientes
            logger.error(f"No se pudo publicar evento de {device.name}#{device.id}: {e}")
        finally:
            queue.task_done()


async def watch_device(factory: SessionFactory, device: Mikrotik, commands: List[str],
                       publisher: EventPublisher, cancel: Optional[CancelToken] = None,
                       queue_size: int = 1000) -> None:
    """Abre una sesión con el MikroTik y publica sus cambios hasta cancelar."""
    queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
    session = await factory.open(device, cancel)
    forwarder = asyncio.create_task(forward_events(queue, publisher, device))
    try:
        async with session:
            await ChangeListener(session, queue, device_id=device.id).run(commands, cancel)
    finally:
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)


async def _watch_logged(factory: SessionFactory, device: Mikrotik, commands: List[str],
                        publisher: EventPublisher, cancel: Optional[CancelToken]) -> None:
    try:
        await watch_device(factory, device, commands, publisher, cancel)
    except OperationCancelled:
        logger.info(f"Listener de {device.name}#{device.id} detenido")
    except ProvisioningError as e:
        logger.error(f"Listener de {device.name}#{device.id} terminó con error: {e}")
        raise


async def start_device_listeners(db: Database, factory: SessionFactory, publisher: EventPublisher,
                                 commands: List[str], cancel: CancelToken) -> List[asyncio.Task]:
    """Una tarea por MikroTik activo. Se detienen al cancelar el token."""
    devices = await db.mikrotiks.list_all_active(cancel)
    logger.info(f"Iniciando listeners en {len(devices)} MikroTik(s): {', '.join(commands)}")
    return [
        asyncio.create_task(_watch_logged(factory, device, commands, publisher, cancel))
        for device in devices
    ]
