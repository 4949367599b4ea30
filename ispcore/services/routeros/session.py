"""
ISPCore - Sesión RouterOS
Envuelve una conexión API a un MikroTik. Un lector en segundo plano
recibe todas las sentencias y las reparte por `.tag` entre los comandos
en curso, así un `run` y varios `listen` comparten el mismo socket.

Estados: NEW → CONNECTING → READY → CLOSING → CLOSED, más FAILED
(sumidero) ante un error fatal de transporte. Solo READY acepta
run/listen; cualquier otro estado falla con `closed` sin tocar el socket.

Una sesión NO es segura para `run` concurrentes desde distintas tareas:
serializar o abrir otra sesión.
"""
import asyncio
import enum
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Tuple, Union

from librouteros.exceptions import LibRouterosError

from ispcore.cancellation import CancelToken, guarded
from ispcore.errors import (
    ConnectError,
    DeviceError,
    InvalidInputError,
    OperationCancelled,
    ProvisioningError,
    SessionClosedError,
    TransportError,
)
from ispcore.services.routeros.transport import Transport

logger = logging.getLogger("routeros_session")

DEFAULT_QUEUE_SIZE = 100


class SessionState(str, enum.Enum):
    NEW = "new"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class Reply:
    """Resultado de un comando: filas !re y los campos del !done."""
    re: List[Dict[str, str]] = field(default_factory=list)
    done: Dict[str, str] = field(default_factory=dict)

    def created_handle(self) -> Optional[str]:
        """`.id` del objeto creado por un add: `ret` (moderno) o `after` (legacy)."""
        return self.done.get("ret") or self.done.get("after") or None


# ================================================================
# CODIFICACIÓN DE SENTENCIAS
# ================================================================

def build_sentence(command: str, args: Optional[Dict[str, str]], tag: str) -> List[str]:
    words = [command]
    for key, value in (args or {}).items():
        words.append(f"={key}={value}")
    words.append(f".tag={tag}")
    return words


def parse_words(words) -> Tuple[Dict[str, str], Optional[str]]:
    """'=k=v' → atributos; '.tag=N' → tag. El valor puede contener '='."""
    attrs: Dict[str, str] = {}
    tag = None
    for word in words:
        if word.startswith(".tag="):
            tag = word[5:]
        elif word.startswith("="):
            key, _, value = word[1:].partition("=")
            attrs[key] = value
    return attrs, tag


# ================================================================
# COMANDOS EN CURSO
# ================================================================

class _RunCall:
    def __init__(self, future: asyncio.Future):
        self.future = future
        self.reply = Reply()
        self.trap: Optional[Dict[str, str]] = None

    def feed(self, reply_word: str, attrs: Dict[str, str]) -> bool:
        if reply_word == "!re":
            self.reply.re.append(attrs)
        elif reply_word == "!trap":
            if self.trap is None:
                self.trap = attrs
        elif reply_word == "!done":
            self.reply.done = attrs
            if self.future.done():
                return True
            if self.trap is not None:
                self.future.set_exception(
                    DeviceError(self.trap.get("message", ""), category=self.trap.get("category"))
                )
            else:
                self.future.set_result(self.reply)
            return True
        return False

    def fail(self, error: ProvisioningError) -> None:
        if not self.future.done():
            self.future.set_exception(error)

    def end(self) -> None:
        self.fail(SessionClosedError("Sesión cerrada antes de recibir !done"))


class _ListenCall:
    def __init__(self, command: str, maxlen: int):
        self.command = command
        self.frames: Deque[Dict[str, str]] = deque(maxlen=maxlen)
        self.event = asyncio.Event()
        self.lag = 0
        self.finished = False
        self.cancelling = False
        self.error: Optional[ProvisioningError] = None

    def feed(self, reply_word: str, attrs: Dict[str, str]) -> bool:
        if reply_word == "!re":
            if len(self.frames) == self.frames.maxlen:
                # El consumidor va atrasado: se descarta el más viejo
                self.lag += 1
                logger.debug(f"listen {self.command}: frame descartado (lag={self.lag})")
            self.frames.append(attrs)
            self.event.set()
        elif reply_word == "!trap":
            message = attrs.get("message", "")
            if not (self.cancelling and "interrupted" in message.lower()):
                self.error = DeviceError(message, category=attrs.get("category"))
        elif reply_word == "!done":
            self.finished = True
            self.event.set()
            return True
        return False

    def fail(self, error: ProvisioningError) -> None:
        if not self.finished:
            self.error = error
            self.finished = True
            self.event.set()

    def end(self) -> None:
        self.finished = True
        self.event.set()


_Call = Union[_RunCall, _ListenCall]


# ================================================================
# STREAM DE LISTEN
# ================================================================

class ListenStream:
    """
    Iterador async de frames !re de un comando `.../listen`.
    Termina cuando la sesión se cierra o se llama aclose().
    """

    def __init__(self, session: "RouterOSSession", tag: str, call: _ListenCall,
                 cancel: Optional[CancelToken] = None):
        self._session = session
        self._tag = tag
        self._call = call
        self._cancel = cancel
        self._closed = False

    @property
    def command(self) -> str:
        return self._call.command

    @property
    def lag(self) -> int:
        """Frames descartados porque la cola estaba llena."""
        return self._call.lag

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, str]:
        call = self._call
        while True:
            if call.frames:
                return call.frames.popleft()
            if call.error is not None:
                error, call.error = call.error, None
                call.finished = True
                raise error.annotate("listen", command=call.command)
            if call.finished or self._closed:
                raise StopAsyncIteration
            call.event.clear()
            try:
                await guarded(call.event.wait(), self._cancel)
            except OperationCancelled as e:
                await self.aclose()
                raise e.annotate("listen", command=call.command)

    async def aclose(self) -> None:
        """Cancela la suscripción en el equipo y vacía la cola."""
        if self._closed:
            return
        self._closed = True
        await self._session._stop_listen(self._tag, self._call)
        self._call.frames.clear()


# ================================================================
# SESIÓN
# ================================================================

class RouterOSSession:
    """
    Sesión sobre una conexión API.

    Uso:
        session = RouterOSSession(lambda: LibrouterosTransport.open(creds), name="Router Principal")
        await session.connect(cancel)
        async with session:
            reply = await session.run("/ppp/profile/add", {"name": "10M"}, cancel)
    """

    def __init__(
        self,
        connector: Callable[[], Transport],
        name: str = "mikrotik",
        queue_size: int = DEFAULT_QUEUE_SIZE,
        drain_timeout: float = 1.0,
    ):
        self.name = name
        self.state = SessionState.NEW
        self._connector = connector
        self._queue_size = queue_size
        self._drain_timeout = drain_timeout
        self._transport: Optional[Transport] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[str, _Call] = {}
        self._tags = itertools.count(1)
        self._write_lock = asyncio.Lock()

    def __repr__(self):
        return f"<RouterOSSession {self.name} {self.state.value}>"

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _next_tag(self) -> str:
        return str(next(self._tags))

    def _ensure_ready(self) -> None:
        if self.state != SessionState.READY:
            raise SessionClosedError(
                f"Sesión {self.name} en estado {self.state.value}"
            ).annotate("session", device=self.name)

    # ----------------------------------------------------------------
    # Conexión
    # ----------------------------------------------------------------

    async def connect(self, cancel: Optional[CancelToken] = None) -> "RouterOSSession":
        if self.state != SessionState.NEW:
            raise SessionClosedError(
                f"connect() en estado {self.state.value}"
            ).annotate("session", device=self.name)
        self.state = SessionState.CONNECTING

        pending = asyncio.ensure_future(asyncio.to_thread(self._connector))
        try:
            transport = await guarded(asyncio.shield(pending), cancel)
        except OperationCancelled as e:
            # El thread sigue conectando: cerrar el socket cuando termine
            pending.add_done_callback(_close_late)
            self.state = SessionState.CLOSED
            raise e.annotate("session", device=self.name)
        except ConnectError as e:
            self.state = SessionState.FAILED
            raise e.annotate("session", device=self.name)
        except (LibRouterosError, OSError) as e:
            self.state = SessionState.FAILED
            raise ConnectError(f"No se pudo conectar a {self.name}: {e}").annotate(
                "session", device=self.name
            )

        if self.state != SessionState.CONNECTING:
            # close() llegó mientras conectaba
            await asyncio.to_thread(transport.close)
            raise SessionClosedError(f"Sesión {self.name} cerrada durante la conexión").annotate(
                "session", device=self.name
            )

        self._transport = transport
        self.state = SessionState.READY
        self._reader = asyncio.create_task(self._read_loop(), name=f"routeros-reader-{self.name}")
        logger.debug(f"Sesión {self.name} lista")
        return self

    # ----------------------------------------------------------------
    # Lector
    # ----------------------------------------------------------------

    async def _read_loop(self) -> None:
        transport = self._transport
        while True:
            try:
                words = await asyncio.to_thread(transport.read_sentence)
            except (LibRouterosError, OSError) as e:
                if self.state in (SessionState.CLOSING, SessionState.CLOSED, SessionState.FAILED):
                    logger.debug(f"Lector de {self.name} terminado: {e}")
                else:
                    self._fail(f"Conexión perdida con {self.name}: {e}")
                return
            self._dispatch(words)

    def _dispatch(self, words: List[str]) -> None:
        if not words:
            return
        reply_word = words[0]
        attrs, tag = parse_words(words[1:])
        call = self._pending.get(tag) if tag is not None else None
        if call is None:
            logger.debug(f"{self.name}: {reply_word} sin comando en curso (tag={tag})")
            return
        if call.feed(reply_word, attrs):
            self._pending.pop(tag, None)

    def _fail(self, message: str) -> None:
        """Transición a FAILED: falla todos los comandos en curso y suelta el socket."""
        if self.state in (SessionState.CLOSED, SessionState.FAILED):
            return
        logger.error(f"Sesión {self.name} FAILED: {message}")
        self.state = SessionState.FAILED
        for call in self._pending.values():
            call.fail(TransportError(message).annotate("session", device=self.name))
        self._pending.clear()
        if self._transport is not None:
            self._transport.close()

    async def _write(self, words: List[str]) -> None:
        async with self._write_lock:
            try:
                await asyncio.to_thread(self._transport.write_sentence, words)
            except UnicodeError as e:
                # librouteros codifica la sentencia completa antes de escribir:
                # no salió ningún byte y la sesión sigue usable
                raise InvalidInputError(
                    f"Valor no representable en la codificación de {self.name}: {e}"
                ).annotate("session", device=self.name, command=words[0])
            except (LibRouterosError, OSError) as e:
                message = f"Error escribiendo a {self.name}: {e}"
                self._fail(message)
                raise TransportError(message).annotate("session", device=self.name, command=words[0])

    # ----------------------------------------------------------------
    # run / listen
    # ----------------------------------------------------------------

    async def run(self, command: str, args: Optional[Dict[str, str]] = None,
                  cancel: Optional[CancelToken] = None) -> Reply:
        """
        Ejecuta un comando y espera su !done.
        !trap → DeviceError con el mensaje del equipo; !fatal o socket → TransportError.
        Cancelar durante run cierra la sesión (RouterOS no tiene verbo para abortar).
        """
        self._ensure_ready()
        if cancel is not None:
            cancel.raise_if_cancelled()

        tag = self._next_tag()
        future = asyncio.get_running_loop().create_future()
        self._pending[tag] = _RunCall(future)
        sentence = build_sentence(command, args, tag)
        logger.debug(f"{self.name} <- {command} {args or {}} (tag={tag})")

        async def exchange():
            await self._write(sentence)
            return await future

        try:
            return await guarded(exchange(), cancel)
        except OperationCancelled as e:
            self._pending.pop(tag, None)
            logger.warning(f"{command} cancelado en {self.name}: cerrando sesión")
            await self.close()
            raise e.annotate("session", device=self.name, command=command)
        except ProvisioningError as e:
            if future.done() and not future.cancelled():
                # _fail() pudo marcarlo tras un error de escritura
                future.exception()
            raise e.annotate("session", device=self.name, command=command)
        finally:
            self._pending.pop(tag, None)

    async def listen(self, command: str, args: Optional[Dict[str, str]] = None,
                     cancel: Optional[CancelToken] = None) -> ListenStream:
        """Abre una suscripción larga; cada !re llega como dict en el stream."""
        self._ensure_ready()
        if cancel is not None:
            cancel.raise_if_cancelled()

        tag = self._next_tag()
        call = _ListenCall(command, self._queue_size)
        self._pending[tag] = call
        try:
            await self._write(build_sentence(command, args, tag))
        except ProvisioningError as e:
            self._pending.pop(tag, None)
            raise e.annotate("listen", command=command)
        except BaseException:
            self._pending.pop(tag, None)
            raise
        logger.debug(f"{self.name}: listen {command} (tag={tag})")
        return ListenStream(self, tag, call, cancel)

    async def _stop_listen(self, tag: str, call: _ListenCall) -> None:
        if not call.finished and self.state == SessionState.READY:
            call.cancelling = True
            try:
                await self._write(["/cancel", f"=tag={tag}", f".tag={self._next_tag()}"])
            except TransportError as e:
                logger.debug(f"/cancel de {call.command} no enviado: {e}")
            else:
                try:
                    await asyncio.wait_for(_wait_finished(call), timeout=self._drain_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"{self.name}: {call.command} no confirmó /cancel")
        call.end()
        self._pending.pop(tag, None)

    # ----------------------------------------------------------------
    # Cierre
    # ----------------------------------------------------------------

    async def close(self) -> None:
        """Idempotente: cancela los listen, drena el socket y libera el FD."""
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        if self.state in (SessionState.NEW, SessionState.CONNECTING):
            self.state = SessionState.CLOSED
            return
        if self.state == SessionState.FAILED:
            await self._join_reader()
            return

        self.state = SessionState.CLOSING
        listens = [(tag, call) for tag, call in self._pending.items() if isinstance(call, _ListenCall)]
        if listens:
            try:
                async with self._write_lock:
                    for tag, call in listens:
                        call.cancelling = True
                        await asyncio.to_thread(
                            self._transport.write_sentence, ["/cancel", f"=tag={tag}", f".tag={self._next_tag()}"]
                        )
                await asyncio.wait_for(
                    asyncio.gather(*(_wait_finished(call) for _, call in listens)),
                    timeout=self._drain_timeout,
                )
            except (LibRouterosError, OSError) as e:
                logger.debug(f"{self.name}: no se pudieron cancelar los listen: {e}")
            except asyncio.TimeoutError:
                logger.debug(f"{self.name}: listen sin confirmar al cerrar")

        for call in self._pending.values():
            call.end()
        self._pending.clear()

        await asyncio.to_thread(self._transport.close)
        await self._join_reader()
        self.state = SessionState.CLOSED
        logger.debug(f"Sesión {self.name} cerrada")

    async def _join_reader(self) -> None:
        reader = self._reader
        if reader is None or reader.done() or reader is asyncio.current_task():
            return
        done, _ = await asyncio.wait({reader}, timeout=self._drain_timeout)
        if not done:
            reader.cancel()


async def _wait_finished(call: _ListenCall) -> None:
    while not call.finished:
        call.event.clear()
        await call.event.wait()


def _close_late(future: asyncio.Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()
