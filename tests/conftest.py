"""
Configuración de pytest
Base de datos SQLite por test, un MikroTik simulado que habla el
protocolo de sentencias y un redis falso en memoria.
"""
import asyncio
import os
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from itertools import count
from typing import Dict, List, Optional, Tuple

import pytest

# Variables de entorno de prueba (antes de importar ispcore)
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["RECONCILER_ENABLED"] = "false"
os.environ["LISTENER_ENABLED"] = "false"

from librouteros.exceptions import ConnectionClosed, FatalError  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from ispcore.database import Base  # noqa: E402
from ispcore.models import *  # noqa: E402,F401,F403
from ispcore.repositories.handle import Database  # noqa: E402
from ispcore.services.kv import EventPublisher, KeyValueStore  # noqa: E402
from ispcore.services.provisioning import ProvisioningCoordinator  # noqa: E402
from ispcore.services.routeros.factory import SessionFactory  # noqa: E402
from ispcore.services.routeros.resolver import ActiveDeviceResolver  # noqa: E402
from ispcore.services.routeros.session import parse_words  # noqa: E402
from ispcore.services.routeros.transport import DeviceCredentials, Transport  # noqa: E402


# ================================================================
# MIKROTIK SIMULADO
# ================================================================

class FakeTransport(Transport):
    """Una conexión al FakeRouter. read_sentence bloquea hasta que haya respuesta."""

    def __init__(self, router: "FakeRouter", credentials: DeviceCredentials):
        self.router = router
        self.credentials = credentials
        self.closed = False
        self._inbox: "queue.Queue[Optional[List[str]]]" = queue.Queue()

    def push(self, words: List[str]) -> None:
        if not self.closed:
            self._inbox.put(list(words))

    def write_sentence(self, words: List[str]) -> None:
        if self.closed:
            raise ConnectionClosed("socket cerrado")
        # Igual que librouteros: se codifica la sentencia completa antes de escribir
        for word in words:
            word.encode(self.credentials.encoding, "strict")
        self.router.handle(self, words)

    def read_sentence(self) -> List[str]:
        item = self._inbox.get()
        if item is None:
            raise ConnectionClosed("socket cerrado")
        if item[0] == "!fatal":
            raise FatalError(item[1] if len(item) > 1 else "fatal")
        return item

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put(None)


class FakeRouter:
    """
    Estado de un MikroTik: objetos por namespace, suscripciones listen
    y respuestas programables (traps, comandos que nunca responden,
    handles siguientes, campo del !done).
    """

    def __init__(self):
        self.objects: Dict[str, Dict[str, Dict[str, str]]] = {}
        self.calls: List[Tuple[str, Dict[str, str]]] = []
        self.traps: Dict[str, str] = {}
        self.hang: set = set()
        self.unreachable: set = set()
        self.next_ids: List[str] = []
        self.done_key: Optional[str] = "ret"
        self.transports: List[FakeTransport] = []
        self._listeners: Dict[Tuple[int, str], Tuple[FakeTransport, str]] = {}
        self._ids = count(1)
        self._lock = threading.RLock()

    # --- conexión -------------------------------------------------

    def connect(self, credentials: DeviceCredentials) -> FakeTransport:
        if credentials.host in self.unreachable:
            raise OSError(f"[Errno 113] No route to host: {credentials.host}")
        transport = FakeTransport(self, credentials)
        with self._lock:
            self.transports.append(transport)
        return transport

    def shutdown(self) -> None:
        for transport in self.transports:
            transport.close()

    @property
    def open_transports(self) -> List[FakeTransport]:
        return [t for t in self.transports if not t.closed]

    # --- helpers de test ------------------------------------------

    def seed(self, path: str, **attrs) -> str:
        with self._lock:
            obj_id = attrs.pop("id", None) or self._new_id()
            self.objects.setdefault(path, {})[obj_id] = {".id": obj_id, **attrs}
            return obj_id

    def get(self, path: str, obj_id: str) -> Optional[Dict[str, str]]:
        return self.objects.get(path, {}).get(obj_id)

    def commands(self, prefix: str = "") -> List[str]:
        return [c for c, _ in self.calls if c.startswith(prefix)]

    def args_of(self, command: str) -> List[Dict[str, str]]:
        return [a for c, a in self.calls if c == command]

    def emit(self, path: str, attrs: Dict[str, str]) -> None:
        """Envía un !re a cada listen suscrito a `path`."""
        with self._lock:
            self._notify(path, attrs)

    def listening(self, path: str) -> int:
        with self._lock:
            return sum(1 for _, p in self._listeners.values() if p == path)

    def _new_id(self) -> str:
        if self.next_ids:
            return self.next_ids.pop(0)
        return f"*{next(self._ids):X}"

    # --- protocolo ------------------------------------------------

    def handle(self, transport: FakeTransport, words: List[str]) -> None:
        command = words[0]
        args, tag = parse_words(words[1:])
        with self._lock:
            self.calls.append((command, dict(args)))

            if command == "/cancel":
                target = args.get("tag")
                entry = self._listeners.pop((id(transport), target), None)
                if entry is not None:
                    transport.push(["!trap", "=category=2", "=message=interrupted", f".tag={target}"])
                    transport.push(["!done", f".tag={target}"])
                transport.push(["!done", f".tag={tag}"])
                return

            if command in self.hang:
                return

            if command in self.traps:
                self._trap(transport, tag, self.traps.pop(command))
                return

            path, _, verb = command.rpartition("/")
            store = self.objects.setdefault(path, {})

            if verb == "listen":
                self._listeners[(id(transport), tag)] = (transport, path)
                return

            if verb == "print":
                wanted = args.get(".proplist")
                for obj in list(store.values()):
                    row = obj
                    if wanted:
                        keys = wanted.split(",")
                        row = {k: v for k, v in obj.items() if k in keys}
                    transport.push(["!re", *(f"={k}={v}" for k, v in row.items()), f".tag={tag}"])
                transport.push(["!done", f".tag={tag}"])
                return

            if verb == "add":
                obj_id = self._new_id()
                store[obj_id] = {".id": obj_id, "disabled": "false", **args}
                done = [f"={self.done_key}={obj_id}"] if self.done_key else []
                transport.push(["!done", *done, f".tag={tag}"])
                self._notify(path, store[obj_id])
                return

            if verb in ("set", "remove"):
                obj_id = args.get(".id", "")
                if obj_id not in store:
                    self._trap(transport, tag, "no such item")
                    return
                if verb == "set":
                    store[obj_id].update({k: v for k, v in args.items() if k != ".id"})
                    self._notify(path, store[obj_id])
                else:
                    del store[obj_id]
                    self._notify(path, {".id": obj_id, ".dead": "true"})
                transport.push(["!done", f".tag={tag}"])
                return

            self._trap(transport, tag, f"no such command prefix {path}")

    def _trap(self, transport: FakeTransport, tag: str, message: str) -> None:
        transport.push(["!trap", f"=message={message}", f".tag={tag}"])
        transport.push(["!done", f".tag={tag}"])

    def _notify(self, path: str, attrs: Dict[str, str]) -> None:
        for (_, ltag), (t, p) in list(self._listeners.items()):
            if p == path:
                t.push(["!re", *(f"={k}={v}" for k, v in attrs.items()), f".tag={ltag}"])


# ================================================================
# REDIS FALSO
# ================================================================

class FakeRedis:
    """Subconjunto de redis.asyncio.Redis usado por KeyValueStore."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.sets: Dict[str, set] = {}
        self.published: List[Tuple[str, str]] = []
        self.closed = False

    async def ping(self):
        return True

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None or self.sets.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def sadd(self, key, *members):
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def srem(self, key, *members):
        bucket = self.sets.get(key, set())
        removed = len(bucket.intersection(members))
        bucket.difference_update(members)
        return removed

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        self.closed = True


# ================================================================
# FIXTURES
# ================================================================

@pytest.fixture
async def engine(tmp_path):
    """Archivo SQLite por test: las transacciones se aíslan de verdad."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")

    @event.listens_for(eng.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        # SQLite ignora ON DELETE RESTRICT/CASCADE sin este pragma
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def db(engine) -> Database:
    return Database(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))


@pytest.fixture
async def router():
    """
    Cada sesión abierta ocupa un thread lector; se usa un pool propio y al
    final se cierran todas las conexiones para liberar esos threads.
    """
    loop = asyncio.get_running_loop()
    executor = ThreadPoolExecutor(max_workers=32, thread_name_prefix="fake-routeros")
    loop.set_default_executor(executor)
    fake = FakeRouter()
    yield fake
    fake.shutdown()
    executor.shutdown(wait=False)


@pytest.fixture
def factory(router) -> SessionFactory:
    return SessionFactory(connector=router.connect, queue_size=100, default_timeout=5, drain_timeout=0.5)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def kv(fake_redis) -> KeyValueStore:
    return KeyValueStore(fake_redis, prefix="test")


@pytest.fixture
def publisher(kv) -> EventPublisher:
    return EventPublisher(kv)


@pytest.fixture
def resolver(db, factory) -> ActiveDeviceResolver:
    return ActiveDeviceResolver(db, factory)


@pytest.fixture
def coordinator(db, resolver, publisher) -> ProvisioningCoordinator:
    return ProvisioningCoordinator(db, resolver, publisher)


@pytest.fixture
async def tenant(db):
    return await db.tenants.create(name="HFiber", slug="hfiber", email="noc@hfiber.mx")


@pytest.fixture
async def device(db, tenant):
    created = await db.mikrotiks.create(
        tenant.id, name="Router Principal", host="10.0.0.1", username="admin", password="secret"
    )
    return (await db.mikrotiks.set_active(tenant.id, created.id)).value
