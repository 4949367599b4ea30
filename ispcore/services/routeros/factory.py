"""
ISPCore - Fábrica de sesiones RouterOS
Crea y conecta una RouterOSSession para un MikroTik registrado.
El conector (cómo se abre el socket) es intercambiable: en producción
es librouteros, en tests un equipo simulado.
"""
import logging
from functools import partial
from typing import Callable, Optional

from ispcore.cancellation import CancelToken
from ispcore.config import Settings
from ispcore.services.routeros.session import RouterOSSession, DEFAULT_QUEUE_SIZE
from ispcore.services.routeros.transport import DeviceCredentials, LibrouterosTransport, Transport

logger = logging.getLogger("routeros_factory")

Connector = Callable[[DeviceCredentials], Transport]


class SessionFactory:
    def __init__(
        self,
        connector: Optional[Connector] = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        default_timeout: float = 10,
        drain_timeout: float = 1.0,
        encoding: str = "utf-8",
    ):
        self._connector = connector or LibrouterosTransport.open
        self.queue_size = queue_size
        self.default_timeout = default_timeout
        self.drain_timeout = drain_timeout
        self.encoding = encoding

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionFactory":
        connector = partial(LibrouterosTransport.open, login_method=settings.MIKROTIK_LOGIN_METHOD)
        return cls(
            connector=connector,
            queue_size=settings.MIKROTIK_LISTEN_QUEUE_SIZE,
            default_timeout=settings.MIKROTIK_CONNECT_TIMEOUT,
            drain_timeout=settings.MIKROTIK_CLOSE_DRAIN_SECONDS,
            encoding=settings.MIKROTIK_ENCODING,
        )

    def create(self, device) -> RouterOSSession:
        """Sesión en estado NEW (sin conectar)."""
        credentials = DeviceCredentials.from_device(device, self.default_timeout, self.encoding)
        return RouterOSSession(
            partial(self._connector, credentials),
            name=f"{device.name}#{device.id}",
            queue_size=self.queue_size,
            drain_timeout=self.drain_timeout,
        )

    async def open(self, device, cancel: Optional[CancelToken] = None) -> RouterOSSession:
        """Sesión conectada y en READY. Quien la pide la cierra."""
        session = self.create(device)
        logger.info(f"Abriendo sesión con MikroTik {device.name} ({device.host}:{device.port})")
        await session.connect(cancel)
        return session
