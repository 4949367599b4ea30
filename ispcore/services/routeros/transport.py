"""
ISPCore - Transporte RouterOS API (8728 / 8729)
Interfaz mínima y bloqueante de lectura/escritura de sentencias.
La sesión la ejecuta en threads vía asyncio.to_thread().

Usa librouteros para el socket, el encoding de palabras y el login.
"""
import logging
import socket
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import List, Optional

from librouteros import connect
from librouteros.api import Api
from librouteros.exceptions import LibRouterosError
from librouteros.login import plain, token

from ispcore.errors import ConnectError

logger = logging.getLogger("routeros_transport")

LOGIN_METHODS = {
    "plain": plain,
    "token": token,     # challenge-response (RouterOS < 6.43)
}


@dataclass
class DeviceCredentials:
    """Credenciales de conexión a un MikroTik."""
    host: str
    port: int = 8728
    username: str = "admin"
    password: str = ""
    timeout: float = 10           # <= 0: bloquea indefinidamente
    use_tls: bool = False
    keepalive: bool = False
    encoding: str = "utf-8"       # codificación de las palabras API

    @classmethod
    def from_device(cls, device, default_timeout: float = 10,
                    encoding: str = "utf-8") -> "DeviceCredentials":
        timeout = device.timeout if device.timeout is not None else default_timeout
        return cls(
            host=device.host,
            port=device.port or (8729 if device.use_tls else 8728),
            username=device.username,
            password=device.password,
            timeout=timeout,
            use_tls=bool(device.use_tls),
            keepalive=bool(device.keepalive),
            encoding=encoding,
        )


class Transport(ABC):
    """Una conexión abierta. Todas las llamadas bloquean."""

    @abstractmethod
    def write_sentence(self, words: List[str]) -> None:
        """Escribe una sentencia: comando seguido de sus palabras."""

    @abstractmethod
    def read_sentence(self) -> List[str]:
        """
        Lee la siguiente sentencia completa: [reply_word, *words].
        Lanza una excepción de librouteros u OSError si la conexión muere.
        """

    @abstractmethod
    def close(self) -> None:
        """Cierra el socket y desbloquea cualquier read_sentence pendiente."""


class LibrouterosTransport(Transport):
    def __init__(self, api: Api):
        self._api = api
        self._closed = False

    @classmethod
    def open(cls, credentials: DeviceCredentials, login_method: str = "plain") -> "LibrouterosTransport":
        """Conexión síncrona al MikroTik (se ejecuta en thread)."""
        timeout: Optional[float] = credentials.timeout if credentials.timeout and credentials.timeout > 0 else None
        kwargs = {
            "host": credentials.host,
            "port": credentials.port,
            "username": credentials.username,
            "password": credentials.password,
            "timeout": timeout,
            "login_method": LOGIN_METHODS.get(login_method, plain),
            "encoding": credentials.encoding,
        }
        if credentials.use_tls:
            ctx = ssl.create_default_context()
            # Los MikroTik usan certificados autofirmados
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            kwargs["ssl_wrapper"] = partial(ctx.wrap_socket, server_hostname=credentials.host)

        try:
            api = connect(**kwargs)
        except (ConnectionRefusedError, OSError) as e:
            raise ConnectError(
                f"No se pudo conectar a MikroTik {credentials.host}:{credentials.port} - {e}"
            )
        except (LibRouterosError, KeyError) as e:
            # TrapError en el login; KeyError si "token" no recibe challenge
            raise ConnectError(f"Error de autenticación en MikroTik {credentials.host}: {e}")

        sock = api.protocol.transport.sock
        # El timeout solo aplica a la conexión; el lector de listen espera indefinidamente
        sock.settimeout(None)
        if credentials.keepalive:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

        logger.info(f"Conectado a MikroTik {credentials.host}:{credentials.port}")
        return cls(api)

    def write_sentence(self, words: List[str]) -> None:
        self._api.protocol.writeSentence(words[0], *words[1:])

    def read_sentence(self) -> List[str]:
        reply_word, words = self._api.protocol.readSentence()
        return [reply_word, *words]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        sock = self._api.protocol.transport.sock
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"shutdown del socket: {e}")
        self._api.close()
