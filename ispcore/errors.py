"""
ISPCore - Taxonomía de errores del pipeline de aprovisionamiento
Cada error lleva su tipo (ErrorKind) y una cadena de anotaciones que
se agregan en los límites entre componentes: qué componente, qué
entidad local y qué handle remoto estaban en juego.
"""
import enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, enum.Enum):
    NO_ACTIVE_DEVICE = "no_active_device"   # ningún MikroTik activo para el tenant
    TRANSPORT = "transport"                 # socket / conexión / lectura
    DEVICE_ERROR = "device_error"           # !trap con el mensaje del equipo
    DEVICE_PROTOCOL = "device_protocol"     # respuesta sin un campo requerido
    NOT_PROVISIONED = "not_provisioned"     # la fila local no tiene handle remoto
    NOT_FOUND = "not_found"                 # la fila local no existe
    CONFLICT = "conflict"                   # duplicado o referenciado por otra fila
    NESTED_TX = "nested_tx"                 # transacción dentro de otra
    CANCELLED = "cancelled"                 # cancelado por el llamador
    CLOSED = "closed"                       # sesión fuera de estado READY
    INVALID_INPUT = "invalid_input"         # datos incompletos para el equipo


class ProvisioningError(Exception):
    """Error base. Nunca se lanza directamente: usar una subclase."""
    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str = "", kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.annotations: List[Dict[str, Any]] = []

    def annotate(self, component: str, **context: Any) -> "ProvisioningError":
        """Agrega contexto y regresa el mismo error para re-lanzarlo."""
        entry = {"component": component}
        entry.update({k: v for k, v in context.items() if v is not None})
        self.annotations.append(entry)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "detail": self.message,
            "annotations": list(self.annotations),
        }

    def __str__(self):
        if not self.annotations:
            return f"[{self.kind.value}] {self.message}"
        chain = " <- ".join(a["component"] for a in self.annotations)
        return f"[{self.kind.value}] {self.message} ({chain})"


class NoActiveDeviceError(ProvisioningError):
    kind = ErrorKind.NO_ACTIVE_DEVICE


class TransportError(ProvisioningError):
    kind = ErrorKind.TRANSPORT


class ConnectError(TransportError):
    """Fallo al abrir la conexión (connect_failed)."""
    pass


class DeviceError(ProvisioningError):
    """!trap de RouterOS. `message` es el texto verbatim del equipo."""
    kind = ErrorKind.DEVICE_ERROR

    def __init__(self, message: str = "", category: Optional[str] = None):
        super().__init__(message)
        self.category = category

    @property
    def is_no_such_item(self) -> bool:
        return "no such item" in self.message.lower()


class DeviceProtocolError(ProvisioningError):
    kind = ErrorKind.DEVICE_PROTOCOL


class NotProvisionedError(ProvisioningError):
    kind = ErrorKind.NOT_PROVISIONED


class NotFoundError(ProvisioningError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(ProvisioningError):
    kind = ErrorKind.CONFLICT


class NestedTransactionError(ProvisioningError):
    kind = ErrorKind.NESTED_TX


class OperationCancelled(ProvisioningError):
    kind = ErrorKind.CANCELLED


class SessionClosedError(ProvisioningError):
    kind = ErrorKind.CLOSED


class InvalidInputError(ProvisioningError):
    kind = ErrorKind.INVALID_INPUT
