"""
ISPCore - Cliente RouterOS
Transporte, sesión con demultiplexado por tag, fábrica y resolución
del MikroTik activo de cada tenant.
"""
from ispcore.services.routeros.transport import DeviceCredentials, Transport, LibrouterosTransport
from ispcore.services.routeros.session import RouterOSSession, SessionState, Reply, ListenStream
from ispcore.services.routeros.factory import SessionFactory
from ispcore.services.routeros.resolver import ActiveDeviceResolver

__all__ = [
    "DeviceCredentials", "Transport", "LibrouterosTransport",
    "RouterOSSession", "SessionState", "Reply", "ListenStream",
    "SessionFactory",
    "ActiveDeviceResolver",
]
