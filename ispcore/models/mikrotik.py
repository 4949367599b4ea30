"""
ISPCore - Modelo Mikrotik (Device)
Cada ISP registra sus routers MikroTik. A lo más uno por tenant
está marcado como activo: es el que recibe el aprovisionamiento.
"""
from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime, Enum
from ispcore.models.base import TenantBase
import enum


class DeviceStatus(str, enum.Enum):
    OFFLINE = "offline"
    ONLINE = "online"
    ERROR = "error"


class Mikrotik(TenantBase):
    __tablename__ = "mikrotiks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)           # "Router Principal", "Nodo Sur"
    host = Column(String(255), nullable=False)            # IP o hostname
    port = Column(Integer, default=8728)                  # API (8728) o API-SSL (8729)
    username = Column(String(100), nullable=False)
    password = Column(Text, nullable=False)
    timeout = Column(Integer, default=10)                 # segundos para conectar
    keepalive = Column(Boolean, default=False)
    use_tls = Column(Boolean, default=False)
    status = Column(Enum(DeviceStatus), default=DeviceStatus.OFFLINE, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)
    last_sync = Column(DateTime(timezone=True), nullable=True)
    description = Column(Text, nullable=True)

    def __repr__(self):
        return f"<MikroTik {self.name} @ {self.host}>"
