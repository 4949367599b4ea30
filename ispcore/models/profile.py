"""
ISPCore - Modelos de Perfiles MikroTik
Un perfil es la plantilla (velocidad, timeouts, DNS) que vive en el
router. remote_handle guarda el .id que el MikroTik asignó al crearlo:
vacío = sin aprovisionar.
"""
from sqlalchemy import (
    Column, Integer, String, Boolean, Text, DateTime, Numeric, Enum,
    ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from ispcore.database import Base
from ispcore.models.base import TenantBase
import enum


class ProfileType(str, enum.Enum):
    PPPOE = "pppoe"
    HOTSPOT = "hotspot"
    STATIC_IP = "static_ip"


class Profile(TenantBase):
    __tablename__ = "mikrotik_profiles"
    __table_args__ = (
        UniqueConstraint("mikrotik_id", "name", name="uq_profile_mikrotik_name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    mikrotik_id = Column(Integer, ForeignKey("mikrotiks.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    profile_type = Column(Enum(ProfileType), nullable=False)

    # Velocidad (kbps)
    rate_limit_up_kbps = Column(Integer, nullable=True)
    rate_limit_down_kbps = Column(Integer, nullable=True)

    # Timeouts (segundos)
    session_timeout = Column(Integer, nullable=True)
    idle_timeout = Column(Integer, nullable=True)
    keepalive_timeout = Column(Integer, nullable=True)

    only_one = Column(Boolean, nullable=True)
    dns_server = Column(String(100), nullable=True)
    on_login = Column(Text, nullable=True)               # script on-up / on-login
    price = Column(Numeric(10, 2), default=0)
    is_active = Column(Boolean, default=True)

    # Sincronización con MikroTik
    remote_handle = Column(String(50), nullable=False, default="")
    sync_error = Column(Text, nullable=True)
    last_sync = Column(DateTime(timezone=True), nullable=True)

    # Tablas por protocolo (solo una aplica según profile_type)
    pppoe = relationship("ProfilePPPoE", uselist=False, lazy="selectin", cascade="all, delete-orphan", passive_deletes=True)
    hotspot = relationship("ProfileHotspot", uselist=False, lazy="selectin", cascade="all, delete-orphan", passive_deletes=True)
    static_ip = relationship("ProfileStaticIP", uselist=False, lazy="selectin", cascade="all, delete-orphan", passive_deletes=True)

    @property
    def is_provisioned(self) -> bool:
        return bool(self.remote_handle)

    def __repr__(self):
        return f"<Profile {self.name} ({self.profile_type.value}) handle={self.remote_handle or '-'}>"


class ProfilePPPoE(Base):
    __tablename__ = "mikrotik_profile_pppoe"

    profile_id = Column(Integer, ForeignKey("mikrotik_profiles.id", ondelete="CASCADE"), primary_key=True)
    local_address = Column(String(50), nullable=True)
    remote_address = Column(String(50), nullable=True)
    address_pool = Column(String(50), nullable=True)     # se usa como remote-address si no hay IP fija
    use_mpls = Column(Boolean, nullable=True)
    use_compression = Column(Boolean, nullable=True)
    use_encryption = Column(Boolean, nullable=True)


class ProfileHotspot(Base):
    __tablename__ = "mikrotik_profile_hotspot"

    profile_id = Column(Integer, ForeignKey("mikrotik_profiles.id", ondelete="CASCADE"), primary_key=True)
    shared_users = Column(Integer, nullable=True)
    address_pool = Column(String(50), nullable=True)
    transparent_proxy = Column(Boolean, nullable=True)
    mac_cookie_timeout = Column(Integer, nullable=True)   # segundos
    add_mac_cookie = Column(Boolean, nullable=True)


class ProfileStaticIP(Base):
    __tablename__ = "mikrotik_profile_static_ip"

    profile_id = Column(Integer, ForeignKey("mikrotik_profiles.id", ondelete="CASCADE"), primary_key=True)
    gateway = Column(String(50), nullable=False)
    netmask = Column(String(50), nullable=False, default="255.255.255.0")
    ip_pool = Column(String(50), nullable=True)
    vlan_id = Column(Integer, nullable=True)
    firewall_chain = Column(String(50), nullable=True)
