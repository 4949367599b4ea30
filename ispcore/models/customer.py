"""
ISPCore - Modelos Customer y CustomerService
El servicio liga un cliente a un perfil y se refleja en el MikroTik
como PPPoE secret, usuario hotspot o simple queue (IP fija).
"""
from sqlalchemy import (
    Column, Integer, String, Boolean, Text, DateTime, Date, Numeric, Enum,
    ForeignKey, UniqueConstraint
)
from ispcore.models.base import TenantBase
import enum


class ServiceStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"


class Customer(TenantBase):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "username", name="uq_customer_tenant_username"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    username = Column(String(100), nullable=False)       # usuario PPPoE / hotspot
    password = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)

    def __repr__(self):
        return f"<Customer {self.username}>"


class CustomerService(TenantBase):
    __tablename__ = "customer_services"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    profile_id = Column(Integer, ForeignKey("mikrotik_profiles.id", ondelete="RESTRICT"), nullable=False, index=True)
    mikrotik_id = Column(Integer, ForeignKey("mikrotiks.id", ondelete="CASCADE"), nullable=False, index=True)

    price = Column(Numeric(10, 2), default=0)
    tax_rate = Column(Numeric(5, 2), default=0)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    status = Column(Enum(ServiceStatus), default=ServiceStatus.ACTIVE, nullable=False)

    ip_address = Column(String(50), nullable=True)
    mac_address = Column(String(17), nullable=True)

    # Sincronización con MikroTik
    remote_handle = Column(String(50), nullable=False, default="")
    sync_error = Column(Text, nullable=True)
    last_sync = Column(DateTime(timezone=True), nullable=True)

    # Estado de la sesión PPPoE (callbacks on-up / on-down)
    is_online = Column(Boolean, default=False)
    last_caller_id = Column(String(50), nullable=True)
    last_address = Column(String(50), nullable=True)
    last_interface = Column(String(100), nullable=True)

    def __repr__(self):
        return f"<CustomerService {self.id} customer={self.customer_id} handle={self.remote_handle or '-'}>"
