"""
ISPCore - Modelo Tenant (ISPs)
Cada ISP que se registra es un tenant.
"""
from sqlalchemy import Column, Integer, String, Boolean
from ispcore.database import Base
from ispcore.models.base import TimestampMixin


class Tenant(Base, TimestampMixin):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=True)
    timezone = Column(String(50), default="America/Monterrey")
    is_active = Column(Boolean, default=True)

    def __repr__(self):
        return f"<Tenant {self.slug}: {self.name}>"
