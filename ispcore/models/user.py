"""
ISPCore - Modelo User
Usuarios de cada ISP. El creador se guarda solo por id (sin relationship):
se resuelve con una consulta cuando hace falta.
"""
from sqlalchemy import Column, Integer, String, Boolean, Enum
from ispcore.models.base import TenantBase
import enum


class UserRole(str, enum.Enum):
    ADMIN = "admin"               # Dueño del ISP
    AGENT = "agent"               # Soporte
    TECHNICIAN = "technician"     # Técnico de campo


class User(TenantBase):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    username = Column(String(100), nullable=False)
    full_name = Column(String(200), nullable=False)
    role = Column(Enum(UserRole), default=UserRole.AGENT, nullable=False)
    is_active = Column(Boolean, default=True)
    created_by_id = Column(Integer, nullable=True)   # id de otro User, sin FK

    def __repr__(self):
        return f"<User {self.email} ({self.role.value})>"
