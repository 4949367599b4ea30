"""
ISPCore - Models
Importa todos los modelos para que SQLAlchemy los registre.
"""
# Base
from ispcore.models.base import TenantBase, TimestampMixin

# Core
from ispcore.models.tenant import Tenant
from ispcore.models.user import User, UserRole
from ispcore.models.mikrotik import Mikrotik, DeviceStatus

# Perfiles
from ispcore.models.profile import (
    Profile, ProfileType, ProfilePPPoE, ProfileHotspot, ProfileStaticIP
)

# Clientes
from ispcore.models.customer import Customer, CustomerService, ServiceStatus

__all__ = [
    # Base
    "TenantBase", "TimestampMixin",
    # Core
    "Tenant",
    "User", "UserRole",
    "Mikrotik", "DeviceStatus",
    # Perfiles
    "Profile", "ProfileType", "ProfilePPPoE", "ProfileHotspot", "ProfileStaticIP",
    # Clientes
    "Customer", "CustomerService", "ServiceStatus",
]
