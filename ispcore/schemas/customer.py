"""
ISPCore - Schemas: Clientes y Servicios
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import date, datetime
from ispcore.models.customer import ServiceStatus


class CustomerCreate(BaseModel):
    name: str = Field(..., max_length=200)
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = None
    email: Optional[str] = None


class CustomerUpdate(BaseModel):
    """Datos que no viajan al MikroTik."""
    name: Optional[str] = Field(None, max_length=200)
    phone: Optional[str] = None
    email: Optional[str] = None


class CustomerResponse(BaseModel):
    id: int
    tenant_id: int
    name: str
    username: str
    phone: Optional[str] = None
    email: Optional[str] = None

    class Config:
        from_attributes = True


class ServiceCreate(BaseModel):
    customer_id: int
    profile_id: int
    price: float = Field(0, ge=0)
    tax_rate: float = Field(0, ge=0, le=100)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: ServiceStatus = ServiceStatus.ACTIVE
    ip_address: Optional[str] = None
    mac_address: Optional[str] = Field(None, max_length=17)


class ServiceUpdate(BaseModel):
    profile_id: Optional[int] = None
    price: Optional[float] = Field(None, ge=0)
    tax_rate: Optional[float] = Field(None, ge=0, le=100)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[ServiceStatus] = None
    ip_address: Optional[str] = None
    mac_address: Optional[str] = Field(None, max_length=17)

    def changes(self) -> dict:
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}


class ServiceResponse(BaseModel):
    id: int
    tenant_id: int
    customer_id: int
    profile_id: int
    mikrotik_id: int
    price: Optional[float] = None
    tax_rate: Optional[float] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: ServiceStatus
    ip_address: Optional[str] = None
    mac_address: Optional[str] = None
    remote_handle: str
    sync_error: Optional[str] = None
    last_sync: Optional[datetime] = None
    is_online: Optional[bool] = None

    class Config:
        from_attributes = True
