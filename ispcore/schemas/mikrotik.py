"""
ISPCore - Schemas: MikroTiks
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from ispcore.models.mikrotik import DeviceStatus


class MikrotikCreate(BaseModel):
    name: str = Field(..., max_length=200)
    host: str
    port: int = Field(8728, ge=1, le=65535)
    username: str
    password: str
    timeout: int = 10
    keepalive: bool = False
    use_tls: bool = False
    description: Optional[str] = None


class MikrotikResponse(BaseModel):
    id: int
    tenant_id: int
    name: str
    host: str
    port: int
    timeout: Optional[int] = None
    keepalive: bool
    use_tls: bool
    status: DeviceStatus
    is_active: bool
    last_sync: Optional[datetime] = None
    description: Optional[str] = None

    class Config:
        from_attributes = True
