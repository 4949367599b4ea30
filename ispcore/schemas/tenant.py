"""
ISPCore - Schemas: Tenants
"""
from pydantic import BaseModel, Field
from typing import Optional


class TenantCreate(BaseModel):
    name: str = Field(..., max_length=200)
    slug: str = Field(..., min_length=2, max_length=100, pattern=r"^[a-z0-9][a-z0-9-]*$")
    email: str
    phone: Optional[str] = None
    timezone: str = "America/Monterrey"


class TenantResponse(BaseModel):
    id: int
    name: str
    slug: str
    email: str
    phone: Optional[str] = None
    timezone: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True
