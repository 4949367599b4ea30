"""
ISPCore - Schemas: Perfiles MikroTik
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from ispcore.models.profile import ProfileType


class PPPoEFields(BaseModel):
    local_address: Optional[str] = None
    remote_address: Optional[str] = None
    address_pool: Optional[str] = None
    use_mpls: Optional[bool] = None
    use_compression: Optional[bool] = None
    use_encryption: Optional[bool] = None

    class Config:
        from_attributes = True


class HotspotFields(BaseModel):
    shared_users: Optional[int] = Field(None, ge=1)
    address_pool: Optional[str] = None
    transparent_proxy: Optional[bool] = None
    mac_cookie_timeout: Optional[int] = Field(None, ge=0)     # segundos
    add_mac_cookie: Optional[bool] = None

    class Config:
        from_attributes = True


class StaticIPFields(BaseModel):
    gateway: str
    netmask: str = "255.255.255.0"
    ip_pool: Optional[str] = None
    vlan_id: Optional[int] = Field(None, ge=1, le=4094)
    firewall_chain: Optional[str] = None

    class Config:
        from_attributes = True


class ProfileBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    profile_type: ProfileType = ProfileType.PPPOE

    # Velocidad (kbps)
    rate_limit_up_kbps: Optional[int] = Field(None, gt=0)
    rate_limit_down_kbps: Optional[int] = Field(None, gt=0)

    # Timeouts (segundos)
    session_timeout: Optional[int] = Field(None, ge=0)
    idle_timeout: Optional[int] = Field(None, ge=0)
    keepalive_timeout: Optional[int] = Field(None, ge=0)

    only_one: Optional[bool] = None
    dns_server: Optional[str] = None
    on_login: Optional[str] = None
    price: float = Field(0, ge=0)


class ProfileCreate(ProfileBase):
    pppoe: Optional[PPPoEFields] = None
    hotspot: Optional[HotspotFields] = None
    static_ip: Optional[StaticIPFields] = None

    def side_fields(self) -> dict:
        """Campos de la tabla lateral que corresponde al tipo."""
        side = getattr(self, self.profile_type.value)
        return side.model_dump() if side is not None else {}


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    rate_limit_up_kbps: Optional[int] = Field(None, gt=0)
    rate_limit_down_kbps: Optional[int] = Field(None, gt=0)
    session_timeout: Optional[int] = Field(None, ge=0)
    idle_timeout: Optional[int] = Field(None, ge=0)
    keepalive_timeout: Optional[int] = Field(None, ge=0)
    only_one: Optional[bool] = None
    dns_server: Optional[str] = None
    on_login: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    is_active: Optional[bool] = None

    # Tabla lateral: solo se aplica la del tipo del perfil
    pppoe: Optional[PPPoEFields] = None
    hotspot: Optional[HotspotFields] = None
    static_ip: Optional[StaticIPFields] = None

    class Config:
        from_attributes = True

    def split_changes(self, profile_type: ProfileType):
        """→ (cambios del perfil, cambios de la tabla lateral) solo con lo enviado."""
        data = self.model_dump(exclude_unset=True, exclude={"pppoe", "hotspot", "static_ip"})
        changes = {k: v for k, v in data.items() if v is not None}
        side = getattr(self, profile_type.value)
        side_changes = {}
        if side is not None:
            side_changes = {k: v for k, v in side.model_dump(exclude_unset=True).items() if v is not None}
        return changes, side_changes


class ProfileResponse(ProfileBase):
    id: int
    tenant_id: int
    mikrotik_id: int
    is_active: bool
    remote_handle: str
    sync_error: Optional[str] = None
    last_sync: Optional[datetime] = None
    pppoe: Optional[PPPoEFields] = None
    hotspot: Optional[HotspotFields] = None
    static_ip: Optional[StaticIPFields] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
