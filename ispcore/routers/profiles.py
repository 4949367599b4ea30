"""
ISPCore - Router: Perfiles MikroTik
El alta, cambio y baja pasan por el coordinador: la fila local y el
objeto en el router se confirman juntos.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ispcore.dependencies import get_coordinator, get_database, get_tenant_id
from ispcore.repositories.handle import Database
from ispcore.repositories.result import require
from ispcore.schemas.common import MessageResponse
from ispcore.schemas.profile import ProfileCreate, ProfileResponse, ProfileUpdate
from ispcore.services.provisioning import ProvisioningCoordinator

router = APIRouter(prefix="/profiles", tags=["Profiles"])


@router.post("", response_model=ProfileResponse, status_code=201)
async def create_profile(
    data: ProfileCreate,
    tenant_id: int = Depends(get_tenant_id),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
):
    return await coordinator.create_profile(tenant_id, data)


@router.get("", response_model=List[ProfileResponse])
async def list_profiles(
    mikrotik_id: Optional[int] = Query(None),
    tenant_id: int = Depends(get_tenant_id),
    db: Database = Depends(get_database),
):
    return await db.profiles.list(tenant_id, mikrotik_id)


@router.get("/{profile_id}", response_model=ProfileResponse)
async def get_profile(
    profile_id: int,
    tenant_id: int = Depends(get_tenant_id),
    db: Database = Depends(get_database),
):
    return require(await db.profiles.get(tenant_id, profile_id), "profile", profile_id=profile_id)


@router.patch("/{profile_id}", response_model=ProfileResponse)
async def update_profile(
    profile_id: int,
    data: ProfileUpdate,
    tenant_id: int = Depends(get_tenant_id),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
):
    return await coordinator.update_profile(tenant_id, profile_id, data)


@router.delete("/{profile_id}", response_model=MessageResponse)
async def delete_profile(
    profile_id: int,
    tenant_id: int = Depends(get_tenant_id),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
):
    await coordinator.delete_profile(tenant_id, profile_id)
    return MessageResponse(message="Perfil eliminado")
