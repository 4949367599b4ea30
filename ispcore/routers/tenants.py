"""
ISPCore - Router: Tenants
Registro de un ISP nuevo. Ruta pública (no requiere tenant).
"""
import logging

from fastapi import APIRouter, Depends

from ispcore.dependencies import get_database
from ispcore.repositories.handle import Database
from ispcore.schemas.tenant import TenantCreate, TenantResponse

logger = logging.getLogger("tenants")

router = APIRouter(prefix="/tenants", tags=["Tenants"])


@router.post("", response_model=TenantResponse, status_code=201)
async def register_tenant(data: TenantCreate, db: Database = Depends(get_database)):
    tenant = await db.tenants.create(**data.model_dump())
    logger.info(f"Tenant registrado: {tenant.slug}")
    return tenant
