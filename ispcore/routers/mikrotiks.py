"""
ISPCore - Router: MikroTiks
Registro de equipos, selección del equipo activo, prueba de conexión
y reconciliación manual.
"""
from dataclasses import asdict
from typing import List

from fastapi import APIRouter, Depends

from ispcore.dependencies import get_database, get_reconciler, get_session_factory, get_tenant_id
from ispcore.errors import ProvisioningError
from ispcore.repositories.handle import Database
from ispcore.repositories.result import require
from ispcore.schemas.mikrotik import MikrotikCreate, MikrotikResponse
from ispcore.services.reconciler import Reconciler
from ispcore.services.routeros.factory import SessionFactory

router = APIRouter(prefix="/mikrotiks", tags=["MikroTik"])


# ================================================================
# CRUD
# ================================================================

@router.post("", response_model=MikrotikResponse, status_code=201)
async def create_mikrotik(
    data: MikrotikCreate,
    tenant_id: int = Depends(get_tenant_id),
    db: Database = Depends(get_database),
):
    """Registra un MikroTik. Se crea inactivo: activarlo es un paso aparte."""
    return await db.mikrotiks.create(tenant_id, **data.model_dump())


@router.get("", response_model=List[MikrotikResponse])
async def list_mikrotiks(tenant_id: int = Depends(get_tenant_id), db: Database = Depends(get_database)):
    return await db.mikrotiks.list(tenant_id)


@router.get("/{mikrotik_id}", response_model=MikrotikResponse)
async def get_mikrotik(
    mikrotik_id: int,
    tenant_id: int = Depends(get_tenant_id),
    db: Database = Depends(get_database),
):
    return require(await db.mikrotiks.get(tenant_id, mikrotik_id), "mikrotik", mikrotik_id=mikrotik_id)


@router.post("/{mikrotik_id}/activate", response_model=MikrotikResponse)
async def activate_mikrotik(
    mikrotik_id: int,
    tenant_id: int = Depends(get_tenant_id),
    db: Database = Depends(get_database),
):
    """Marca este equipo como el activo del tenant y desactiva los demás."""
    return require(await db.mikrotiks.set_active(tenant_id, mikrotik_id), "mikrotik", mikrotik_id=mikrotik_id)


# ================================================================
# TEST DE CONEXIÓN
# ================================================================

@router.get("/{mikrotik_id}/test")
async def test_mikrotik_connection(
    mikrotik_id: int,
    tenant_id: int = Depends(get_tenant_id),
    db: Database = Depends(get_database),
    factory: SessionFactory = Depends(get_session_factory),
):
    """Conecta y lee el identity del router."""
    device = require(await db.mikrotiks.get(tenant_id, mikrotik_id), "mikrotik", mikrotik_id=mikrotik_id)
    try:
        async with await factory.open(device) as session:
            reply = await session.run("/system/identity/print")
    except ProvisioningError as e:
        return {"connected": False, "error": str(e)}
    identity = reply.re[0].get("name") if reply.re else None
    return {"connected": True, "identity": identity}


# ================================================================
# RECONCILIACIÓN
# ================================================================

@router.post("/reconcile")
async def reconcile_now(
    tenant_id: int = Depends(get_tenant_id),
    db: Database = Depends(get_database),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """Ejecuta la reconciliación del equipo activo del tenant sin esperar al scheduler."""
    devices = await db.mikrotiks.list_active(tenant_id)
    reports = [await reconciler.reconcile_device(device) for device in devices]
    return {"devices": [asdict(r) for r in reports]}
