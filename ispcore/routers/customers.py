"""
ISPCore - Router: Clientes y Servicios
Los datos del cliente son solo locales; los servicios se aprovisionan
en el MikroTik activo del tenant.
"""
from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ispcore.dependencies import get_coordinator, get_database, get_tenant_id
from ispcore.repositories.handle import Database
from ispcore.repositories.result import require
from ispcore.schemas.common import MessageResponse
from ispcore.schemas.customer import (
    CustomerCreate, CustomerResponse, CustomerUpdate,
    ServiceCreate, ServiceResponse, ServiceUpdate,
)
from ispcore.services.provisioning import ProvisioningCoordinator

router = APIRouter(tags=["Customers"])


# ================================================================
# CLIENTES
# ================================================================

@router.post("/customers", response_model=CustomerResponse, status_code=201)
async def create_customer(
    data: CustomerCreate,
    tenant_id: int = Depends(get_tenant_id),
    db: Database = Depends(get_database),
):
    return asdict(await db.customers.create(tenant_id, data.model_dump()))


@router.get("/customers", response_model=List[CustomerResponse])
async def list_customers(tenant_id: int = Depends(get_tenant_id), db: Database = Depends(get_database)):
    return [asdict(c) for c in await db.customers.list(tenant_id)]


@router.get("/customers/{customer_id}", response_model=CustomerResponse)
async def get_customer(
    customer_id: int,
    tenant_id: int = Depends(get_tenant_id),
    db: Database = Depends(get_database),
):
    return asdict(require(await db.customers.get(tenant_id, customer_id), "customer", customer_id=customer_id))


@router.patch("/customers/{customer_id}", response_model=CustomerResponse)
async def update_customer(
    customer_id: int,
    data: CustomerUpdate,
    tenant_id: int = Depends(get_tenant_id),
    db: Database = Depends(get_database),
):
    changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    if not changes:
        return await get_customer(customer_id, tenant_id, db)
    lookup = await db.customers.update(tenant_id, customer_id, changes)
    return asdict(require(lookup, "customer", customer_id=customer_id))


# ================================================================
# SERVICIOS
# ================================================================

@router.post("/services", response_model=ServiceResponse, status_code=201)
async def create_service(
    data: ServiceCreate,
    tenant_id: int = Depends(get_tenant_id),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
):
    return asdict(await coordinator.create_service(tenant_id, data))


@router.get("/services", response_model=List[ServiceResponse])
async def list_services(
    customer_id: Optional[int] = Query(None),
    tenant_id: int = Depends(get_tenant_id),
    db: Database = Depends(get_database),
):
    return [asdict(s) for s in await db.services.list(tenant_id, customer_id)]


@router.get("/services/{service_id}", response_model=ServiceResponse)
async def get_service(
    service_id: int,
    tenant_id: int = Depends(get_tenant_id),
    db: Database = Depends(get_database),
):
    return asdict(require(await db.services.get(tenant_id, service_id), "customer_service", service_id=service_id))


@router.patch("/services/{service_id}", response_model=ServiceResponse)
async def update_service(
    service_id: int,
    data: ServiceUpdate,
    tenant_id: int = Depends(get_tenant_id),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
):
    return asdict(await coordinator.update_service(tenant_id, service_id, data))


@router.post("/services/{service_id}/suspend", response_model=ServiceResponse)
async def suspend_service(
    service_id: int,
    tenant_id: int = Depends(get_tenant_id),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
):
    return asdict(await coordinator.suspend_service(tenant_id, service_id))


@router.post("/services/{service_id}/activate", response_model=ServiceResponse)
async def activate_service(
    service_id: int,
    tenant_id: int = Depends(get_tenant_id),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
):
    return asdict(await coordinator.activate_service(tenant_id, service_id))


@router.delete("/services/{service_id}", response_model=MessageResponse)
async def delete_service(
    service_id: int,
    tenant_id: int = Depends(get_tenant_id),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
):
    await coordinator.delete_service(tenant_id, service_id)
    return MessageResponse(message="Servicio eliminado")
