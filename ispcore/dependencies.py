"""
ISPCore - Dependencies (FastAPI Depends)
Los servicios se construyen una vez en el lifespan y viven en app.state;
aquí solo se sacan de ahí y se obtiene el tenant del request.
"""
from fastapi import HTTPException, Request, status

from ispcore.repositories.handle import Database
from ispcore.services.pppoe_events import PPPoEEventHandler
from ispcore.services.provisioning import ProvisioningCoordinator
from ispcore.services.reconciler import Reconciler
from ispcore.services.routeros.factory import SessionFactory


def get_tenant_id(request: Request) -> int:
    """Obtiene el tenant_id del request (inyectado por el middleware)."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant no identificado.",
        )
    return tenant_id


def get_database(request: Request) -> Database:
    return request.app.state.db


def get_coordinator(request: Request) -> ProvisioningCoordinator:
    return request.app.state.coordinator


def get_reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler


def get_pppoe_handler(request: Request) -> PPPoEEventHandler:
    return request.app.state.pppoe_events


def get_session_factory(request: Request) -> SessionFactory:
    return request.app.state.session_factory
