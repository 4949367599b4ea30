"""
ISPCore - Punto de entrada FastAPI
Aprovisionamiento de MikroTik para ISPs multi-tenant.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ispcore.cancellation import CancelToken
from ispcore.config import get_settings
from ispcore.database import AsyncSessionLocal, Base, engine
from ispcore.errors import ErrorKind, ProvisioningError
from ispcore.middleware.tenant_resolver import TenantResolverMiddleware
from ispcore.repositories.handle import Database
from ispcore.scheduler import build_scheduler
from ispcore.services.kv import AuthSessionCache, EventPublisher, KeyValueStore
from ispcore.services.listener import start_device_listeners
from ispcore.services.pppoe_events import PPPoEEventHandler
from ispcore.services.provisioning import ProvisioningCoordinator
from ispcore.services.reconciler import Reconciler
from ispcore.services.routeros.factory import SessionFactory
from ispcore.services.routeros.resolver import ActiveDeviceResolver

# Routers
from ispcore.routers.tenants import router as tenants_router
from ispcore.routers.mikrotiks import router as mikrotiks_router
from ispcore.routers.profiles import router as profiles_router
from ispcore.routers.customers import router as customers_router
from ispcore.routers.webhooks import router as webhooks_router

# Importar modelos para que se registren
from ispcore.models import *  # noqa

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(levelname)s - [%(name)s] - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("ispcore")


STATUS_BY_KIND = {
    ErrorKind.NO_ACTIVE_DEVICE: 409,
    ErrorKind.TRANSPORT: 502,
    ErrorKind.DEVICE_ERROR: 502,
    ErrorKind.DEVICE_PROTOCOL: 502,
    ErrorKind.NOT_PROVISIONED: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NESTED_TX: 500,
    ErrorKind.CANCELLED: 503,
    ErrorKind.CLOSED: 503,
    ErrorKind.INVALID_INPUT: 422,
}


def wire_services(app: FastAPI, db: Database, factory: SessionFactory, kv: KeyValueStore) -> None:
    """Construye los servicios y los deja en app.state para los Depends."""
    publisher = EventPublisher(kv, settings.EVENTS_CHANNEL)
    resolver = ActiveDeviceResolver(db, factory)
    app.state.db = db
    app.state.kv = kv
    app.state.publisher = publisher
    app.state.session_factory = factory
    app.state.resolver = resolver
    app.state.coordinator = ProvisioningCoordinator(db, resolver, publisher)
    app.state.reconciler = Reconciler(db, factory, delete_orphans=settings.RECONCILE_DELETE_ORPHANS)
    app.state.pppoe_events = PPPoEEventHandler(db, publisher)
    app.state.auth_sessions = AuthSessionCache(kv, ttl=settings.AUTH_SESSION_TTL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Crea las tablas al iniciar (en desarrollo). En prod usar Alembic."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    kv = KeyValueStore.from_url(settings.REDIS_URL, settings.KV_PREFIX)
    wire_services(app, Database(AsyncSessionLocal), SessionFactory.from_settings(settings), kv)

    scheduler = build_scheduler(settings, app.state.reconciler)
    if scheduler is not None:
        scheduler.start()

    shutdown = CancelToken()
    listeners = []
    if settings.LISTENER_ENABLED:
        listeners = await start_device_listeners(
            app.state.db, app.state.session_factory, app.state.publisher, settings.LISTENER_COMMANDS, shutdown
        )

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} iniciado")
    yield

    shutdown.cancel("apagando la aplicación")
    await asyncio.gather(*listeners, return_exceptions=True)
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    await kv.close()
    await engine.dispose()
    logger.info(f"{settings.APP_NAME} detenido")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Aprovisionamiento MikroTik para ISPs - Multi-Tenant",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(TenantResolverMiddleware, base_domain=settings.BASE_DOMAIN)

    @app.exception_handler(ProvisioningError)
    async def provisioning_error_handler(request: Request, exc: ProvisioningError):
        status_code = STATUS_BY_KIND.get(exc.kind, 500)
        log = logger.error if status_code >= 500 else logger.info
        log(f"{request.method} {request.url.path} → {status_code} {exc}")
        return JSONResponse(status_code=status_code, content=jsonable_encoder(exc.to_dict()))

    # Registrar routers
    app.include_router(tenants_router, prefix="/api/v1")
    app.include_router(mikrotiks_router, prefix="/api/v1")
    app.include_router(profiles_router, prefix="/api/v1")
    app.include_router(customers_router, prefix="/api/v1")
    app.include_router(webhooks_router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/")
    async def root():
        return {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running",
            "docs": "/docs",
        }

    return app


app = create_app()


def run():
    """Punto de entrada del servidor (`ispcore` en consola)."""
    import uvicorn

    uvicorn.run("ispcore.main:app", host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
