"""
ISPCore - Tenant Resolver Middleware
Extrae el subdominio de la petición y resuelve el tenant_id.

hfiber.ispcore.local → tenant "hfiber"
En desarrollo también se acepta el header X-Tenant-Slug.
"""
import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("tenant_resolver")

# Rutas que NO requieren tenant (registro, health, docs)
PUBLIC_PATHS = [
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/v1/tenants",
]


class TenantResolverMiddleware(BaseHTTPMiddleware):
    """
    Middleware que resuelve el tenant a partir del subdominio.
    Inyecta tenant_id y tenant_slug en request.state.
    """

    def __init__(self, app, base_domain: str = "ispcore.local"):
        super().__init__(app)
        self.base_domain = base_domain

    async def dispatch(self, request: Request, call_next):
        request.state.tenant_id = None
        request.state.tenant_slug = None

        # Saltar rutas públicas
        if request.url.path == "/" or any(request.url.path.startswith(p) for p in PUBLIC_PATHS):
            return await call_next(request)

        host = request.headers.get("host", "").split(":")[0]  # quitar puerto
        slug = self._extract_slug(host) or request.headers.get("x-tenant-slug")

        if not slug:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"detail": "No se pudo identificar el tenant. Usa un subdominio válido o el header X-Tenant-Slug."},
            )

        lookup = await request.app.state.db.tenants.get_by_slug(slug)
        if not lookup:
            logger.info(f"Tenant '{slug}' no encontrado ({request.url.path})")
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"detail": f"Tenant '{slug}' no encontrado o inactivo."},
            )

        request.state.tenant_id = lookup.value.id
        request.state.tenant_slug = lookup.value.slug
        return await call_next(request)

    def _extract_slug(self, host: str) -> str | None:
        """
        hfiber.ispcore.local → "hfiber"
        hfiber.localhost → "hfiber"
        localhost / ispcore.local → None
        """
        if host in ("localhost", "127.0.0.1", self.base_domain):
            return None
        if host.endswith(".localhost"):
            return host[: -len(".localhost")]
        if host.endswith(f".{self.base_domain}"):
            return host[: -len(f".{self.base_domain}")]
        return None
