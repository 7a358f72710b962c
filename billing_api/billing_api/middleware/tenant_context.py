"""Trusted-identity middleware that binds each request to a tenant.

The billing API sits behind the product's identity layer, which
authenticates the caller and forwards three headers:

* ``X-Tenant-ID`` -- the tenant the request acts for.
* ``X-User-ID`` -- the authenticated principal, recorded as audit actor.
* ``X-User-Role`` -- one of ``viewer``, ``member``, ``admin``, ``owner``.

Webhook, cron and health-check paths authenticate by other means (provider
signatures, bearer cron secret) and bypass the tenant requirement.
"""

from __future__ import annotations

import logging

from billing_engine.state.database import validate_tenant_id
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"
USER_HEADER = "X-User-ID"
ROLE_HEADER = "X-User-Role"

# Paths that do not carry a tenant identity.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
    }
)

_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/api/v1/webhooks/",
    "/api/v1/cron/",
    "/docs",
    "/redoc",
)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass the tenant requirement."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class TenantContextMiddleware(BaseHTTPMiddleware):
    """Populate ``request.state`` with tenant, user and role.

    Requests on tenant-scoped paths without a valid ``X-Tenant-ID`` are
    rejected with 401 before reaching any router.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if _is_public_path(path):
            return await call_next(request)

        tenant_id = request.headers.get(TENANT_HEADER, "").strip()
        if not tenant_id:
            return JSONResponse(
                status_code=401,
                content={"detail": f"Missing {TENANT_HEADER} header"},
            )
        try:
            validate_tenant_id(tenant_id)
        except ValueError:
            logger.warning("Rejected malformed tenant id on %s", path)
            return JSONResponse(
                status_code=400,
                content={"detail": f"Invalid {TENANT_HEADER} header"},
            )

        request.state.tenant_id = tenant_id
        request.state.sub = request.headers.get(USER_HEADER, "").strip() or "anonymous"
        role = request.headers.get(ROLE_HEADER, "").strip()
        if role:
            request.state.role = role
        return await call_next(request)
