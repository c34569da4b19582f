"""
Tenant Resolution Middleware

Builds the TenantContext for every /api request from the agent headers,
falling back to the default tenant from settings. The context lives in a
ContextVar for the duration of the request and is cleared afterwards.
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.core.errors import AppError
from app.core.tenant import RequestContext, TenantContext, mask_token

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# ContextVar for tenant context (accessible anywhere without passing)
_tenant_context: ContextVar[Optional[TenantContext]] = ContextVar(
    "tenant_context",
    default=None
)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("Authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


def resolve_tenant(request: Request) -> TenantContext:
    """
    Tenant for this request.

    Agent headers override the default tenant field by field, so a
    single-tenant deployment only needs X-Agent-ID for ledger ownership.
    """
    default = TenantContext.from_settings(settings)
    headers = request.headers

    seller_writes = headers.get("X-Seller-Level-Writes")
    access_token = headers.get("X-Square-Access-Token") or _bearer_token(request)

    return TenantContext(
        tenant_id=headers.get("X-Tenant-ID") or default.tenant_id,
        agent_id=headers.get("X-Agent-ID") or default.agent_id,
        access_token=access_token or default.access_token,
        location_id=headers.get("X-Square-Location-ID") or default.location_id,
        merchant_id=headers.get("X-Square-Merchant-ID") or default.merchant_id,
        environment=headers.get("X-Square-Environment") or default.environment,
        timezone=headers.get("X-Timezone") or default.timezone,
        supports_seller_level_writes=(
            seller_writes.strip().lower() in _TRUE_VALUES
            if seller_writes is not None
            else default.supports_seller_level_writes
        ),
    )


def get_current_tenant() -> TenantContext:
    """
    Get current tenant context.

    Raises RuntimeError if called outside a resolved request.
    """
    context = _tenant_context.get()
    if context is None:
        raise RuntimeError("No tenant context - called outside a tenant request")
    return context


def get_current_tenant_optional() -> Optional[TenantContext]:
    return _tenant_context.get()


def set_tenant_context(context: Optional[TenantContext]) -> None:
    """Set tenant context (public API for middleware and tests)."""
    _tenant_context.set(context)


def clear_tenant_context() -> None:
    """Called at end of request to prevent context leaking."""
    _tenant_context.set(None)


def get_request_context(request: Request) -> RequestContext:
    """
    FastAPI dependency yielding the RequestContext for booking pipelines.

    Usage:
        @router.post("/booking")
        async def booking(ctx: RequestContext = Depends(get_request_context)):
            ...
    """
    correlation_id = getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
    tenant = getattr(request.state, "tenant", None) or get_current_tenant()
    return RequestContext(correlation_id=correlation_id, tenant=tenant)


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Correlation id, tenant resolution and security headers.

    Only /api paths require a resolvable tenant. Every response carries
    the correlation id and the security headers.
    """

    TENANT_PATH_PREFIX = "/api"

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        if request.url.path.startswith(self.TENANT_PATH_PREFIX) and request.method != "OPTIONS":
            tenant = resolve_tenant(request)

            if not tenant.access_token:
                client_ip = request.client.host if request.client else "unknown"
                logger.warning(
                    f"Tenant resolution failed: no access token | tenant: {tenant.tenant_id} | "
                    f"IP: {client_ip} | correlation_id: {correlation_id}"
                )
                error = AppError(
                    "AUTH_MISSING_TOKEN",
                    message="Square access token required",
                    correlation_id=correlation_id,
                )
                response = JSONResponse(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    content=error.to_response(),
                )
                self._decorate(response, correlation_id)
                return response

            request.state.tenant = tenant
            set_tenant_context(tenant)
            logger.debug(
                f"Tenant resolved | tenant: {tenant.tenant_id} | agent: {tenant.agent_id} | "
                f"env: {tenant.environment} | token: {mask_token(tenant.access_token)} | "
                f"correlation_id: {correlation_id}"
            )

        try:
            response = await call_next(request)
        finally:
            clear_tenant_context()

        self._decorate(response, correlation_id)
        return response

    @staticmethod
    def _decorate(response, correlation_id: str) -> None:
        response.headers[CORRELATION_HEADER] = correlation_id
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
