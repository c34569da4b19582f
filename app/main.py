"""
Square Booking Gateway API

FastAPI application entry point that ties all components together.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.middleware.rate_limit import RateLimitMiddleware
from app.api.middleware.tenant import TenantMiddleware
from app.api.routes import bookings, customers, health
from app.config import ConfigurationError, settings, validate_configuration
from app.core.booking import get_booking_orchestrator
from app.core.errors import AppError, get_error_info
from app.core.square import get_client_factory
from app.infra.database import close_db, init_db
from app.infra.redis import RedisClient


def setup_logging() -> None:
    """Configure logging based on environment."""
    log_level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level, logging.INFO)
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Validates configuration before serving and releases Square clients,
    Redis and the database engine on shutdown.
    """
    # === STARTUP ===
    setup_logging()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode")

    result = validate_configuration(settings)
    for warning in result.warnings:
        logger.warning(f"Configuration warning: {warning}")
    if not result.valid:
        for error in result.errors:
            logger.error(f"Configuration error: {error}")
        raise ConfigurationError(result.errors)

    health.set_start_time()

    # Ledger table (only in development - use migrations in production)
    if settings.is_development:
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Database init skipped: {e}")

    redis = await RedisClient.get_client()
    if redis:
        logger.info("Redis connection established")
    else:
        logger.warning("Redis unavailable - rate limiting falls back to in-process windows")

    logger.info(f"Application ready at http://{settings.host}:{settings.port}")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application...")

    await get_booking_orchestrator().drain()
    await get_client_factory().close_all()
    await RedisClient.close()
    await close_db()

    logger.info("Shutdown complete")


app = FastAPI(
    title="Square Booking Gateway",
    description="""
    Multi-tenant booking gateway between conversational agents and Square Appointments.

    ## Features
    - Availability search with staff-coherent multi-service slots
    - Booking create / update / cancel with slot and conflict pre-checks
    - Customer lookup by caller phone and find-or-create
    - Per-tenant circuit breaking and request coalescing

    ## Tenancy
    Tenants are resolved from `X-Tenant-ID`, `X-Agent-ID` and the
    `X-Square-*` headers, falling back to the configured default tenant.
    """,
    version=health.VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

# Middleware execution order (reverse of add order):
# 1. TenantMiddleware - correlation id, TenantContext, security headers
# 2. RateLimitMiddleware - per-IP sliding window
# 3. CORSMiddleware - handles CORS headers

if settings.cors_enabled:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID", "Retry-After", "X-RateLimit-Remaining"],
    )

if settings.rate_limiting_active:
    app.add_middleware(RateLimitMiddleware)

app.add_middleware(TenantMiddleware)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Categorized errors become the standard error envelope."""
    if exc.correlation_id is None:
        exc.correlation_id = getattr(request.state, "correlation_id", None)

    info = get_error_info(exc)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Request failed | code: {info['code']} | status: {info['statusCode']} | "
        f"path: {request.url.path} | correlation_id: {info['correlationId']}"
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response(),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    logger.warning(f"Validation error: {exc.errors()}")
    error = AppError(
        "VALIDATION_INVALID_FORMAT",
        message="Request validation failed",
        details={"errors": exc.errors()},
        correlation_id=getattr(request.state, "correlation_id", None),
    )
    body = error.to_response()
    body["statusCode"] = status.HTTP_422_UNPROCESSABLE_ENTITY
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    body = {
        "success": False,
        "message": exc.detail if isinstance(exc.detail, str) else "Request failed",
        "code": "HTTP_ERROR",
        "details": exc.detail if not isinstance(exc.detail, str) else {},
        "statusCode": exc.status_code,
    }
    correlation_id = getattr(request.state, "correlation_id", None)
    if correlation_id:
        body["correlationId"] = correlation_id
    return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle uncaught exceptions."""
    correlation_id = getattr(request.state, "correlation_id", None)
    logger.exception(f"Unhandled exception: {exc} | correlation_id: {correlation_id}")

    # Don't expose internal errors outside development
    details = {"error": str(exc)} if settings.is_development else {}

    error = AppError("SYSTEM_INTERNAL_ERROR", details=details, correlation_id=correlation_id)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error.to_response(),
    )


@app.middleware("http")
async def request_timing_middleware(request: Request, call_next):
    """Logs request duration in debug mode."""
    start_time = time.time()
    try:
        return await call_next(request)
    finally:
        if settings.debug:
            duration = time.time() - start_time
            logger.debug(
                f"{request.method} {request.url.path} "
                f"completed in {duration:.3f}s"
            )


# Health check routes (no tenant required)
app.include_router(health.router)

# Agent-facing API
app.include_router(bookings.router, prefix="/api")
app.include_router(customers.router, prefix="/api")


@app.get("/", tags=["Root"])
async def root() -> dict:
    """Basic API information."""
    return {
        "name": settings.app_name,
        "version": health.VERSION,
        "status": "running",
        "environment": settings.app_env,
        "docs": "/docs" if settings.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
