"""
Rate Limiting Middleware

Per-client-IP sliding window with a Redis backend, an in-process fallback,
standard rate-limit headers and skip rules for health and docs.
"""

import logging

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app.core.errors import AppError
from app.infra.redis import get_rate_limiter_store

logger = logging.getLogger(__name__)

# Paths that skip rate limiting (health checks, docs)
RATE_LIMIT_SKIP_PATHS = {
    "/",
    "/docs",
    "/redoc",
    "/openapi.json",
}
RATE_LIMIT_SKIP_PREFIXES = ("/health",)

# Header names
HEADER_LIMIT = "X-RateLimit-Limit"
HEADER_REMAINING = "X-RateLimit-Remaining"
HEADER_USED = "X-RateLimit-Used"
HEADER_RESET = "X-RateLimit-Reset"
HEADER_RETRY_AFTER = "Retry-After"


def should_skip_rate_limit(request: Request) -> bool:
    """
    Check if request should skip rate limiting.

    Skips:
    - Health check endpoints
    - Documentation endpoints
    - OPTIONS requests (CORS preflight)
    """
    path = request.url.path
    if path in RATE_LIMIT_SKIP_PATHS or path.startswith(RATE_LIMIT_SKIP_PREFIXES):
        return True

    if request.method == "OPTIONS":
        return True

    return False


def client_ip(request: Request) -> str:
    """Client address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limit_headers(limit: int, remaining: int, used: int, reset_seconds: int) -> dict[str, str]:
    return {
        HEADER_LIMIT: str(limit),
        HEADER_REMAINING: str(remaining),
        HEADER_USED: str(used),
        HEADER_RESET: str(reset_seconds),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Enforces the sliding window per client IP and adds headers to every
    limited response. Registered only when rate limiting is active.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if should_skip_rate_limit(request):
            return await call_next(request)

        store = await get_rate_limiter_store()
        ip = client_ip(request)
        allowed, remaining, used, reset_seconds = await store.is_allowed(f"ip:{ip}")
        headers = rate_limit_headers(store.max_requests, remaining, used, reset_seconds)

        if not allowed:
            logger.warning(
                f"Rate limit exceeded | IP: {ip} | Limit: {store.max_requests} | "
                f"Used: {used} | Path: {request.url.path}"
            )
            error = AppError(
                "SYSTEM_RATE_LIMITED",
                message="Too many requests, please try again later",
                details={"limit": store.max_requests, "used": used, "retryAfter": reset_seconds},
                correlation_id=getattr(request.state, "correlation_id", None),
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content=error.to_response(),
                headers={**headers, HEADER_REMAINING: "0", HEADER_RETRY_AFTER: str(reset_seconds)},
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response
