from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from voucher_market.core.rate_limiter import DEFAULT_SCOPE, InMemoryRateLimiterService, RateLimiterService
from voucher_market.middleware.observability import client_ip

_SCOPED_PATHS = {
    "/auth/login": "auth",
    "/auth/register": "auth",
    "/api/payments/payfast": "payment",
}

_EXEMPT_PATHS = {"/health", "/"}


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, *, rate_limiter: RateLimiterService | None = None) -> None:
        super().__init__(app)
        self._rate_limiter = rate_limiter or InMemoryRateLimiterService()

    async def dispatch(self, request: Request, call_next):
        endpoint = request.url.path.rstrip("/") or "/"
        if endpoint in _EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        scope = resolve_scope(endpoint)
        decision = self._rate_limiter.check(client_id=client_ip(request), scope=scope)
        if not decision.allowed:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests, please try again later", "code": "RATE_LIMITED"},
                headers={
                    "Retry-After": str(decision.retry_after_seconds),
                    "X-RateLimit-Limit": str(decision.limit),
                    "X-RateLimit-Remaining": str(decision.remaining),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response


def resolve_scope(path: str) -> str:
    return _SCOPED_PATHS.get(path, DEFAULT_SCOPE)
