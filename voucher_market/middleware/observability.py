from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from voucher_market.core.logging_setup import SECURITY_LOGGER_NAME
from voucher_market.core.metrics import request_metrics
from voucher_market.core.request_context import clear_request_context, set_request_context

logger = logging.getLogger(__name__)
security_logger = logging.getLogger(SECURITY_LOGGER_NAME)

_SECURITY_EVENTS = {
    401: "unauthorized",
    403: "forbidden",
    429: "rate_limited",
}


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        set_request_context(request_id=request_id)

        status_code = 500
        endpoint = request.url.path
        method = request.method

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            user_id, role = _extract_user(request)
            duration_ms = round((time.perf_counter() - start) * 1000, 2)

            set_request_context(user_id=user_id, role=role)
            request_metrics.observe(
                endpoint=endpoint,
                method=method,
                status_code=status_code,
                duration_ms=duration_ms,
                role=role,
            )

            logger.info(
                "request completed",
                extra={
                    "request_id": request_id,
                    "user_id": user_id,
                    "role": role,
                    "endpoint": endpoint,
                    "method": method,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                },
            )

            event = _SECURITY_EVENTS.get(status_code)
            if event:
                security_logger.warning(
                    "security event %s",
                    event,
                    extra={
                        "event": event,
                        "endpoint": endpoint,
                        "method": method,
                        "status_code": status_code,
                        "client_ip": client_ip(request),
                    },
                )

            if "response" in locals():
                response.headers["X-Request-ID"] = request_id

            clear_request_context()


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _extract_user(request: Request) -> tuple[str | None, str | None]:
    user = getattr(request.state, "user", None)
    if user is None:
        return None, None
    user_id = getattr(user, "id", None)
    role = getattr(user, "role", None)
    return (str(user_id) if user_id is not None else None), role
