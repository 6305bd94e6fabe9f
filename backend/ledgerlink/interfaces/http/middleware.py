from time import perf_counter
from uuid import UUID, uuid4

import jwt
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from ledgerlink.core.config import settings
from ledgerlink.core.security import decode_token
from ledgerlink.infrastructure.logging.context import bind_log_context
from ledgerlink.infrastructure.observability.metrics import record_request


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization") or ""
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return request.cookies.get(settings.auth_cookie_name)


def _token_subject(raw_token: str | None) -> UUID | None:
    if not raw_token:
        return None
    try:
        return UUID(str(decode_token(raw_token).get("sub")))
    except (jwt.PyJWTError, ValueError):
        return None


class UserContextMiddleware(BaseHTTPMiddleware):
    """Binds the caller's user id to the log context; authorization itself happens in deps."""

    async def dispatch(self, request: Request, call_next):
        with bind_log_context(user_id=_token_subject(_bearer_token(request))):
            return await call_next(request)


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        started_at = perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            path = getattr(route, "path", None) or request.url.path
            record_request(
                method=request.method,
                path=path,
                status_code=status_code,
                duration_seconds=perf_counter() - started_at,
            )


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        with bind_log_context(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none'; object-src 'none';"
        return response
