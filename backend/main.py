import json
import logging
import logging.config
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ledgerlink.core.config import settings
from ledgerlink.core.security import build_credential_cipher
from ledgerlink.domain import models  # noqa: F401
from ledgerlink.domain.errors import (
    AuthorizationError,
    ConnectionDisconnectedError,
    ConnectionLifecycleError,
    ConnectionNotFoundError,
    EncryptionError,
    PlatformConfigurationError,
    TenantResolutionError,
    TransientRefreshError,
)
from ledgerlink.interfaces.api.router import api_router
from ledgerlink.interfaces.http.middleware import (
    MetricsMiddleware,
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    UserContextMiddleware,
)

logging_config_path = Path(__file__).with_name("logging.json")
if logging_config_path.exists():
    logging.config.dictConfig(json.loads(logging_config_path.read_text(encoding="utf-8")))
else:
    logging.basicConfig(level=logging.INFO)

logger = logging.getLogger("ledgerlink")

LIFECYCLE_ERROR_STATUS = (
    (ConnectionNotFoundError, 404),
    (ConnectionDisconnectedError, 409),
    (TransientRefreshError, 503),
    (AuthorizationError, 400),
    (TenantResolutionError, 400),
    (PlatformConfigurationError, 500),
    (EncryptionError, 500),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    # A missing or short encryption secret must stop the process before it serves traffic.
    build_credential_cipher()
    yield


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(UserContextMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(MetricsMiddleware)


def _error_payload(*, request: Request, error_code: str, message: str) -> dict:
    trace_id = getattr(request.state, "request_id", None)
    return {
        "error_code": error_code,
        "message": message,
        "trace_id": trace_id,
    }


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict) and "error_code" in exc.detail and "message" in exc.detail:
        error_code = str(exc.detail["error_code"])
        detail = str(exc.detail["message"])
    else:
        error_code = str(exc.status_code)
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(request=request, error_code=error_code, message=detail),
        headers=exc.headers,
    )


@app.exception_handler(ConnectionLifecycleError)
async def connection_lifecycle_exception_handler(request: Request, exc: ConnectionLifecycleError) -> JSONResponse:
    status_code = next((code for error_type, code in LIFECYCLE_ERROR_STATUS if isinstance(exc, error_type)), 500)
    if status_code >= 500:
        logger.error(
            "connection_lifecycle_error path=%s error_code=%s reason=%s",
            request.url.path,
            exc.error_code,
            exc.reason,
        )
        message = "Accounting platform integration is unavailable"
    else:
        message = str(exc)
    if isinstance(exc, TransientRefreshError):
        message = "Accounting platform is temporarily unavailable, retry later"
    return JSONResponse(
        status_code=status_code,
        content=_error_payload(request=request, error_code=exc.error_code, message=message),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=_error_payload(
            request=request,
            error_code="validation_error",
            message="Request validation failed",
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s method=%s", request.url.path, request.method)
    return JSONResponse(
        status_code=500,
        content=_error_payload(
            request=request,
            error_code="internal_server_error",
            message="Internal server error",
        ),
    )


app.include_router(api_router)
