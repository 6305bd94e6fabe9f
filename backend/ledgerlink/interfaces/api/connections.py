import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ledgerlink.application.services.authorization_flow import Authorized, Failed, TenantMissing
from ledgerlink.application.services.connection_manager import USER_REVOKED, ConnectionLifecycleManager
from ledgerlink.domain.models.user import User
from ledgerlink.infrastructure.db.session import get_db
from ledgerlink.interfaces.api.deps import get_connection_manager, get_current_user

logger = logging.getLogger("ledgerlink.api")

router = APIRouter(prefix="/integrations/platform", tags=["platform-connections"])


class DisconnectRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=255)
    reason: str = Field(default=USER_REVOKED, pattern="^[a-z0-9_]{1,64}$")


def _frontend_redirect(manager: ConnectionLifecycleManager, **params: str) -> RedirectResponse:
    base_url = manager.config.frontend_base_url.rstrip("/")
    url = f"{base_url}{manager.config.connected_path}?{urlencode(params)}"
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.get("/connect")
def connect(
    redirect: bool = Query(default=True),
    current_user: User = Depends(get_current_user),
    manager: ConnectionLifecycleManager = Depends(get_connection_manager),
):
    authorization_url = manager.build_authorize_url(current_user.id)
    if redirect:
        return RedirectResponse(url=authorization_url, status_code=status.HTTP_302_FOUND)
    return {"authorization_url": authorization_url}


@router.get("/callback")
def callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    db: Session = Depends(get_db),
    manager: ConnectionLifecycleManager = Depends(get_connection_manager),
):
    try:
        result = manager.handle_callback(db, code=code, state=state, error=error)
    except Exception:
        logger.exception("platform_callback_unhandled_error")
        result = Failed(reason="internal_error")

    match result:
        case Authorized():
            return _frontend_redirect(manager, success="true", tenantId=result.tenant_id)
        case TenantMissing(reason=reason) | Failed(reason=reason):
            return _frontend_redirect(manager, success="false", error=reason)


@router.get("/status", status_code=status.HTTP_200_OK)
def connection_status(
    validate: bool = Query(default=False),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    manager: ConnectionLifecycleManager = Depends(get_connection_manager),
) -> dict:
    report = manager.connection_status(db, user_id=current_user.id, validate=validate)
    return report.as_dict()


@router.post("/disconnect", status_code=status.HTTP_200_OK)
def disconnect(
    payload: DisconnectRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    manager: ConnectionLifecycleManager = Depends(get_connection_manager),
) -> dict:
    connection = manager.disconnect(db, user_id=current_user.id, tenant_id=payload.tenant_id, reason=payload.reason)
    return {
        "success": True,
        "tenantId": connection.tenant_id,
        "status": connection.status,
        "disconnectReason": connection.disconnect_reason,
        "message": "Disconnected from accounting platform",
    }


@router.get("/config-check", status_code=status.HTTP_200_OK)
def config_check(manager: ConnectionLifecycleManager = Depends(get_connection_manager)) -> dict:
    config = manager.config
    return {
        "clientIdConfigured": bool(config.client_id),
        "clientSecretConfigured": bool(config.client_secret),
        "redirectUri": config.redirect_uri,
        "scopes": list(config.scopes),
        "configured": config.is_complete,
    }
