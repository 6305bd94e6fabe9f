import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from ledgerlink.application.services.audit_service import CONNECTION_CONNECTED, log_connection_event
from ledgerlink.application.services.connection_store import upsert_connection
from ledgerlink.application.services.token_refresh import Clock, utc_now
from ledgerlink.core.config import PlatformConfig
from ledgerlink.core.security import CredentialCipher
from ledgerlink.domain.errors import (
    AuthorizationError,
    ConnectionLifecycleError,
    TenantResolutionError,
)
from ledgerlink.domain.models.platform_connection import PlatformConnection
from ledgerlink.domain.models.user import User
from ledgerlink.integrations.oauth_state import create_oauth_state, verify_oauth_state
from ledgerlink.integrations.platform_client import AccountingPlatformClient, GrantRejectedError

logger = logging.getLogger("ledgerlink.authorization")

_REASON_CODE_PATTERN = re.compile(r"[^a-z0-9_]+")


def normalize_reason_code(value: str | None, default: str = "authorization_failed") -> str:
    code = _REASON_CODE_PATTERN.sub("_", (value or "").strip().lower()).strip("_")
    return code[:64] or default


@dataclass(frozen=True)
class Authorized:
    connections: list[PlatformConnection] = field(default_factory=list)

    @property
    def tenant_id(self) -> str:
        return self.connections[0].tenant_id


@dataclass(frozen=True)
class TenantMissing:
    reason: str = TenantResolutionError.error_code


@dataclass(frozen=True)
class Failed:
    reason: str
    error: Exception | None = None


CallbackResult = Authorized | TenantMissing | Failed


class AuthorizationFlowHandler:
    def __init__(
        self,
        config: PlatformConfig,
        cipher: CredentialCipher,
        client: AccountingPlatformClient,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.cipher = cipher
        self.client = client
        self.clock = clock

    def build_authorize_url(self, user_id: UUID) -> str:
        state = create_oauth_state(
            user_id=user_id,
            secret=self.config.state_secret,
            ttl_seconds=self.config.state_ttl_seconds,
            now=int(self.clock().timestamp()),
        )
        url = self.client.build_authorize_url(state)
        logger.info("authorize_url_built user_id=%s scopes=%s", user_id, self.config.scope_string)
        return url

    def complete_authorization(self, db: Session, *, code: str, state: str) -> list[PlatformConnection]:
        """Validate the callback, exchange the code and upsert one connection per returned tenant.

        State is checked before any network call or write, so a tampered or
        expired state leaves the store untouched.
        """
        payload = verify_oauth_state(state, secret=self.config.state_secret, now=int(self.clock().timestamp()))
        user_id = payload.user_id
        if db.get(User, user_id) is None:
            raise AuthorizationError("OAuth state refers to an unknown user", reason="unknown_user")
        if not code:
            raise AuthorizationError("Authorization code missing", reason="code_missing")

        try:
            grant = self.client.exchange_code(code)
        except GrantRejectedError as exc:
            reason = "invalid_grant" if exc.reason == "invalid_grant" else "code_exchange_failed"
            logger.warning(
                "authorization_code_rejected user_id=%s reason=%s status_code=%s",
                user_id,
                reason,
                exc.status_code,
            )
            raise AuthorizationError("Authorization code is invalid or expired", reason=reason) from exc

        if grant.refresh_token is None:
            logger.warning(
                "authorization_without_refresh_token user_id=%s scopes=%s offline access was not granted",
                user_id,
                grant.scope,
            )

        try:
            tenants = self.client.list_tenants(grant.access_token)
        except GrantRejectedError as exc:
            raise AuthorizationError(
                "Platform rejected the freshly issued access token", reason="access_token_rejected"
            ) from exc
        if not tenants:
            logger.error("authorization_without_tenant user_id=%s", user_id)
            raise TenantResolutionError(
                "No organization was selected during authorization; reconnect and choose an organization"
            )

        now = self.clock()
        expires_at = now + timedelta(seconds=grant.expires_in)
        encrypted_access_token = self.cipher.encrypt(grant.access_token)
        encrypted_refresh_token = self.cipher.encrypt(grant.refresh_token) if grant.refresh_token else None
        scopes = grant.scope or self.config.scope_string
        grant_id = uuid4()

        saved: list[PlatformConnection] = []
        try:
            for tenant in tenants:
                row, created = upsert_connection(
                    db,
                    user_id=user_id,
                    tenant_id=tenant.tenant_id,
                    tenant_name=tenant.tenant_name,
                    encrypted_access_token=encrypted_access_token,
                    encrypted_refresh_token=encrypted_refresh_token,
                    expires_at=expires_at,
                    scopes=scopes,
                    external_connection_id=tenant.connection_id,
                    grant_id=grant_id,
                    refreshed_at=now,
                )
                db.flush()
                log_connection_event(
                    db,
                    user_id=user_id,
                    connection_id=row.id,
                    action=CONNECTION_CONNECTED,
                    metadata={"tenant_id": tenant.tenant_id, "created": created, "scopes": scopes},
                )
                saved.append(row)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("authorization_persist_failed user_id=%s tenants=%s", user_id, len(tenants))
            raise

        for row in saved:
            db.refresh(row)
        logger.info(
            "authorization_completed user_id=%s grant_id=%s tenant_ids=%s",
            user_id,
            grant_id,
            ",".join(row.tenant_id for row in saved),
        )
        return saved

    def handle_callback(
        self,
        db: Session,
        *,
        code: str | None,
        state: str | None,
        error: str | None = None,
    ) -> CallbackResult:
        if error:
            return Failed(reason=normalize_reason_code(error, default="access_denied"))
        if not code or not state:
            return Failed(reason="missing_oauth_params")
        try:
            connections = self.complete_authorization(db, code=code, state=state)
        except TenantResolutionError as exc:
            return TenantMissing(reason=exc.reason)
        except ConnectionLifecycleError as exc:
            logger.warning("authorization_callback_failed reason=%s", exc.reason)
            return Failed(reason=exc.reason, error=exc)
        return Authorized(connections=connections)
