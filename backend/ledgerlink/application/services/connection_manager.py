import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from ledgerlink.application.services.audit_service import CONNECTION_DISCONNECTED, log_connection_event
from ledgerlink.application.services.authorization_flow import AuthorizationFlowHandler, CallbackResult
from ledgerlink.application.services.connection_store import (
    as_utc,
    get_connection,
    list_connections_for_user,
    lock_connection,
    mark_connection_disconnected,
)
from ledgerlink.application.services.token_refresh import Clock, TokenRefreshEngine, utc_now
from ledgerlink.core.config import PlatformConfig
from ledgerlink.core.security import CredentialCipher
from ledgerlink.domain.errors import (
    ConnectionDisconnectedError,
    ConnectionLifecycleError,
    ConnectionNotFoundError,
    EncryptionError,
)
from ledgerlink.domain.models.platform_connection import PlatformConnection
from ledgerlink.integrations.platform_client import AccountingPlatformClient, GrantRejectedError

logger = logging.getLogger("ledgerlink.connections")

USER_REVOKED = "user_revoked"
PLATFORM_CONNECTION_REMOVED = "platform_connection_removed"


@dataclass(frozen=True)
class ConnectionSummary:
    tenant_id: str
    tenant_name: str
    connected: bool
    status: str
    disconnect_reason: str | None
    message: str
    expires_at: datetime | None
    last_refreshed_at: datetime | None

    def as_dict(self) -> dict:
        return {
            "tenantId": self.tenant_id,
            "tenantName": self.tenant_name,
            "connected": self.connected,
            "status": self.status,
            "disconnectReason": self.disconnect_reason,
            "message": self.message,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "lastRefreshedAt": self.last_refreshed_at.isoformat() if self.last_refreshed_at else None,
        }


@dataclass(frozen=True)
class StatusReport:
    connections: list[ConnectionSummary]

    @property
    def total_connections(self) -> int:
        return len(self.connections)

    def as_dict(self) -> dict:
        return {
            "connections": [item.as_dict() for item in self.connections],
            "totalConnections": self.total_connections,
        }


def _summarize(
    connection: PlatformConnection,
    *,
    connected: bool | None = None,
    message: str | None = None,
) -> ConnectionSummary:
    is_connected = connection.is_connected if connected is None else connected
    if message is None:
        message = "Connected" if is_connected else f"Reconnect required: {connection.disconnect_reason}"
    return ConnectionSummary(
        tenant_id=connection.tenant_id,
        tenant_name=connection.tenant_name or connection.tenant_id,
        connected=is_connected,
        status=connection.status,
        disconnect_reason=connection.disconnect_reason,
        message=message,
        expires_at=as_utc(connection.expires_at),
        last_refreshed_at=as_utc(connection.last_refreshed_at),
    )


class ConnectionLifecycleManager:
    """Entry point for everything else in the service that needs a platform connection.

    Owns the cipher; plaintext tokens exist only in memory inside calls made
    through this object and are never logged.
    """

    def __init__(
        self,
        config: PlatformConfig,
        cipher: CredentialCipher,
        client: AccountingPlatformClient | None = None,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.client = client or AccountingPlatformClient(config)
        self.authorization = AuthorizationFlowHandler(config, cipher, self.client, clock=clock)
        self.refresh_engine = TokenRefreshEngine(
            cipher,
            self.client,
            margin_seconds=config.refresh_margin_seconds,
            clock=clock,
        )

    def build_authorize_url(self, user_id: UUID) -> str:
        return self.authorization.build_authorize_url(user_id)

    def handle_callback(
        self, db: Session, *, code: str | None, state: str | None, error: str | None = None
    ) -> CallbackResult:
        return self.authorization.handle_callback(db, code=code, state=state, error=error)

    def _require_connection(self, db: Session, *, user_id: UUID, tenant_id: str) -> PlatformConnection:
        connection = get_connection(db, user_id=user_id, tenant_id=tenant_id)
        if connection is None:
            raise ConnectionNotFoundError(f"No connection for tenant {tenant_id}")
        return connection

    def get_usable_token(self, db: Session, *, user_id: UUID, tenant_id: str) -> str:
        connection = self._require_connection(db, user_id=user_id, tenant_id=tenant_id)
        access_token, _ = self.refresh_engine.ensure_fresh(db, connection)
        return access_token

    def list_connections(self, db: Session, *, user_id: UUID) -> list[ConnectionSummary]:
        return [_summarize(row) for row in list_connections_for_user(db, user_id=user_id)]

    def connection_status(self, db: Session, *, user_id: UUID, validate: bool = False) -> StatusReport:
        if not validate:
            return StatusReport(connections=self.list_connections(db, user_id=user_id))

        summaries: list[ConnectionSummary] = []
        for row in list_connections_for_user(db, user_id=user_id):
            summaries.append(self._validated_summary(db, row))
        return StatusReport(connections=summaries)

    def _validated_summary(self, db: Session, connection: PlatformConnection) -> ConnectionSummary:
        if not connection.is_connected:
            return _summarize(connection)
        try:
            found = self.verify_connection(db, connection)
        except ConnectionDisconnectedError as exc:
            db.refresh(connection)
            return _summarize(connection, connected=False, message=f"Reconnect required: {exc.disconnect_reason}")
        except EncryptionError:
            # Undecryptable tokens mean a wrong or rotated key, not a platform problem.
            db.rollback()
            raise
        except ConnectionLifecycleError as exc:
            db.refresh(connection)
            return _summarize(connection, connected=False, message=f"Temporarily unavailable: {exc}")
        db.refresh(connection)
        if not found:
            return _summarize(connection, connected=False, message="Not found on platform")
        return _summarize(connection)

    def verify_connection(self, db: Session, connection: PlatformConnection) -> bool:
        """Check that the platform still lists this tenant for the stored grant.

        A tenant missing from the list means the organization was disconnected
        on the platform side; the row is demoted so later calls fail fast.
        """
        access_token, connection = self.refresh_engine.ensure_fresh(db, connection)
        try:
            tenants = self.client.list_tenants(access_token)
        except GrantRejectedError as exc:
            logger.warning(
                "connection_verify_token_rejected connection_id=%s tenant_id=%s status_code=%s",
                connection.id,
                connection.tenant_id,
                exc.status_code,
            )
            return False

        match = next((tenant for tenant in tenants if tenant.tenant_id == connection.tenant_id), None)
        if match is None:
            self._demote(db, connection, reason=PLATFORM_CONNECTION_REMOVED)
            return False

        changed = False
        if match.connection_id and match.connection_id != connection.external_connection_id:
            logger.info(
                "connection_external_id_changed connection_id=%s tenant_id=%s",
                connection.id,
                connection.tenant_id,
            )
            connection.external_connection_id = match.connection_id
            changed = True
        if match.tenant_name and match.tenant_name != connection.tenant_name:
            connection.tenant_name = match.tenant_name
            changed = True
        if changed:
            db.add(connection)
            db.commit()
        return True

    def disconnect(
        self,
        db: Session,
        *,
        user_id: UUID,
        tenant_id: str,
        reason: str = USER_REVOKED,
        notify_platform: bool = True,
    ) -> PlatformConnection:
        connection = self._require_connection(db, user_id=user_id, tenant_id=tenant_id)
        if not connection.is_connected:
            logger.info(
                "connection_disconnect_noop connection_id=%s tenant_id=%s reason=%s",
                connection.id,
                tenant_id,
                connection.disconnect_reason,
            )
            return connection

        access_token = None
        external_connection_id = connection.external_connection_id
        if notify_platform and external_connection_id:
            access_token = self._best_effort_token(db, connection)

        connection = self._demote(db, connection, reason=reason)

        if access_token and external_connection_id:
            removed = self.client.remove_connection(access_token, external_connection_id)
            logger.info(
                "connection_platform_revoke connection_id=%s tenant_id=%s removed=%s",
                connection.id,
                tenant_id,
                removed,
            )
        return connection

    def _best_effort_token(self, db: Session, connection: PlatformConnection) -> str | None:
        try:
            access_token, _ = self.refresh_engine.ensure_fresh(db, connection)
        except EncryptionError:
            raise
        except ConnectionLifecycleError as exc:
            logger.info(
                "connection_platform_revoke_skipped connection_id=%s tenant_id=%s reason=%s",
                connection.id,
                connection.tenant_id,
                exc.reason,
            )
            return None
        return access_token

    def _demote(self, db: Session, connection: PlatformConnection, *, reason: str) -> PlatformConnection:
        connection_id = connection.id
        current = lock_connection(db, connection_id=connection_id)
        if current is None:
            db.rollback()
            raise ConnectionNotFoundError(f"Connection {connection_id} no longer exists")
        try:
            mark_connection_disconnected(db, connection=current, reason=reason)
            log_connection_event(
                db,
                user_id=current.user_id,
                connection_id=connection_id,
                action=CONNECTION_DISCONNECTED,
                metadata={"tenant_id": current.tenant_id, "reason": reason},
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(current)
        logger.info(
            "connection_disconnected connection_id=%s user_id=%s tenant_id=%s reason=%s",
            connection_id,
            current.user_id,
            current.tenant_id,
            reason,
        )
        return current
