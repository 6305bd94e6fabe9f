from uuid import UUID

from sqlalchemy.orm import Session

from ledgerlink.domain.models.connection_audit_log import ConnectionAuditLog

CONNECTION_CONNECTED = "connection.connected"
CONNECTION_REFRESHED = "connection.refreshed"
CONNECTION_DISCONNECTED = "connection.disconnected"


def log_connection_event(
    db: Session,
    *,
    user_id: UUID,
    connection_id: UUID | None,
    action: str,
    metadata: dict | None = None,
) -> None:
    db.add(
        ConnectionAuditLog(
            user_id=user_id,
            connection_id=connection_id,
            action=action,
            metadata_json=metadata or {},
        )
    )
