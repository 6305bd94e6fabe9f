from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerlink.domain.models.platform_connection import ConnectionStatus, PlatformConnection


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def get_connection(db: Session, *, user_id: UUID, tenant_id: str) -> PlatformConnection | None:
    return db.execute(
        select(PlatformConnection).where(
            PlatformConnection.user_id == user_id,
            PlatformConnection.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()


def lock_connection(db: Session, *, connection_id: UUID) -> PlatformConnection | None:
    """Re-read a row under ``SELECT ... FOR UPDATE``, overwriting any stale copy in the session."""
    return db.execute(
        select(PlatformConnection)
        .where(PlatformConnection.id == connection_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def list_connections_for_user(db: Session, *, user_id: UUID) -> list[PlatformConnection]:
    return list(
        db.execute(
            select(PlatformConnection)
            .where(PlatformConnection.user_id == user_id)
            .order_by(PlatformConnection.created_at.asc(), PlatformConnection.tenant_id.asc())
        ).scalars()
    )


def _apply_authorization(
    row: PlatformConnection,
    *,
    tenant_name: str | None,
    encrypted_access_token: str,
    encrypted_refresh_token: str | None,
    expires_at: datetime,
    scopes: str | None,
    external_connection_id: str | None,
    grant_id: UUID | None,
    refreshed_at: datetime,
) -> None:
    if tenant_name and tenant_name.strip():
        row.tenant_name = tenant_name.strip()
    row.access_token = encrypted_access_token
    if encrypted_refresh_token:
        row.refresh_token = encrypted_refresh_token
    row.expires_at = expires_at
    row.scopes = scopes if scopes is not None else row.scopes
    row.external_connection_id = external_connection_id or row.external_connection_id
    row.grant_id = grant_id
    row.last_refreshed_at = refreshed_at
    row.mark_connected()


def upsert_connection(
    db: Session,
    *,
    user_id: UUID,
    tenant_id: str,
    tenant_name: str | None,
    encrypted_access_token: str,
    encrypted_refresh_token: str | None,
    expires_at: datetime,
    scopes: str | None,
    external_connection_id: str | None,
    grant_id: UUID | None,
    refreshed_at: datetime,
) -> tuple[PlatformConnection, bool]:
    """Insert or replace the row for (user_id, tenant_id); returns the row and whether it was created."""
    fields = {
        "tenant_name": tenant_name,
        "encrypted_access_token": encrypted_access_token,
        "encrypted_refresh_token": encrypted_refresh_token,
        "expires_at": expires_at,
        "scopes": scopes,
        "external_connection_id": external_connection_id,
        "grant_id": grant_id,
        "refreshed_at": refreshed_at,
    }
    row = get_connection(db, user_id=user_id, tenant_id=tenant_id)
    if row is not None:
        _apply_authorization(row, **fields)
        db.add(row)
        return row, False

    row = PlatformConnection(user_id=user_id, tenant_id=tenant_id)
    _apply_authorization(row, **fields)
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        # A concurrent callback for the same pair inserted first.
        row = get_connection(db, user_id=user_id, tenant_id=tenant_id)
        if row is None:
            raise
        _apply_authorization(row, **fields)
        db.add(row)
        return row, False
    return row, True


def lock_grant_connections(db: Session, *, connection: PlatformConnection) -> list[PlatformConnection]:
    """Lock every CONNECTED row holding the same grant as ``connection``, ``connection`` included."""
    if connection.grant_id is None:
        return [connection]
    rows = list(
        db.execute(
            select(PlatformConnection)
            .where(
                PlatformConnection.user_id == connection.user_id,
                PlatformConnection.grant_id == connection.grant_id,
                PlatformConnection.status == ConnectionStatus.CONNECTED.value,
            )
            .order_by(PlatformConnection.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars()
    )
    if connection not in rows:
        rows.append(connection)
    return rows


def apply_token_rotation(
    db: Session,
    *,
    connections: list[PlatformConnection],
    encrypted_access_token: str,
    encrypted_refresh_token: str | None,
    expires_at: datetime,
    refreshed_at: datetime,
) -> list[PlatformConnection]:
    for connection in connections:
        connection.access_token = encrypted_access_token
        if encrypted_refresh_token:
            connection.refresh_token = encrypted_refresh_token
        connection.expires_at = expires_at
        connection.last_refreshed_at = refreshed_at
        connection.mark_connected()
        db.add(connection)
    return connections


def mark_connection_disconnected(db: Session, *, connection: PlatformConnection, reason: str) -> PlatformConnection:
    connection.mark_disconnected(reason)
    db.add(connection)
    return connection
