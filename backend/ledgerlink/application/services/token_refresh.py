import logging
import threading
from collections.abc import Callable, Hashable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta

from sqlalchemy.orm import Session

from ledgerlink.application.services.audit_service import (
    CONNECTION_DISCONNECTED,
    CONNECTION_REFRESHED,
    log_connection_event,
)
from ledgerlink.application.services.connection_store import (
    apply_token_rotation,
    as_utc,
    lock_connection,
    lock_grant_connections,
    mark_connection_disconnected,
)
from ledgerlink.core.security import CredentialCipher
from ledgerlink.domain.errors import (
    ConnectionDisconnectedError,
    ConnectionNotFoundError,
    EncryptionError,
    TransientRefreshError,
)
from ledgerlink.domain.models.platform_connection import PlatformConnection
from ledgerlink.infrastructure.logging.context import bind_log_context
from ledgerlink.infrastructure.observability.metrics import record_token_refresh
from ledgerlink.integrations.platform_client import AccountingPlatformClient, GrantRejectedError

logger = logging.getLogger("ledgerlink.refresh")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class KeyedLock:
    """One mutex per key, created on demand and dropped when nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable, *, timeout: float = -1) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[key] = entry
            entry[1] += 1
        lock: threading.Lock = entry[0]
        acquired = lock.acquire(timeout=timeout)
        try:
            if not acquired:
                raise TransientRefreshError("Timed out waiting for a concurrent token refresh")
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class TokenRefreshEngine:
    """Lazy refresh of platform access tokens, serialized per authorization grant.

    One callback can connect several tenants with a single token pair, so the
    lock key is the grant rather than the tenant. The first caller through
    rotates the tokens on every CONNECTED row of the grant in one commit; the
    rest re-read their row inside the lock, see the new expiry and return the
    stored token without calling the platform. A refresh token is never
    submitted twice, and no row is left holding one the platform has retired.
    """

    def __init__(
        self,
        cipher: CredentialCipher,
        client: AccountingPlatformClient,
        *,
        margin_seconds: int = 60,
        lock_timeout_seconds: float | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.cipher = cipher
        self.client = client
        self.margin = timedelta(seconds=margin_seconds)
        if lock_timeout_seconds is None:
            lock_timeout_seconds = client.config.timeout_seconds * 2 + 5
        self.lock_timeout_seconds = lock_timeout_seconds
        self.clock = clock
        self._locks = KeyedLock()

    def is_fresh(self, connection: PlatformConnection) -> bool:
        expires_at = as_utc(connection.expires_at)
        if expires_at is None:
            return False
        return expires_at >= self.clock() + self.margin

    def ensure_fresh(self, db: Session, connection: PlatformConnection) -> tuple[str, PlatformConnection]:
        if not connection.is_connected:
            raise ConnectionDisconnectedError(connection.tenant_id, connection.disconnect_reason)

        if self.is_fresh(connection):
            record_token_refresh("fresh")
            return self.cipher.decrypt(connection.access_token), connection

        connection_id = connection.id
        tenant_id = connection.tenant_id
        with bind_log_context(tenant_id=tenant_id), self._locks.hold(
            connection.grant_key, timeout=self.lock_timeout_seconds
        ):
            current = lock_connection(db, connection_id=connection_id)
            if current is None:
                db.rollback()
                raise ConnectionNotFoundError(f"Connection for tenant {tenant_id} no longer exists")
            if not current.is_connected:
                reason = current.disconnect_reason
                db.rollback()
                raise ConnectionDisconnectedError(tenant_id, reason)
            if self.is_fresh(current):
                # Another caller on this grant refreshed while this one waited for the lock.
                try:
                    access_token = self.cipher.decrypt(current.access_token)
                finally:
                    db.rollback()
                record_token_refresh("coalesced")
                return access_token, current
            siblings = lock_grant_connections(db, connection=current)
            return self._refresh_locked(db, current, siblings)

    def _refresh_locked(
        self,
        db: Session,
        connection: PlatformConnection,
        siblings: list[PlatformConnection],
    ) -> tuple[str, PlatformConnection]:
        connection_id = connection.id
        user_id = connection.user_id
        tenant_id = connection.tenant_id

        if not connection.refresh_token:
            self._disconnect(db, siblings, reason="refresh_token_missing")
            raise ConnectionDisconnectedError(tenant_id, "refresh_token_missing")
        try:
            refresh_token = self.cipher.decrypt(connection.refresh_token)
        except EncryptionError:
            db.rollback()
            logger.error(
                "token_refresh_decrypt_failed connection_id=%s user_id=%s tenant_id=%s",
                connection_id,
                user_id,
                tenant_id,
            )
            raise

        logger.info(
            "token_refresh_started connection_id=%s user_id=%s tenant_id=%s grant_id=%s tenants=%s expires_at=%s",
            connection_id,
            user_id,
            tenant_id,
            connection.grant_key,
            len(siblings),
            connection.expires_at,
        )
        try:
            grant = self.client.refresh(refresh_token)
        except GrantRejectedError as exc:
            self._disconnect(db, siblings, reason=exc.reason, status_code=exc.status_code)
            raise ConnectionDisconnectedError(tenant_id, exc.reason) from exc
        except TransientRefreshError:
            db.rollback()
            record_token_refresh("transient")
            logger.warning(
                "token_refresh_transient_failure connection_id=%s user_id=%s tenant_id=%s",
                connection_id,
                user_id,
                tenant_id,
            )
            raise
        except Exception:
            db.rollback()
            raise

        if grant.refresh_token is None:
            logger.warning(
                "token_refresh_no_rotation connection_id=%s tenant_id=%s keeping existing refresh token",
                connection_id,
                tenant_id,
            )

        now = self.clock()
        try:
            apply_token_rotation(
                db,
                connections=siblings,
                encrypted_access_token=self.cipher.encrypt(grant.access_token),
                encrypted_refresh_token=(
                    self.cipher.encrypt(grant.refresh_token) if grant.refresh_token else None
                ),
                expires_at=now + timedelta(seconds=grant.expires_in),
                refreshed_at=now,
            )
            for row in siblings:
                log_connection_event(
                    db,
                    user_id=user_id,
                    connection_id=row.id,
                    action=CONNECTION_REFRESHED,
                    metadata={
                        "tenant_id": row.tenant_id,
                        "expires_in": grant.expires_in,
                        "rotated": bool(grant.refresh_token),
                        "requested_by_tenant_id": tenant_id,
                    },
                )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception(
                "token_refresh_persist_failed connection_id=%s user_id=%s tenant_id=%s",
                connection_id,
                user_id,
                tenant_id,
            )
            raise

        record_token_refresh("refreshed")
        logger.info(
            "token_refresh_succeeded connection_id=%s user_id=%s tenant_id=%s tenants=%s expires_in=%s",
            connection_id,
            user_id,
            tenant_id,
            len(siblings),
            grant.expires_in,
        )
        return grant.access_token, connection

    def _disconnect(
        self,
        db: Session,
        connections: list[PlatformConnection],
        *,
        reason: str,
        status_code: int | None = None,
    ) -> None:
        """Demote every row of a grant the platform will no longer refresh."""
        demoted = [(row.id, row.user_id, row.tenant_id) for row in connections]
        try:
            for row in connections:
                mark_connection_disconnected(db, connection=row, reason=reason)
                log_connection_event(
                    db,
                    user_id=row.user_id,
                    connection_id=row.id,
                    action=CONNECTION_DISCONNECTED,
                    metadata={"tenant_id": row.tenant_id, "reason": reason, "status_code": status_code},
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        record_token_refresh("disconnected")
        for connection_id, user_id, tenant_id in demoted:
            logger.error(
                "token_refresh_rejected connection_id=%s user_id=%s tenant_id=%s reason=%s status_code=%s "
                "marked DISCONNECTED; re-authorization required",
                connection_id,
                user_id,
                tenant_id,
                reason,
                status_code,
            )
