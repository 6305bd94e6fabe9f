import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from ledgerlink.infrastructure.db.base import Base


class ConnectionStatus(StrEnum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"


class PlatformConnection(Base):
    """One local user's grant to one accounting-platform organization.

    ``access_token`` and ``refresh_token`` hold ciphertext only.
    """

    __tablename__ = "platform_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "tenant_id", name="uq_platform_connections_user_tenant"),
        CheckConstraint("status IN ('CONNECTED', 'DISCONNECTED')", name="ck_platform_connections_status"),
        CheckConstraint(
            "status = 'CONNECTED' OR disconnect_reason IS NOT NULL",
            name="ck_platform_connections_disconnect_reason",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str] = mapped_column(String(4096), nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(String(4096), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scopes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ConnectionStatus.CONNECTED.value)
    disconnect_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    external_connection_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Rows written by the same callback share one refresh token and rotate together.
    grant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    last_refreshed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def grant_key(self) -> uuid.UUID:
        return self.grant_id or self.id

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED.value

    def mark_connected(self) -> None:
        self.status = ConnectionStatus.CONNECTED.value
        self.disconnect_reason = None

    def mark_disconnected(self, reason: str) -> None:
        self.status = ConnectionStatus.DISCONNECTED.value
        self.disconnect_reason = reason[:500]

    def __repr__(self) -> str:
        return (
            f"PlatformConnection(id={self.id}, user_id={self.user_id}, "
            f"tenant_id={self.tenant_id}, status={self.status})"
        )
