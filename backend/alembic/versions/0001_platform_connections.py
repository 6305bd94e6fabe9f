"""users, platform connections and connection audit log

Revision ID: 0001_platform_connections
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_platform_connections"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "platform_connections",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("tenant_name", sa.String(length=255), nullable=True),
        sa.Column("access_token", sa.String(length=4096), nullable=False),
        sa.Column("refresh_token", sa.String(length=4096), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scopes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="CONNECTED"),
        sa.Column("disconnect_reason", sa.String(length=500), nullable=True),
        sa.Column("external_connection_id", sa.String(length=255), nullable=True),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "tenant_id", name="uq_platform_connections_user_tenant"),
        sa.CheckConstraint(
            "status IN ('CONNECTED', 'DISCONNECTED')",
            name="ck_platform_connections_status",
        ),
        sa.CheckConstraint(
            "status = 'CONNECTED' OR disconnect_reason IS NOT NULL",
            name="ck_platform_connections_disconnect_reason",
        ),
    )
    op.create_index("ix_platform_connections_user_id", "platform_connections", ["user_id"], unique=False)

    op.create_table(
        "connection_audit_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("connection_id", sa.Uuid(), nullable=True),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["connection_id"], ["platform_connections.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_connection_audit_logs_user_id", "connection_audit_logs", ["user_id"], unique=False)
    op.create_index(
        "ix_connection_audit_logs_connection_id", "connection_audit_logs", ["connection_id"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_connection_audit_logs_connection_id", table_name="connection_audit_logs")
    op.drop_index("ix_connection_audit_logs_user_id", table_name="connection_audit_logs")
    op.drop_table("connection_audit_logs")
    op.drop_index("ix_platform_connections_user_id", table_name="platform_connections")
    op.drop_table("platform_connections")
    op.drop_table("users")
