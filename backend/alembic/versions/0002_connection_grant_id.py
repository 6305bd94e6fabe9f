"""group connections by the authorization grant that issued their tokens

Revision ID: 0002_connection_grant_id
Revises: 0001_platform_connections
Create Date: 2026-10-19 14:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_connection_grant_id"
down_revision = "0001_platform_connections"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("platform_connections", sa.Column("grant_id", sa.Uuid(), nullable=True))
    op.create_index("ix_platform_connections_grant_id", "platform_connections", ["grant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_platform_connections_grant_id", table_name="platform_connections")
    op.drop_column("platform_connections", "grant_id")
