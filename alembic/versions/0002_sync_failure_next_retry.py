"""track the pending retry on sync failures

Revision ID: 0002_sync_failure_next_retry
Revises: 0001_initial
Create Date: 2026-10-20
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0002_sync_failure_next_retry"
down_revision: str | None = "0001_initial"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("sync_failures", sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index("ix_sync_failures_next_retry_at", "sync_failures", ["next_retry_at"])


def downgrade() -> None:
    op.drop_index("ix_sync_failures_next_retry_at", table_name="sync_failures")
    op.drop_column("sync_failures", "next_retry_at")
