"""enforce one live file entry per path and storage key

Revision ID: 0002_live_path_uniqueness
Revises: 0001_init
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_live_path_uniqueness"
down_revision = "0001_init"
branch_labels = None
depends_on = None

_LIVE = "deleted_at IS NULL"
_LIVE_WITH_KEY = "deleted_at IS NULL AND storage_key IS NOT NULL"


def upgrade() -> None:
    # Soft-deleted rows keep their old path and key, so only live rows are constrained.
    op.create_index(
        "uq_files_tenant_live_path",
        "files",
        ["tenant_id", "path"],
        unique=True,
        postgresql_where=sa.text(_LIVE),
        sqlite_where=sa.text(_LIVE),
    )
    # Moved files keep their key, so the key is constrained separately from the path.
    op.create_index(
        "uq_files_tenant_live_storage_key",
        "files",
        ["tenant_id", "storage_key"],
        unique=True,
        postgresql_where=sa.text(_LIVE_WITH_KEY),
        sqlite_where=sa.text(_LIVE_WITH_KEY),
    )


def downgrade() -> None:
    op.drop_index("uq_files_tenant_live_storage_key", table_name="files")
    op.drop_index("uq_files_tenant_live_path", table_name="files")
