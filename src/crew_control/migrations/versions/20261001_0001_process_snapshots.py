"""Create process snapshot table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "process_snapshots",
        sa.Column("process_id", sa.String(), primary_key=True),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("restarts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("saved_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_process_snapshots_worker_id", "process_snapshots", ["worker_id"])
    op.create_index("ix_process_snapshots_task_id", "process_snapshots", ["task_id"])


def downgrade() -> None:
    op.drop_index("ix_process_snapshots_task_id", table_name="process_snapshots")
    op.drop_index("ix_process_snapshots_worker_id", table_name="process_snapshots")
    op.drop_table("process_snapshots")
