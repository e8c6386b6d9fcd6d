"""Add agent_status table mirrored from health snapshots."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agent_status",
        sa.Column("agent_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_task_at", sa.String(), nullable=True),
        sa.Column("current_task", sa.Text(), nullable=True),
        sa.Column("uptime_seconds", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("agent_name"),
    )
    op.create_index("ix_agent_status_status", "agent_status", ["status"])


def downgrade() -> None:
    op.drop_index("ix_agent_status_status", table_name="agent_status")
    op.drop_table("agent_status")
