"""Scope workflow steps to the decomposition cycle that created them."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0003"
down_revision = "20261018_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "tasks",
        sa.Column("workflow_cycle", sa.Integer(), nullable=True),
    )
    op.execute(
        sa.text(
            """
            UPDATE tasks
            SET workflow_cycle = 1
            WHERE parent_task_id IS NOT NULL AND workflow_cycle IS NULL
            """,
        ),
    )
    op.create_index(
        "idx_tasks_parent_cycle",
        "tasks",
        ["parent_task_id", "workflow_cycle"],
    )


def downgrade() -> None:
    op.drop_index("idx_tasks_parent_cycle", table_name="tasks")
    with op.batch_alter_table("tasks") as batch_op:
        batch_op.drop_column("workflow_cycle")
