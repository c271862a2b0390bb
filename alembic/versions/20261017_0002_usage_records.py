"""Add per-call reasoning engine token/cost accounting table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0002"
down_revision = "20261017_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "usage_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completion_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.team_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "prompt_tokens >= 0 AND completion_tokens >= 0",
            name="ck_usage_records_positive_tokens",
        ),
        sa.CheckConstraint("cost_usd >= 0", name="ck_usage_records_positive_cost"),
    )
    op.create_index("ix_usage_records_task_id", "usage_records", ["task_id"], unique=False)
    op.create_index(
        "idx_usage_records_team_time",
        "usage_records",
        ["team_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_usage_records_team_time", table_name="usage_records")
    op.drop_index("ix_usage_records_task_id", table_name="usage_records")
    op.drop_table("usage_records")
