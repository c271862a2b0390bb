"""Add control-loop lease columns so idle teams can be aborted directly."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0003"
down_revision = "20261017_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("teams", sa.Column("loop_owner", sa.String(), nullable=True))
    op.add_column(
        "teams",
        sa.Column(
            "loop_heartbeat_at",
            sa.DateTime(timezone=True),
            nullable=True,
        ),
    )


def downgrade() -> None:
    op.drop_column("teams", "loop_heartbeat_at")
    op.drop_column("teams", "loop_owner")
