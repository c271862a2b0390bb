"""Initial team orchestration schema: teams, members, tasks, checkpoints, revisions."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:  # noqa: PLR0915
    op.create_table(
        "teams",
        sa.Column("team_id", sa.String(), nullable=False),
        sa.Column("goal", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("failure_policy", sa.String(), nullable=False, server_default="continue"),
        sa.Column("review_mode", sa.String(), nullable=False, server_default="auto"),
        sa.Column("budget_limit_usd", sa.Float(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("abort_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("team_id"),
        sa.CheckConstraint(
            "budget_limit_usd IS NULL OR budget_limit_usd > 0",
            name="ck_teams_positive_budget",
        ),
    )
    op.create_index("ix_teams_status", "teams", ["status"], unique=False)
    op.create_index("ix_teams_created_at", "teams", ["created_at"], unique=False)

    op.create_table(
        "team_members",
        sa.Column("member_id", sa.String(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("specialization", sa.String(), nullable=False),
        sa.Column("skills_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("current_workload", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_concurrent_tasks", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.team_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("member_id"),
        sa.CheckConstraint(
            "current_workload >= 0 AND current_workload <= max_concurrent_tasks",
            name="ck_team_members_valid_workload",
        ),
    )
    op.create_index("ix_team_members_team_id", "team_members", ["team_id"], unique=False)
    op.create_index("ix_team_members_role", "team_members", ["role"], unique=False)
    op.create_index("ix_team_members_status", "team_members", ["status"], unique=False)

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=False),
        sa.Column("parent_task_id", sa.String(), nullable=True),
        sa.Column("task_key", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("acceptance_criteria_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("required_skills_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("steps_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("assigned_member_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("revision_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_revisions", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("input_json", sa.Text(), nullable=True),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("excluded_member_ids_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("first_assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.team_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_task_id"], ["tasks.task_id"]),
        sa.ForeignKeyConstraint(["assigned_member_id"], ["team_members.member_id"]),
        sa.PrimaryKeyConstraint("task_id"),
        sa.UniqueConstraint("team_id", "task_key", name="uq_tasks_team_key"),
        sa.CheckConstraint(
            "revision_count >= 0 AND revision_count <= max_revisions",
            name="ck_tasks_valid_revisions",
        ),
    )
    op.create_index("ix_tasks_team_id", "tasks", ["team_id"], unique=False)
    op.create_index("ix_tasks_parent_task_id", "tasks", ["parent_task_id"], unique=False)
    op.create_index("ix_tasks_assigned_member_id", "tasks", ["assigned_member_id"], unique=False)
    op.create_index("ix_tasks_status", "tasks", ["status"], unique=False)
    op.create_index("ix_tasks_failure_class", "tasks", ["failure_class"], unique=False)
    op.create_index(
        "idx_tasks_team_status",
        "tasks",
        ["team_id", "status", "run_after"],
        unique=False,
    )

    op.create_table(
        "task_dependencies",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("depends_on_task_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["depends_on_task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id", "depends_on_task_id", name="pk_task_dependencies"),
    )
    op.create_index(
        "ix_task_dependencies_task_id",
        "task_dependencies",
        ["task_id"],
        unique=False,
    )
    op.create_index(
        "ix_task_dependencies_depends_on_task_id",
        "task_dependencies",
        ["depends_on_task_id"],
        unique=False,
    )

    op.create_table(
        "checkpoints",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("context_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("task_id", "step_number", name="uq_checkpoints_task_step"),
    )
    op.create_index("ix_checkpoints_task_id", "checkpoints", ["task_id"], unique=False)

    op.create_table(
        "task_revisions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("revision_number", sa.Integer(), nullable=False),
        sa.Column("feedback", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "task_id",
            "revision_number",
            name="uq_task_revisions_task_number",
        ),
    )
    op.create_index("ix_task_revisions_task_id", "task_revisions", ["task_id"], unique=False)

    op.create_table(
        "team_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.team_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_team_events_team_id", "team_events", ["team_id"], unique=False)
    op.create_index("ix_team_events_task_id", "team_events", ["task_id"], unique=False)
    op.create_index("ix_team_events_event_type", "team_events", ["event_type"], unique=False)
    op.create_index(
        "idx_team_events_team_time",
        "team_events",
        ["team_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "assignment_outcomes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=False),
        sa.Column("member_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("succeeded", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.team_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["member_id"],
            ["team_members.member_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_assignment_outcomes_team_id",
        "assignment_outcomes",
        ["team_id"],
        unique=False,
    )
    op.create_index(
        "idx_assignment_outcomes_member_time",
        "assignment_outcomes",
        ["member_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_assignment_outcomes_member_time", table_name="assignment_outcomes")
    op.drop_index("ix_assignment_outcomes_team_id", table_name="assignment_outcomes")
    op.drop_table("assignment_outcomes")
    op.drop_index("idx_team_events_team_time", table_name="team_events")
    op.drop_index("ix_team_events_event_type", table_name="team_events")
    op.drop_index("ix_team_events_task_id", table_name="team_events")
    op.drop_index("ix_team_events_team_id", table_name="team_events")
    op.drop_table("team_events")
    op.drop_index("ix_task_revisions_task_id", table_name="task_revisions")
    op.drop_table("task_revisions")
    op.drop_index("ix_checkpoints_task_id", table_name="checkpoints")
    op.drop_table("checkpoints")
    op.drop_index("ix_task_dependencies_depends_on_task_id", table_name="task_dependencies")
    op.drop_index("ix_task_dependencies_task_id", table_name="task_dependencies")
    op.drop_table("task_dependencies")
    op.drop_index("idx_tasks_team_status", table_name="tasks")
    op.drop_index("ix_tasks_failure_class", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_assigned_member_id", table_name="tasks")
    op.drop_index("ix_tasks_parent_task_id", table_name="tasks")
    op.drop_index("ix_tasks_team_id", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_team_members_status", table_name="team_members")
    op.drop_index("ix_team_members_role", table_name="team_members")
    op.drop_index("ix_team_members_team_id", table_name="team_members")
    op.drop_table("team_members")
    op.drop_index("ix_teams_created_at", table_name="teams")
    op.drop_index("ix_teams_status", table_name="teams")
    op.drop_table("teams")
