"""SQLModel ORM tables for team orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class Team(SQLModel, table=True):
    __tablename__ = "teams"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "budget_limit_usd IS NULL OR budget_limit_usd > 0",
            name="ck_teams_positive_budget",
        ),
    )

    team_id: str = Field(primary_key=True)
    goal: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    failure_policy: str = Field(default="continue")
    review_mode: str = Field(default="auto")
    budget_limit_usd: float | None = None
    failure_reason: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    archived_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    abort_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    loop_owner: str | None = None
    loop_heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TeamMember(SQLModel, table=True):
    __tablename__ = "team_members"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "current_workload >= 0 AND current_workload <= max_concurrent_tasks",
            name="ck_team_members_valid_workload",
        ),
    )

    member_id: str = Field(primary_key=True)
    team_id: str = Field(
        sa_column=Column(
            ForeignKey("teams.team_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    role: str = Field(index=True)
    specialization: str
    skills_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    status: str = Field(default="active", index=True)
    current_workload: int = Field(default=0)
    max_concurrent_tasks: int = Field(default=3)
    joined_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TeamTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("team_id", "task_key", name="uq_tasks_team_key"),
        CheckConstraint(
            "revision_count >= 0 AND revision_count <= max_revisions",
            name="ck_tasks_valid_revisions",
        ),
        Index("idx_tasks_team_status", "team_id", "status", "run_after"),
    )

    task_id: str = Field(primary_key=True)
    team_id: str = Field(
        sa_column=Column(
            ForeignKey("teams.team_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    parent_task_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("tasks.task_id"), nullable=True, index=True),
    )
    task_key: str
    title: str
    description: str = Field(sa_column=Column(Text, nullable=False))
    acceptance_criteria_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    required_skills_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    steps_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    assigned_member_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("team_members.member_id"), nullable=True, index=True),
    )
    status: str = Field(index=True)
    revision_count: int = Field(default=0)
    max_revisions: int = Field(default=3)
    attempt_count: int = Field(default=0)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    input_json: str | None = Field(default=None, sa_column=Column(Text))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    excluded_member_ids_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False),
    )
    first_assigned_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    failure_class: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskDependency(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("task_id", "depends_on_task_id", name="pk_task_dependencies"),
    )

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    depends_on_task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )


class Checkpoint(SQLModel, table=True):
    __tablename__ = "checkpoints"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "step_number", name="uq_checkpoints_task_step"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step_number: int
    context_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRevision(SQLModel, table=True):
    __tablename__ = "task_revisions"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "revision_number", name="uq_task_revisions_task_number"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    revision_number: int
    feedback: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class TeamEvent(SQLModel, table=True):
    __tablename__ = "team_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_team_events_team_time", "team_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    team_id: str = Field(
        sa_column=Column(
            ForeignKey("teams.team_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str | None = Field(default=None, index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AssignmentOutcome(SQLModel, table=True):
    __tablename__ = "assignment_outcomes"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_assignment_outcomes_member_time", "member_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    team_id: str = Field(
        sa_column=Column(
            ForeignKey("teams.team_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    member_id: str = Field(
        sa_column=Column(
            ForeignKey("team_members.member_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    task_id: str
    succeeded: bool
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UsageRecord(SQLModel, table=True):
    __tablename__ = "usage_records"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "prompt_tokens >= 0 AND completion_tokens >= 0",
            name="ck_usage_records_positive_tokens",
        ),
        CheckConstraint("cost_usd >= 0", name="ck_usage_records_positive_cost"),
        Index("idx_usage_records_team_time", "team_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    team_id: str = Field(
        sa_column=Column(
            ForeignKey("teams.team_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    task_id: str | None = Field(default=None, index=True)
    operation: str
    model: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
