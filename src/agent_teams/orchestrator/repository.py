"""Persistent store for teams, members, task graph, checkpoints and audit events."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_teams.orchestrator.errors import (
    CheckpointConflict,
    ConcurrentModification,
    TaskNotFound,
    TeamImmutable,
    TeamNotFound,
)
from agent_teams.orchestrator.models import (
    CheckpointView,
    FailureClass,
    FailurePolicy,
    MemberCreate,
    MemberRole,
    MemberStatus,
    MemberView,
    ReviewMode,
    RevisionView,
    TaskDetails,
    TaskDraft,
    TaskStatus,
    TaskView,
    TeamCreate,
    TeamEventView,
    TeamStatus,
    TeamView,
    UsageSummary,
    UsageWrite,
)
from agent_teams.orchestrator.state_machine import (
    TERMINAL_TASK_STATUSES,
    TERMINAL_TEAM_STATUSES,
    WORKLOAD_HOLDING_STATUSES,
    ensure_task_transition,
    ensure_team_transition,
)
from agent_teams.storage.alembic_runner import upgrade_head
from agent_teams.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_dict,
    load_json_list,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_teams.storage.sqlmodel_models import (
    AssignmentOutcome,
    Checkpoint,
    TaskDependency,
    TaskRevision,
    Team,
    TeamEvent,
    TeamMember,
    TeamTask,
    UsageRecord,
)


class TeamRepository:
    """Mission persistence facade backed by SQLModel + SQLite.

    Status changes are compare-and-swap UPDATEs guarded by the status the
    caller observed, so concurrent writers on one task lose cleanly instead
    of overwriting each other.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- teams ---------------------------------------------------------------

    def create_team(self, payload: TeamCreate) -> TeamView:
        """Create a mission in Pending status."""

        goal = payload.goal.strip()
        if not goal:
            raise ValueError("Goal cannot be empty.")
        if payload.budget_limit_usd is not None and payload.budget_limit_usd <= 0:
            raise ValueError("Budget must be positive.")

        now = to_db_datetime(utc_now())
        team_id = payload.team_id or str(uuid4())
        with Session(self.engine) as session:
            row = Team(
                team_id=team_id,
                goal=goal,
                status=TeamStatus.PENDING.value,
                failure_policy=payload.failure_policy.value,
                review_mode=payload.review_mode.value,
                budget_limit_usd=payload.budget_limit_usd,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                team_id=team_id,
                event_type="team_created",
                status_from=None,
                status_to=TeamStatus.PENDING.value,
                details={
                    "budget_limit_usd": payload.budget_limit_usd,
                    "failure_policy": payload.failure_policy.value,
                    "review_mode": payload.review_mode.value,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_team_view(row)

    def get_team(self, team_id: str) -> TeamView | None:
        with Session(self.engine) as session:
            row = session.get(Team, team_id)
            return _to_team_view(row) if row is not None else None

    def require_team(self, team_id: str) -> TeamView:
        team = self.get_team(team_id)
        if team is None:
            raise TeamNotFound(team_id)
        return team

    def list_teams(self, *, status: TeamStatus | None = None, limit: int = 50) -> list[TeamView]:
        with Session(self.engine) as session:
            statement = select(Team).order_by(col(Team.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Team.status == status.value)
            rows = session.exec(statement).all()
        return [_to_team_view(row) for row in rows]

    def transition_team(
        self,
        team_id: str,
        status_to: TeamStatus,
        *,
        reason: str | None = None,
        details: dict[str, object] | None = None,
    ) -> TeamView:
        """Move a team to `status_to`, enforcing monotonic lifecycle order."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Team, team_id)
            if row is None:
                raise TeamNotFound(team_id)
            status_from = TeamStatus(row.status)
            ensure_team_transition(status_from, status_to)

            values: dict[str, Any] = {"status": status_to.value, "updated_at": now}
            if status_to == TeamStatus.PLANNING:
                values["started_at"] = now
            elif status_to in {TeamStatus.COMPLETED, TeamStatus.FAILED}:
                values["completed_at"] = now
                if reason is not None:
                    values["failure_reason"] = reason
            elif status_to == TeamStatus.ARCHIVED:
                values["archived_at"] = now

            result = session.exec(
                sa_update(Team)
                .where(
                    col(Team.team_id) == team_id,
                    col(Team.status) == status_from.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConcurrentModification(
                    f"Team status changed concurrently (team_id={team_id}).",
                )
            self._add_event(
                session=session,
                team_id=team_id,
                event_type=f"team_{status_to.value}",
                status_from=status_from.value,
                status_to=status_to.value,
                details={**(details or {}), **({"reason": reason} if reason else {})},
            )
            session.commit()
            refreshed = session.get(Team, team_id)
            assert refreshed is not None
            session.refresh(refreshed)
            return _to_team_view(refreshed)

    def request_abort(self, team_id: str) -> bool:
        """Flag a running mission for abort. Returns False when already terminal."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Team, team_id)
            if row is None:
                raise TeamNotFound(team_id)
            if TeamStatus(row.status) in TERMINAL_TEAM_STATUSES:
                return False
            if row.abort_requested_at is not None:
                return True
            row.abort_requested_at = now
            row.updated_at = now
            session.add(row)
            self._add_event(
                session=session,
                team_id=team_id,
                event_type="abort_requested",
                status_from=row.status,
                status_to=row.status,
                details={},
            )
            session.commit()
            return True

    def claim_team_loop(self, team_id: str, *, owner: str, lease_seconds: float) -> bool:
        """Take the team's control-loop lease unless another live loop holds it."""

        now = utc_now()
        stale_before = to_db_datetime(now - timedelta(seconds=lease_seconds))
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Team)
                .where(
                    col(Team.team_id) == team_id,
                    or_(
                        col(Team.loop_owner).is_(None),
                        col(Team.loop_owner) == owner,
                        col(Team.loop_heartbeat_at).is_(None),
                        col(Team.loop_heartbeat_at) < stale_before,
                    ),
                )
                .values(loop_owner=owner, loop_heartbeat_at=to_db_datetime(now)),
            )
            session.commit()
            if result.rowcount == 1:
                return True
            if session.get(Team, team_id) is None:
                raise TeamNotFound(team_id)
            return False

    def heartbeat_team_loop(self, team_id: str, *, owner: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Team)
                .where(col(Team.team_id) == team_id, col(Team.loop_owner) == owner)
                .values(loop_heartbeat_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def release_team_loop(self, team_id: str, *, owner: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Team)
                .where(col(Team.team_id) == team_id, col(Team.loop_owner) == owner)
                .values(loop_owner=None, loop_heartbeat_at=None),
            )
            session.commit()

    # -- members -------------------------------------------------------------

    def add_members(self, team_id: str, members: Iterable[MemberCreate]) -> list[MemberView]:
        now = to_db_datetime(utc_now())
        created: list[TeamMember] = []
        with Session(self.engine) as session:
            self._ensure_team_mutable(session=session, team_id=team_id)
            for member in members:
                if member.max_concurrent_tasks < 1:
                    raise ValueError("max_concurrent_tasks must be >= 1.")
                row = TeamMember(
                    member_id=str(uuid4()),
                    team_id=team_id,
                    role=member.role.value,
                    specialization=member.specialization,
                    skills_json=dump_json(list(member.skills)),
                    status=MemberStatus.ACTIVE.value,
                    current_workload=0,
                    max_concurrent_tasks=member.max_concurrent_tasks,
                    joined_at=now,
                )
                session.add(row)
                created.append(row)
                self._add_event(
                    session=session,
                    team_id=team_id,
                    event_type="member_joined",
                    status_from=None,
                    status_to=None,
                    details={
                        "member_id": row.member_id,
                        "role": member.role.value,
                        "specialization": member.specialization,
                    },
                )
            session.commit()
            for row in created:
                session.refresh(row)
            return [_to_member_view(row) for row in created]

    def list_members(self, team_id: str, *, role: MemberRole | None = None) -> list[MemberView]:
        with Session(self.engine) as session:
            statement = (
                select(TeamMember)
                .where(TeamMember.team_id == team_id)
                .order_by(col(TeamMember.member_id).asc())
            )
            if role is not None:
                statement = statement.where(TeamMember.role == role.value)
            rows = session.exec(statement).all()
        return [_to_member_view(row) for row in rows]

    def get_member(self, member_id: str) -> MemberView | None:
        with Session(self.engine) as session:
            row = session.get(TeamMember, member_id)
            return _to_member_view(row) if row is not None else None

    def member_success_rates(
        self,
        member_ids: Iterable[str],
        *,
        window: int,
    ) -> dict[str, float | None]:
        """Succeeded/attempted ratio over each member's last `window` outcomes."""

        rates: dict[str, float | None] = {}
        with Session(self.engine) as session:
            for member_id in member_ids:
                rows = session.exec(
                    select(AssignmentOutcome.succeeded)
                    .where(AssignmentOutcome.member_id == member_id)
                    .order_by(
                        col(AssignmentOutcome.created_at).desc(),
                        col(AssignmentOutcome.id).desc(),
                    )
                    .limit(window),
                ).all()
                if not rows:
                    rates[member_id] = None
                    continue
                rates[member_id] = sum(1 for succeeded in rows if succeeded) / len(rows)
        return rates

    # -- task graph ----------------------------------------------------------

    def insert_task_graph(self, team_id: str, drafts: list[TaskDraft]) -> list[TaskView]:
        """Persist a validated decomposition, resolving local keys to task ids."""

        now = to_db_datetime(utc_now())
        key_to_id = {draft.key: str(uuid4()) for draft in drafts}
        with Session(self.engine) as session:
            self._ensure_team_mutable(session=session, team_id=team_id)
            rows: list[TeamTask] = []
            for draft in drafts:
                row = TeamTask(
                    task_id=key_to_id[draft.key],
                    team_id=team_id,
                    parent_task_id=(
                        key_to_id[draft.parent_key] if draft.parent_key is not None else None
                    ),
                    task_key=draft.key,
                    title=draft.title,
                    description=draft.description,
                    acceptance_criteria_json=dump_json(list(draft.acceptance_criteria)),
                    required_skills_json=dump_json(list(draft.required_skills)),
                    steps_json=dump_json(list(draft.steps)),
                    status=TaskStatus.PENDING.value,
                    revision_count=0,
                    max_revisions=draft.max_revisions,
                    attempt_count=0,
                    run_after=now,
                    input_json=dump_json(draft.input_payload) if draft.input_payload else None,
                    created_at=now,
                    updated_at=now,
                )
                rows.append(row)
            # Parents first so the self-referencing foreign key resolves.
            session.add_all(_parents_first(rows))
            session.flush()
            for draft in drafts:
                for dependency_key in draft.depends_on:
                    session.add(
                        TaskDependency(
                            task_id=key_to_id[draft.key],
                            depends_on_task_id=key_to_id[dependency_key],
                        ),
                    )
            for row in rows:
                self._add_event(
                    session=session,
                    team_id=team_id,
                    task_id=row.task_id,
                    event_type="task_created",
                    status_from=None,
                    status_to=TaskStatus.PENDING.value,
                    details={"task_key": row.task_key, "title": row.title},
                )
            session.commit()

        return self.list_tasks(team_id)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TeamTask, task_id)
            if row is None:
                return None
            dependencies = _dependency_map(session, [task_id])
            return _to_task_view(row, dependencies.get(task_id, ()))

    def require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def list_tasks(self, team_id: str, *, status: TaskStatus | None = None) -> list[TaskView]:
        with Session(self.engine) as session:
            statement = (
                select(TeamTask)
                .where(TeamTask.team_id == team_id)
                .order_by(col(TeamTask.created_at).asc(), col(TeamTask.task_key).asc())
            )
            if status is not None:
                statement = statement.where(TeamTask.status == status.value)
            rows = session.exec(statement).all()
            dependencies = _dependency_map(session, [row.task_id for row in rows])
        return [_to_task_view(row, dependencies.get(row.task_id, ())) for row in rows]

    # -- task transitions ----------------------------------------------------

    def assign_task(
        self,
        task_id: str,
        *,
        member_id: str,
        scoring: dict[str, object] | None = None,
    ) -> TaskView:
        """Pending -> Assigned, reserving one workload slot on the member atomically.

        `scoring` is the candidate score breakdown recorded on the assignment event.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._load_task_for_update(session=session, task_id=task_id)
            status_from = TaskStatus(row.status)
            ensure_task_transition(status_from, TaskStatus.ASSIGNED)
            reserved = session.exec(
                sa_update(TeamMember)
                .where(
                    col(TeamMember.member_id) == member_id,
                    col(TeamMember.team_id) == row.team_id,
                    col(TeamMember.status) == MemberStatus.ACTIVE.value,
                    col(TeamMember.current_workload) < col(TeamMember.max_concurrent_tasks),
                )
                .values(current_workload=TeamMember.current_workload + 1),
            )
            if reserved.rowcount != 1:
                session.rollback()
                raise ConcurrentModification(
                    f"Member {member_id} has no free workload slot for task {task_id}.",
                )
            self._cas_task(
                session=session,
                row=row,
                status_from=status_from,
                status_to=TaskStatus.ASSIGNED,
                values={
                    "assigned_member_id": member_id,
                    "first_assigned_at": row.first_assigned_at or now,
                    "run_after": now,
                },
                event_type="task_assignment",
                details={**(scoring or {}), "member_id": member_id},
            )
            session.commit()
        return self.require_task(task_id)

    def start_task(self, task_id: str) -> TaskView:
        """Assigned/RevisionRequested -> InProgress."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._load_task_for_update(session=session, task_id=task_id)
            status_from = TaskStatus(row.status)
            ensure_task_transition(status_from, TaskStatus.IN_PROGRESS)
            self._cas_task(
                session=session,
                row=row,
                status_from=status_from,
                status_to=TaskStatus.IN_PROGRESS,
                values={"started_at": row.started_at or now},
                event_type="task_started",
                details={
                    "member_id": row.assigned_member_id,
                    "attempt_count": row.attempt_count,
                    "revision_count": row.revision_count,
                },
            )
            session.commit()
        return self.require_task(task_id)

    def submit_output(self, task_id: str, *, output: dict[str, Any]) -> TaskView:
        """InProgress -> Review with the produced output."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._load_task_for_update(session=session, task_id=task_id)
            status_from = TaskStatus(row.status)
            ensure_task_transition(status_from, TaskStatus.REVIEW)
            self._cas_task(
                session=session,
                row=row,
                status_from=status_from,
                status_to=TaskStatus.REVIEW,
                values={
                    "output_json": dump_json(output),
                    "attempt_count": 0,
                    "failure_class": None,
                    "error_summary": None,
                    "run_after": now,
                },
                event_type="task_completion",
                details={"member_id": row.assigned_member_id},
            )
            session.exec(
                sa_update(TaskRevision)
                .where(
                    col(TaskRevision.task_id) == task_id,
                    col(TaskRevision.completed_at).is_(None),
                )
                .values(completed_at=now),
            )
            session.commit()
        return self.require_task(task_id)

    def complete_task(self, task_id: str, *, reviewer: str) -> TaskView:
        """Review -> Completed; frees the assignee's slot and records a success."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._load_task_for_update(session=session, task_id=task_id)
            status_from = TaskStatus(row.status)
            ensure_task_transition(status_from, TaskStatus.COMPLETED)
            member_id = row.assigned_member_id
            self._cas_task(
                session=session,
                row=row,
                status_from=status_from,
                status_to=TaskStatus.COMPLETED,
                values={"completed_at": now},
                event_type="approval",
                details={"reviewer": reviewer, "member_id": member_id},
            )
            self._release_member(
                session=session,
                team_id=row.team_id,
                member_id=member_id,
                task_id=task_id,
                succeeded=True,
            )
            session.commit()
        return self.require_task(task_id)

    def apply_revision_request(
        self,
        task_id: str,
        *,
        feedback: str,
        reviewer: str,
        status_to: TaskStatus,
    ) -> TaskView:
        """Review -> RevisionRequested (or Failed at the revision ceiling).

        The revision counter is incremented and a revision record appended in
        the same transaction as the status change.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._load_task_for_update(session=session, task_id=task_id)
            status_from = TaskStatus(row.status)
            ensure_task_transition(status_from, status_to)
            revision_number = row.revision_count + 1
            session.add(
                TaskRevision(
                    task_id=task_id,
                    revision_number=revision_number,
                    feedback=feedback,
                    created_at=now,
                ),
            )
            values: dict[str, Any] = {"revision_count": revision_number, "run_after": now}
            if status_to == TaskStatus.FAILED:
                values.update(
                    completed_at=now,
                    error_summary=(
                        f"Revision limit reached ({revision_number}/{row.max_revisions})."
                    ),
                )
            self._cas_task(
                session=session,
                row=row,
                status_from=status_from,
                status_to=status_to,
                values=values,
                event_type=(
                    "revision_limit_exceeded"
                    if status_to == TaskStatus.FAILED
                    else "revision_request"
                ),
                details={
                    "reviewer": reviewer,
                    "revision_number": revision_number,
                    "max_revisions": row.max_revisions,
                    "feedback": feedback,
                },
            )
            if status_to == TaskStatus.FAILED:
                self._release_member(
                    session=session,
                    team_id=row.team_id,
                    member_id=row.assigned_member_id,
                    task_id=task_id,
                    succeeded=False,
                )
            session.commit()
        return self.require_task(task_id)

    def schedule_task_retry(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        run_after: datetime,
        attempt_count: int,
        failure_class: FailureClass,
        error_summary: str,
        resume_step: int | None,
        details: dict[str, object] | None = None,
    ) -> TaskView:
        """InProgress -> Assigned on the same member, runnable after `run_after`."""

        with Session(self.engine) as session:
            row = self._load_task_for_update(session=session, task_id=task_id)
            status_from = TaskStatus(row.status)
            ensure_task_transition(status_from, TaskStatus.ASSIGNED)
            self._cas_task(
                session=session,
                row=row,
                status_from=status_from,
                status_to=TaskStatus.ASSIGNED,
                values={
                    "run_after": to_db_datetime(run_after),
                    "attempt_count": attempt_count,
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                },
                event_type="resume_scheduled" if resume_step is not None else "retry_scheduled",
                details={
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "attempt_count": attempt_count,
                    "failure_class": failure_class.value,
                    "resume_from_step": resume_step,
                    **(details or {}),
                },
            )
            session.commit()
        return self.require_task(task_id)

    def recover_interrupted_task(self, task_id: str) -> TaskView:
        """InProgress -> Assigned for a task whose executor stopped without an outcome."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._load_task_for_update(session=session, task_id=task_id)
            status_from = TaskStatus(row.status)
            ensure_task_transition(status_from, TaskStatus.ASSIGNED)
            self._cas_task(
                session=session,
                row=row,
                status_from=status_from,
                status_to=TaskStatus.ASSIGNED,
                values={"run_after": now},
                event_type="task_recovered",
                details={
                    "member_id": row.assigned_member_id,
                    "latest_checkpoint_step": _latest_step(session, task_id),
                },
            )
            session.commit()
        return self.require_task(task_id)

    def schedule_review_retry(
        self,
        task_id: str,
        *,
        run_after: datetime,
        attempt_count: int,
        failure_class: FailureClass,
        error_summary: str,
    ) -> TaskView:
        """Keep a task in Review and retry the review call after `run_after`."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._load_task_for_update(session=session, task_id=task_id)
            result = session.exec(
                sa_update(TeamTask)
                .where(
                    col(TeamTask.task_id) == task_id,
                    col(TeamTask.status) == TaskStatus.REVIEW.value,
                )
                .values(
                    run_after=to_db_datetime(run_after),
                    attempt_count=attempt_count,
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConcurrentModification(
                    f"Task {task_id} left review while scheduling a review retry.",
                )
            self._add_event(
                session=session,
                team_id=row.team_id,
                task_id=task_id,
                event_type="review_retry_scheduled",
                status_from=TaskStatus.REVIEW.value,
                status_to=TaskStatus.REVIEW.value,
                details={
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "attempt_count": attempt_count,
                    "failure_class": failure_class.value,
                },
            )
            session.commit()
        return self.require_task(task_id)

    def requeue_for_reassignment(
        self,
        task_id: str,
        *,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> TaskView:
        """Assigned/InProgress -> Pending, excluding the current assignee from reselection."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._load_task_for_update(session=session, task_id=task_id)
            status_from = TaskStatus(row.status)
            ensure_task_transition(status_from, TaskStatus.PENDING)
            member_id = row.assigned_member_id
            excluded = load_json_list(row.excluded_member_ids_json)
            if member_id is not None and member_id not in excluded:
                excluded.append(member_id)
            self._cas_task(
                session=session,
                row=row,
                status_from=status_from,
                status_to=TaskStatus.PENDING,
                values={
                    "assigned_member_id": None,
                    "excluded_member_ids_json": dump_json(excluded),
                    "attempt_count": 0,
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                    "run_after": now,
                },
                event_type="reassignment_requested",
                details={
                    "previous_member_id": member_id,
                    "excluded_member_ids": excluded,
                    **(details or {}),
                },
            )
            self._release_member(
                session=session,
                team_id=row.team_id,
                member_id=member_id,
                task_id=task_id,
                succeeded=False,
            )
            session.commit()
        return self.require_task(task_id)

    def fail_task(
        self,
        task_id: str,
        *,
        failure_class: FailureClass | None,
        error_summary: str,
        event_type: str = "escalation",
        details: dict[str, object] | None = None,
    ) -> TaskView:
        """Any non-terminal status -> Failed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._load_task_for_update(session=session, task_id=task_id)
            status_from = TaskStatus(row.status)
            ensure_task_transition(status_from, TaskStatus.FAILED)
            self._cas_task(
                session=session,
                row=row,
                status_from=status_from,
                status_to=TaskStatus.FAILED,
                values={
                    "completed_at": now,
                    "failure_class": failure_class.value if failure_class is not None else None,
                    "error_summary": error_summary,
                },
                event_type=event_type,
                details={
                    "failure_class": failure_class.value if failure_class is not None else None,
                    "error_summary": error_summary,
                    "member_id": row.assigned_member_id,
                    **(details or {}),
                },
            )
            if status_from in WORKLOAD_HOLDING_STATUSES:
                self._release_member(
                    session=session,
                    team_id=row.team_id,
                    member_id=row.assigned_member_id,
                    task_id=task_id,
                    succeeded=False,
                )
            session.commit()
        return self.require_task(task_id)

    def mark_obsolete(self, task_ids: Iterable[str], *, reason: str) -> list[TaskView]:
        """Move every still-open task in `task_ids` to Obsolete."""

        now = to_db_datetime(utc_now())
        changed: list[str] = []
        with Session(self.engine) as session:
            for task_id in task_ids:
                row = self._load_task_for_update(session=session, task_id=task_id)
                status_from = TaskStatus(row.status)
                if status_from in TERMINAL_TASK_STATUSES:
                    continue
                self._cas_task(
                    session=session,
                    row=row,
                    status_from=status_from,
                    status_to=TaskStatus.OBSOLETE,
                    values={"completed_at": now, "error_summary": reason},
                    event_type="task_obsolete",
                    details={"reason": reason},
                )
                if status_from in WORKLOAD_HOLDING_STATUSES:
                    self._release_member(
                        session=session,
                        team_id=row.team_id,
                        member_id=row.assigned_member_id,
                        task_id=task_id,
                        succeeded=None,
                    )
                changed.append(task_id)
            session.commit()
        return [self.require_task(task_id) for task_id in changed]

    # -- checkpoints ---------------------------------------------------------

    def append_checkpoint(
        self,
        task_id: str,
        *,
        step_number: int,
        context: dict[str, Any],
    ) -> CheckpointView:
        """Append the next checkpoint; duplicates and gaps raise CheckpointConflict."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            task = session.get(TeamTask, task_id)
            if task is None:
                raise TaskNotFound(task_id)
            self._ensure_team_mutable(session=session, team_id=task.team_id)
            latest = _latest_step(session, task_id)
            if step_number != latest + 1:
                raise CheckpointConflict(
                    task_id=task_id,
                    step_number=step_number,
                    latest_step=latest,
                )
            row = Checkpoint(
                task_id=task_id,
                step_number=step_number,
                context_json=dump_json(context),
                created_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                team_id=task.team_id,
                task_id=task_id,
                event_type="checkpoint_saved",
                status_from=task.status,
                status_to=task.status,
                details={"step_number": step_number},
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise CheckpointConflict(
                    task_id=task_id,
                    step_number=step_number,
                    latest_step=self.latest_step(task_id),
                ) from error
            session.refresh(row)
            return _to_checkpoint_view(row)

    def latest_step(self, task_id: str) -> int:
        with Session(self.engine) as session:
            return _latest_step(session, task_id)

    def latest_checkpoint(self, task_id: str) -> CheckpointView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Checkpoint)
                .where(Checkpoint.task_id == task_id)
                .order_by(col(Checkpoint.step_number).desc())
                .limit(1),
            ).one_or_none()
            return _to_checkpoint_view(row) if row is not None else None

    def get_checkpoint(self, task_id: str, step_number: int) -> CheckpointView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Checkpoint).where(
                    Checkpoint.task_id == task_id,
                    Checkpoint.step_number == step_number,
                ),
            ).one_or_none()
            return _to_checkpoint_view(row) if row is not None else None

    def list_checkpoints(self, task_id: str) -> list[CheckpointView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Checkpoint)
                .where(Checkpoint.task_id == task_id)
                .order_by(col(Checkpoint.step_number).asc()),
            ).all()
        return [_to_checkpoint_view(row) for row in rows]

    def purge_team_checkpoints(self, team_id: str) -> int:
        """Retention: drop checkpoints of an archived team."""

        with Session(self.engine) as session:
            team = session.get(Team, team_id)
            if team is None:
                raise TeamNotFound(team_id)
            if TeamStatus(team.status) != TeamStatus.ARCHIVED:
                raise TeamImmutable(
                    f"Checkpoints can only be purged for archived teams (status={team.status}).",
                )
            task_ids = session.exec(
                select(TeamTask.task_id).where(TeamTask.team_id == team_id),
            ).all()
            rows = session.exec(
                select(Checkpoint).where(col(Checkpoint.task_id).in_(list(task_ids))),
            ).all()
            for row in rows:
                session.delete(row)
            session.commit()
            return len(rows)

    # -- revisions, events, usage -------------------------------------------

    def list_revisions(self, task_id: str) -> list[RevisionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRevision)
                .where(TaskRevision.task_id == task_id)
                .order_by(col(TaskRevision.revision_number).asc()),
            ).all()
        return [
            RevisionView(
                task_id=row.task_id,
                revision_number=row.revision_number,
                feedback=row.feedback,
                created_at=to_utc_aware_datetime(row.created_at),
                completed_at=optional_utc(row.completed_at),
            )
            for row in rows
        ]

    def add_event(  # noqa: PLR0913
        self,
        *,
        team_id: str,
        event_type: str,
        task_id: str | None = None,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                team_id=team_id,
                task_id=task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    def list_events(
        self,
        team_id: str,
        *,
        task_id: str | None = None,
        limit: int | None = None,
    ) -> list[TeamEventView]:
        with Session(self.engine) as session:
            statement = (
                select(TeamEvent)
                .where(TeamEvent.team_id == team_id)
                .order_by(col(TeamEvent.created_at).asc(), col(TeamEvent.id).asc())
            )
            if task_id is not None:
                statement = statement.where(TeamEvent.task_id == task_id)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [
            TeamEventView(
                event_id=row.id or 0,
                team_id=row.team_id,
                task_id=row.task_id,
                event_type=row.event_type,
                status_from=row.status_from,
                status_to=row.status_to,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_dict(row.details_json),
            )
            for row in rows
        ]

    def record_usage(self, team_id: str, usage: UsageWrite) -> None:
        with Session(self.engine) as session:
            session.add(
                UsageRecord(
                    team_id=team_id,
                    task_id=usage.task_id,
                    operation=usage.operation,
                    model=usage.model,
                    prompt_tokens=usage.prompt_tokens,
                    completion_tokens=usage.completion_tokens,
                    cost_usd=usage.cost_usd,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def usage_summary(self, team_id: str) -> UsageSummary:
        with Session(self.engine) as session:
            calls, prompt_tokens, completion_tokens, cost_usd = session.exec(
                select(
                    func.count(col(UsageRecord.id)),
                    func.coalesce(func.sum(UsageRecord.prompt_tokens), 0),
                    func.coalesce(func.sum(UsageRecord.completion_tokens), 0),
                    func.coalesce(func.sum(UsageRecord.cost_usd), 0.0),
                ).where(UsageRecord.team_id == team_id),
            ).one()
        return UsageSummary(
            calls=int(calls),
            prompt_tokens=int(prompt_tokens),
            completion_tokens=int(completion_tokens),
            cost_usd=float(cost_usd),
        )

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        task = self.get_task(task_id)
        if task is None:
            return None
        return TaskDetails(
            task=task,
            checkpoints=self.list_checkpoints(task_id),
            revisions=self.list_revisions(task_id),
            events=self.list_events(task.team_id, task_id=task_id),
        )

    # -- internals -----------------------------------------------------------

    def _ensure_team_mutable(self, *, session: Session, team_id: str) -> Team:
        team = session.get(Team, team_id)
        if team is None:
            raise TeamNotFound(team_id)
        if TeamStatus(team.status) in TERMINAL_TEAM_STATUSES:
            raise TeamImmutable(f"Team {team_id} is {team.status}; no further mutation allowed.")
        return team

    def _load_task_for_update(self, *, session: Session, task_id: str) -> TeamTask:
        row = session.get(TeamTask, task_id)
        if row is None:
            raise TaskNotFound(task_id)
        self._ensure_team_mutable(session=session, team_id=row.team_id)
        return row

    def _cas_task(  # noqa: PLR0913
        self,
        *,
        session: Session,
        row: TeamTask,
        status_from: TaskStatus,
        status_to: TaskStatus,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, object],
    ) -> None:
        result = session.exec(
            sa_update(TeamTask)
            .where(
                col(TeamTask.task_id) == row.task_id,
                col(TeamTask.status) == status_from.value,
                col(TeamTask.updated_at) == row.updated_at,
            )
            .values(
                status=status_to.value,
                updated_at=to_db_datetime(utc_now()),
                **values,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            raise ConcurrentModification(
                f"Task state changed concurrently (task_id={row.task_id}, "
                f"expected={status_from.value}).",
            )
        self._add_event(
            session=session,
            team_id=row.team_id,
            task_id=row.task_id,
            event_type=event_type,
            status_from=status_from.value,
            status_to=status_to.value,
            details=details,
        )

    def _release_member(
        self,
        *,
        session: Session,
        team_id: str,
        member_id: str | None,
        task_id: str,
        succeeded: bool | None,
    ) -> None:
        if member_id is None:
            return
        session.exec(
            sa_update(TeamMember)
            .where(
                col(TeamMember.member_id) == member_id,
                col(TeamMember.current_workload) > 0,
            )
            .values(current_workload=TeamMember.current_workload - 1),
        )
        if succeeded is None:
            return
        session.add(
            AssignmentOutcome(
                team_id=team_id,
                member_id=member_id,
                task_id=task_id,
                succeeded=succeeded,
                created_at=to_db_datetime(utc_now()),
            ),
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        team_id: str,
        event_type: str,
        status_from: str | None,
        status_to: str | None,
        details: dict[str, object],
        task_id: str | None = None,
    ) -> None:
        session.add(
            TeamEvent(
                team_id=team_id,
                task_id=task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _latest_step(session: Session, task_id: str) -> int:
    latest = session.exec(
        select(func.max(Checkpoint.step_number)).where(Checkpoint.task_id == task_id),
    ).one()
    return int(latest) if latest is not None else 0


def _dependency_map(session: Session, task_ids: list[str]) -> dict[str, tuple[str, ...]]:
    if not task_ids:
        return {}
    rows = session.exec(
        select(TaskDependency)
        .where(col(TaskDependency.task_id).in_(task_ids))
        .order_by(col(TaskDependency.depends_on_task_id).asc()),
    ).all()
    mapping: dict[str, list[str]] = defaultdict(list)
    for row in rows:
        mapping[row.task_id].append(row.depends_on_task_id)
    return {task_id: tuple(values) for task_id, values in mapping.items()}


def _parents_first(rows: list[TeamTask]) -> list[TeamTask]:
    by_id = {row.task_id: row for row in rows}
    ordered: list[TeamTask] = []
    placed: set[str] = set()

    def _place(row: TeamTask) -> None:
        if row.task_id in placed:
            return
        if row.parent_task_id is not None and row.parent_task_id in by_id:
            _place(by_id[row.parent_task_id])
        placed.add(row.task_id)
        ordered.append(row)

    for row in rows:
        _place(row)
    return ordered


def _str_tuple(raw: str) -> tuple[str, ...]:
    return tuple(str(item) for item in load_json_list(raw))


def _to_team_view(row: Team) -> TeamView:
    return TeamView(
        team_id=row.team_id,
        goal=row.goal,
        status=TeamStatus(row.status),
        failure_policy=FailurePolicy(row.failure_policy),
        review_mode=ReviewMode(row.review_mode),
        budget_limit_usd=row.budget_limit_usd,
        failure_reason=row.failure_reason,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        archived_at=optional_utc(row.archived_at),
        abort_requested_at=optional_utc(row.abort_requested_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        loop_owner=row.loop_owner,
        loop_heartbeat_at=optional_utc(row.loop_heartbeat_at),
    )


def _to_member_view(row: TeamMember) -> MemberView:
    return MemberView(
        member_id=row.member_id,
        team_id=row.team_id,
        role=MemberRole(row.role),
        specialization=row.specialization,
        skills=_str_tuple(row.skills_json),
        status=MemberStatus(row.status),
        current_workload=row.current_workload,
        max_concurrent_tasks=row.max_concurrent_tasks,
        joined_at=to_utc_aware_datetime(row.joined_at),
    )


def _to_task_view(row: TeamTask, depends_on: tuple[str, ...]) -> TaskView:
    output = load_json_dict(row.output_json) if row.output_json is not None else None
    return TaskView(
        task_id=row.task_id,
        team_id=row.team_id,
        parent_task_id=row.parent_task_id,
        task_key=row.task_key,
        title=row.title,
        description=row.description,
        acceptance_criteria=_str_tuple(row.acceptance_criteria_json),
        required_skills=_str_tuple(row.required_skills_json),
        steps=_str_tuple(row.steps_json),
        assigned_member_id=row.assigned_member_id,
        status=TaskStatus(row.status),
        revision_count=row.revision_count,
        max_revisions=row.max_revisions,
        attempt_count=row.attempt_count,
        run_after=to_utc_aware_datetime(row.run_after),
        input_payload=load_json_dict(row.input_json),
        output_payload=output,
        excluded_member_ids=_str_tuple(row.excluded_member_ids_json),
        first_assigned_at=optional_utc(row.first_assigned_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        depends_on=depends_on,
    )


def _to_checkpoint_view(row: Checkpoint) -> CheckpointView:
    return CheckpointView(
        task_id=row.task_id,
        step_number=row.step_number,
        context=load_json_dict(row.context_json),
        created_at=to_utc_aware_datetime(row.created_at),
    )
