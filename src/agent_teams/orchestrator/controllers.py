"""Controllers for team orchestration CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_teams.config import Settings
from agent_teams.orchestrator.backend.echo_engine import EchoToolExecutor
from agent_teams.orchestrator.models import (
    FailurePolicy,
    ReviewDecision,
    ReviewMode,
    TaskStatus,
    TaskView,
    TeamView,
)
from agent_teams.orchestrator.repository import TeamRepository
from agent_teams.orchestrator.services import CreateTeam, TeamService, build_engine
from agent_teams.orchestrator.supervisor import TeamSupervisor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TeamCreateCommand:
    """CLI input for mission creation."""

    db_path: Path | None
    goal: str
    budget_usd: float | None
    failure_policy: str
    review_mode: str
    run: bool


@dataclass(slots=True)
class TeamRunCommand:
    """CLI input for driving one or more missions."""

    db_path: Path | None
    team_ids: tuple[str, ...]


@dataclass(slots=True)
class TeamInspectCommand:
    db_path: Path | None
    team_id: str


@dataclass(slots=True)
class TeamListTasksCommand:
    db_path: Path | None
    team_id: str
    status: str | None


@dataclass(slots=True)
class TeamEventsCommand:
    db_path: Path | None
    team_id: str
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskReviewCommand:
    """CLI input for a human review decision."""

    db_path: Path | None
    task_id: str
    decision: str
    feedback: str


class TeamsCliController:
    """Coordinates mission, task and review CLI operations."""

    def create_team(self, command: TeamCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            team = service.create_team(
                CreateTeam(
                    goal=command.goal,
                    budget_limit_usd=command.budget_usd,
                    failure_policy=FailurePolicy(command.failure_policy),
                    review_mode=ReviewMode(command.review_mode),
                ),
            )
            lines = [f"Team created: team_id={team.team_id} status={team.status.value}"]
            if command.run:
                team = service.run_team(team.team_id)
                lines.extend(_team_lines(team))
        return lines

    def run_teams(self, command: TeamRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if len(command.team_ids) == 1:
            with _service(settings) as service:
                return _team_lines(service.run_team(command.team_ids[0]))

        # Migrate once up front; the per-team loops only open connections.
        with _repository(settings):
            pass
        supervisor = TeamSupervisor(
            settings,
            engine_factory=lambda: build_engine(settings),
            executor_factory=EchoToolExecutor,
        )
        for team_id in command.team_ids:
            supervisor.start(team_id)
        try:
            for team_id in command.team_ids:
                supervisor.wait(team_id)
        except KeyboardInterrupt:
            logger.warning("Interrupted; suspending %d team loop(s)", len(supervisor.running()))
            supervisor.stop_all()
        lines: list[str] = []
        for team_id in command.team_ids:
            team = supervisor.wait(team_id)
            if team is not None:
                lines.extend(_team_lines(team))
        return lines

    def show_team(self, command: TeamInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            details = service.get_team(command.team_id)
            usage = service.usage(command.team_id)
        lines = _team_lines(details.team)
        lines.append(f"Goal: {details.team.goal}")
        if details.team.budget_limit_usd is not None:
            lines.append(
                f"Budget: ${usage.cost_usd:.4f} of ${details.team.budget_limit_usd:.4f} spent",
            )
        lines.append(f"Members ({len(details.members)}):")
        for member in details.members:
            skills = ",".join(member.skills) or "-"
            lines.append(
                f"- {member.member_id} role={member.role.value} "
                f"specialization={member.specialization} skills={skills} "
                f"workload={member.current_workload}/{member.max_concurrent_tasks} "
                f"status={member.status.value}",
            )
        counts: dict[str, int] = {}
        for task in details.tasks:
            counts[task.status.value] = counts.get(task.status.value, 0) + 1
        summary = " ".join(f"{status}={count}" for status, count in sorted(counts.items()))
        lines.append(f"Tasks ({len(details.tasks)}): {summary or '-'}")
        return lines

    def list_tasks(self, command: TeamListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status) if command.status else None
        with _service(settings) as service:
            tasks = service.list_tasks(command.team_id, status=status)
        if not tasks:
            return ["No tasks found."]
        return [_task_line(task) for task in tasks]

    def abort_team(self, command: TeamInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            team = service.abort_team(command.team_id)
        if not team.abort_requested:
            return [f"Team {team.team_id} already finished: status={team.status.value}"]
        return [f"Abort requested: team_id={team.team_id} status={team.status.value}"]

    def archive_team(self, command: TeamInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            team = service.archive_team(command.team_id)
        return [f"Team archived: team_id={team.team_id}"]

    def list_events(self, command: TeamEventsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            events = service.list_events(command.team_id)
        if not events:
            return ["No events found."]
        lines = []
        for event in events[-command.limit :]:
            transition = (
                f" {event.status_from or '-'}->{event.status_to or '-'}"
                if event.status_from or event.status_to
                else ""
            )
            task = f" task={event.task_id}" if event.task_id else ""
            details = f" {json.dumps(event.details, sort_keys=True)}" if event.details else ""
            lines.append(
                f"{event.created_at.isoformat()} {event.event_type}{transition}{task}{details}",
            )
        return lines

    def usage(self, command: TeamInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            usage = service.usage(command.team_id)
        return [
            f"Calls: {usage.calls}",
            f"Prompt tokens: {usage.prompt_tokens}",
            f"Completion tokens: {usage.completion_tokens}",
            f"Cost: ${usage.cost_usd:.6f}",
        ]

    def show_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            details = service.get_task_details(command.task_id)
        task = details.task
        lines = [
            _task_line(task),
            f"Description: {task.description}",
            "Acceptance criteria:",
            *[f"- {item}" for item in task.acceptance_criteria],
        ]
        if task.depends_on:
            lines.append(f"Depends on: {', '.join(task.depends_on)}")
        if task.error_summary:
            lines.append(f"Error: {task.error_summary}")
        if task.output_payload is not None:
            lines.append(f"Output: {json.dumps(task.output_payload, sort_keys=True)}")
        lines.append(f"Checkpoints: {len(details.checkpoints)}")
        for revision in details.revisions:
            lines.append(f"Revision {revision.revision_number}: {revision.feedback}")
        lines.append(f"Events: {len(details.events)}")
        return lines

    def list_checkpoints(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            checkpoints = service.list_checkpoints(command.task_id)
        if not checkpoints:
            return ["No checkpoints found."]
        return [
            f"step={checkpoint.step_number} at={checkpoint.created_at.isoformat()} "
            f"context={json.dumps(checkpoint.context, sort_keys=True)}"
            for checkpoint in checkpoints
        ]

    def review_task(self, command: TaskReviewCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            task = service.submit_review_decision(
                command.task_id,
                ReviewDecision(command.decision),
                feedback=command.feedback,
            )
        return [f"Review recorded: {_task_line(task)}"]


@contextmanager
def _repository(settings: Settings) -> Iterator[TeamRepository]:
    repository = TeamRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.orchestrator.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _service(settings: Settings) -> Iterator[TeamService]:
    with _repository(settings) as repository:
        yield TeamService(
            repository=repository,
            settings=settings,
            engine=build_engine(settings),
            executor=EchoToolExecutor(),
        )


def _team_lines(team: TeamView) -> list[str]:
    line = f"Team {team.team_id}: status={team.status.value}"
    if team.failure_reason:
        line += f" reason={team.failure_reason}"
    return [line]


def _task_line(task: TaskView) -> str:
    assignee = task.assigned_member_id or "-"
    return (
        f"{task.task_id} key={task.task_key} status={task.status.value} "
        f"assignee={assignee} revisions={task.revision_count}/{task.max_revisions} "
        f"title={task.title}"
    )
