"""Use-case services behind the team control surface."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from agent_teams.config import Settings
from agent_teams.orchestrator.backend.base import ReasoningEngine, ToolExecutor
from agent_teams.orchestrator.backend.cli_engine import CliReasoningEngine
from agent_teams.orchestrator.backend.echo_engine import EchoReasoningEngine
from agent_teams.orchestrator.checkpoints import CheckpointStore
from agent_teams.orchestrator.errors import TaskNotFound
from agent_teams.orchestrator.models import (
    CheckpointView,
    FailurePolicy,
    ReviewDecision,
    ReviewMode,
    TaskDetails,
    TaskStatus,
    TaskView,
    TeamCreate,
    TeamDetails,
    TeamEventView,
    TeamStatus,
    TeamView,
    UsageSummary,
)
from agent_teams.orchestrator.repository import TeamRepository
from agent_teams.orchestrator.review import ReviewStateMachine
from agent_teams.orchestrator.team_orchestrator import TeamOrchestrator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CreateTeam:
    """High-level command to start a mission."""

    goal: str
    budget_limit_usd: float | None = None
    failure_policy: FailurePolicy = FailurePolicy.CONTINUE
    review_mode: ReviewMode = ReviewMode.AUTO


def build_engine(settings: Settings) -> ReasoningEngine:
    """Reasoning engine selected by `AGENT_TEAMS_ENGINE`."""

    if settings.engine.backend == "cli":
        return CliReasoningEngine(
            command_template=settings.engine.command_template,
            model=settings.engine.model,
            timeout_seconds=settings.engine.call_timeout_seconds,
            pricing=settings.engine.pricing,
        )
    return EchoReasoningEngine()


class TeamService:
    """Control surface: create, inspect, review, abort, archive and run missions."""

    def __init__(
        self,
        *,
        repository: TeamRepository,
        settings: Settings,
        engine: ReasoningEngine,
        executor: ToolExecutor,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.engine = engine
        self.executor = executor
        self.review = ReviewStateMachine(repository)
        self.checkpoints = CheckpointStore(repository)

    def create_team(self, command: CreateTeam) -> TeamView:
        team = self.repository.create_team(
            TeamCreate(
                goal=command.goal,
                budget_limit_usd=command.budget_limit_usd,
                failure_policy=command.failure_policy,
                review_mode=command.review_mode,
            ),
        )
        logger.info("Created team %s", team.team_id)
        return team

    def get_team(self, team_id: str) -> TeamDetails:
        team = self.repository.require_team(team_id)
        return TeamDetails(
            team=team,
            members=self.repository.list_members(team_id),
            tasks=self.repository.list_tasks(team_id),
        )

    def list_teams(self, *, status: TeamStatus | None = None, limit: int = 50) -> list[TeamView]:
        return self.repository.list_teams(status=status, limit=limit)

    def list_tasks(self, team_id: str, *, status: TaskStatus | None = None) -> list[TaskView]:
        self.repository.require_team(team_id)
        return self.repository.list_tasks(team_id, status=status)

    def get_task_details(self, task_id: str) -> TaskDetails:
        details = self.repository.get_task_details(task_id)
        if details is None:
            raise TaskNotFound(task_id)
        return details

    def list_checkpoints(self, task_id: str) -> list[CheckpointView]:
        self.repository.require_task(task_id)
        return self.checkpoints.history(task_id)

    def list_events(self, team_id: str, *, limit: int | None = None) -> list[TeamEventView]:
        self.repository.require_team(team_id)
        return self.repository.list_events(team_id, limit=limit)

    def usage(self, team_id: str) -> UsageSummary:
        self.repository.require_team(team_id)
        return self.repository.usage_summary(team_id)

    def submit_review_decision(
        self,
        task_id: str,
        decision: ReviewDecision,
        *,
        feedback: str = "",
        reviewer: str = "human",
    ) -> TaskView:
        """Apply a reviewer verdict to a task waiting in Review."""

        return self.review.apply_decision(
            task_id,
            decision,
            feedback=feedback,
            reviewer=reviewer,
        ).task

    def abort_team(self, team_id: str) -> TeamView:
        """Request abort; with no live control loop on the team, abort it right away.

        A running loop honors the request itself: it stops assigning, lets
        in-flight steps reach a checkpoint, then obsoletes the remaining tasks.
        """

        team = self.repository.require_team(team_id)
        if not self.repository.request_abort(team_id):
            return team
        orchestrator = self._orchestrator()
        if not self.repository.claim_team_loop(
            team_id,
            owner=orchestrator.loop_owner,
            lease_seconds=self.settings.orchestrator.loop_lease_seconds,
        ):
            logger.info("Abort of team %s left to its running control loop", team_id)
            return self.repository.require_team(team_id)
        try:
            team = self.repository.require_team(team_id)
            if team.status == TeamStatus.PENDING:
                return self.repository.transition_team(
                    team_id,
                    TeamStatus.FAILED,
                    reason="aborted",
                )
            return orchestrator.abort(team_id, reason="aborted")
        finally:
            self.repository.release_team_loop(team_id, owner=orchestrator.loop_owner)

    def archive_team(self, team_id: str) -> TeamView:
        """Completed/Failed -> Archived, then apply checkpoint retention."""

        archived = self.repository.transition_team(team_id, TeamStatus.ARCHIVED)
        self.checkpoints.purge_team(team_id)
        return archived

    def run_team(self, team_id: str, *, stop: threading.Event | None = None) -> TeamView:
        """Drive the mission in the calling thread until it stops making progress."""

        return self._orchestrator().run(team_id, stop=stop)

    def _orchestrator(self) -> TeamOrchestrator:
        return TeamOrchestrator(
            self.repository,
            engine=self.engine,
            executor=self.executor,
            settings=self.settings,
        )
