from __future__ import annotations

import threading

import allure
import pytest

from agent_teams.config import Settings
from agent_teams.orchestrator.backend.base import ExecutionRequest, ExecutionResult
from agent_teams.orchestrator.backend.echo_engine import EchoReasoningEngine, EchoToolExecutor
from agent_teams.orchestrator.errors import OrchestratorError, TeamNotFound
from agent_teams.orchestrator.models import TaskStatus, TeamCreate, TeamStatus
from agent_teams.orchestrator.repository import TeamRepository
from agent_teams.orchestrator.supervisor import TeamSupervisor

pytestmark = [
    allure.epic("Mission Runtime"),
    allure.feature("Concurrent Missions"),
]


def _supervisor(settings: Settings) -> TeamSupervisor:
    return TeamSupervisor(
        settings,
        engine_factory=EchoReasoningEngine,
        executor_factory=EchoToolExecutor,
    )


def test_independent_teams_complete_concurrently(
    repository: TeamRepository,
    settings: Settings,
) -> None:
    first = repository.create_team(TeamCreate(goal="outline; draft"))
    second = repository.create_team(TeamCreate(goal="collect; chart; publish"))
    supervisor = _supervisor(settings)

    supervisor.start(first.team_id)
    supervisor.start(second.team_id)
    results = [supervisor.wait(first.team_id, 30), supervisor.wait(second.team_id, 30)]

    assert [team.status for team in results] == [TeamStatus.COMPLETED, TeamStatus.COMPLETED]
    assert supervisor.running() == []
    first_keys = {task.task_key for task in repository.list_tasks(first.team_id)}
    second_keys = {task.task_key for task in repository.list_tasks(second.team_id)}
    assert first_keys == {"t1", "t2"}
    assert second_keys == {"t1", "t2", "t3"}


def test_wait_requires_a_started_team(settings: Settings) -> None:
    with pytest.raises(OrchestratorError, match="never started"):
        _supervisor(settings).wait("missing")


def test_wait_reraises_loop_errors(repository: TeamRepository, settings: Settings) -> None:
    supervisor = _supervisor(settings)

    supervisor.start("no-such-team")

    with pytest.raises(TeamNotFound):
        supervisor.wait("no-such-team", 10)


def test_stop_all_suspends_running_loops(repository: TeamRepository, settings: Settings) -> None:
    entered = threading.Event()
    release = threading.Event()

    class _Blocking(EchoToolExecutor):
        def execute(self, request: ExecutionRequest) -> ExecutionResult:
            entered.set()
            release.wait(10)
            return super().execute(request)

    team = repository.create_team(TeamCreate(goal="slow; slower"))
    supervisor = TeamSupervisor(
        settings,
        engine_factory=EchoReasoningEngine,
        executor_factory=_Blocking,
    )

    supervisor.start(team.team_id)
    assert entered.wait(10)
    supervisor.stop_all()
    release.set()
    suspended = supervisor.wait(team.team_id, 30)

    assert suspended is not None
    assert suspended.status == TeamStatus.ACTIVE
    assert repository.list_tasks(team.team_id, status=TaskStatus.IN_PROGRESS) == []

    supervisor.start(team.team_id)
    assert supervisor.wait(team.team_id, 30).status == TeamStatus.COMPLETED
