"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from agent_teams.config import OrchestratorSettings, RetrySettings, Settings
from agent_teams.orchestrator.models import (
    MemberCreate,
    MemberRole,
    MemberView,
    TaskDraft,
    TaskView,
    TeamCreate,
    TeamStatus,
    TeamView,
)
from agent_teams.orchestrator.repository import TeamRepository

SeededTeam = tuple[TeamView, list[MemberView], dict[str, TaskView]]


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "teams.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[TeamRepository]:
    repo = TeamRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    """Fast loop, no backoff: scheduled retries become runnable immediately."""

    return Settings(
        db_path=db_path,
        orchestrator=OrchestratorSettings(poll_interval_seconds=0.01, mission_timeout_seconds=60),
        retry=RetrySettings(base_seconds=0.0, max_seconds=0.0, jitter_seconds=0.0),
    )


@pytest.fixture()
def draft() -> Callable[..., TaskDraft]:
    def _draft(key: str, **overrides) -> TaskDraft:
        values = {
            "key": key,
            "title": f"Task {key}",
            "description": f"Deliver {key}",
            "acceptance_criteria": (f"{key} is done",),
        }
        values.update(overrides)
        return TaskDraft(**values)

    return _draft


@pytest.fixture()
def seed_team(repository: TeamRepository) -> Callable[..., SeededTeam]:
    """Create a Planning team with a manager, the given workers and task drafts."""

    def _seed(
        drafts: list[TaskDraft],
        *,
        workers: list[MemberCreate] | None = None,
        **team_fields,
    ) -> SeededTeam:
        team = repository.create_team(TeamCreate(goal="Ship the release notes", **team_fields))
        team = repository.transition_team(team.team_id, TeamStatus.PLANNING)
        members = repository.add_members(
            team.team_id,
            [
                MemberCreate(
                    role=MemberRole.MANAGER,
                    specialization="coordinator",
                    max_concurrent_tasks=1,
                ),
                *(
                    workers
                    or [MemberCreate(role=MemberRole.WORKER, specialization="generalist")]
                ),
            ],
        )
        tasks = repository.insert_task_graph(team.team_id, drafts)
        return team, members, {task.task_key: task for task in tasks}

    return _seed
