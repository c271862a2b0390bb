from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_teams import __version__
from agent_teams.main import agent_teams

pytestmark = [
    allure.epic("Control Surface"),
    allure.feature("CLI"),
]

_TEAM_ID = re.compile(r"team_id=(\S+)")
_TASK_ID = re.compile(r"^(\S+) key=(\S+) status=(\S+)", re.MULTILINE)


@pytest.fixture(autouse=True)
def fast_loop(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_TEAMS_POLL_INTERVAL_SECONDS", "0.01")
    monkeypatch.setenv("AGENT_TEAMS_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv("AGENT_TEAMS_RETRY_MAX_SECONDS", "0")
    monkeypatch.setenv("AGENT_TEAMS_RETRY_JITTER_SECONDS", "0")
    monkeypatch.delenv("AGENT_TEAMS_ENGINE", raising=False)


def _invoke(*args: str):
    return CliRunner().invoke(agent_teams, list(args))


def _create(db_path: Path, goal: str, *extra: str) -> tuple[str, str]:
    result = _invoke("team", "create", "--db-path", str(db_path), "--goal", goal, *extra)
    assert result.exit_code == 0, result.output
    match = _TEAM_ID.search(result.output)
    assert match is not None
    return match.group(1), result.output


def test_create_and_run_then_inspect(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    team_id, output = _create(db_path, "collect; report", "--run", "--budget-usd", "5")

    assert f"Team {team_id}: status=completed" in output

    show = _invoke("team", "show", "--db-path", str(db_path), team_id)
    assert show.exit_code == 0, show.output
    assert "Goal: collect; report" in show.output
    assert "Budget: $0.0000 of $5.0000 spent" in show.output
    assert "Tasks (2): completed=2" in show.output

    tasks = _invoke("team", "tasks", "--db-path", str(db_path), team_id)
    assert tasks.exit_code == 0, tasks.output
    rows = _TASK_ID.findall(tasks.output)
    assert [(key, status) for _, key, status in rows] == [("t1", "completed"), ("t2", "completed")]

    events = _invoke("team", "events", "--db-path", str(db_path), "--limit", "1", team_id)
    assert events.exit_code == 0, events.output
    assert "team_completed active->completed" in events.output

    usage = _invoke("team", "usage", "--db-path", str(db_path), team_id)
    assert "Calls: 3" in usage.output

    task_id = rows[0][0]
    task = _invoke("task", "show", "--db-path", str(db_path), task_id)
    assert task.exit_code == 0, task.output
    assert "Checkpoints: 3" in task.output
    assert "Acceptance criteria:" in task.output

    checkpoints = _invoke("task", "checkpoints", "--db-path", str(db_path), task_id)
    assert checkpoints.output.count("step=") == 3


def test_manual_review_through_cli(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    team_id, _ = _create(db_path, "one memo", "--review-mode", "manual")

    waiting = _invoke("team", "run", "--db-path", str(db_path), team_id)
    assert f"Team {team_id}: status=active" in waiting.output

    pending = _invoke("team", "tasks", "--db-path", str(db_path), "--status", "review", team_id)
    task_id = _TASK_ID.findall(pending.output)[0][0]

    missing_feedback = _invoke(
        "task",
        "review",
        "--db-path",
        str(db_path),
        "--decision",
        "request_revision",
        task_id,
    )
    assert missing_feedback.exit_code == 1
    assert "feedback" in missing_feedback.output

    approved = _invoke(
        "task",
        "review",
        "--db-path",
        str(db_path),
        "--decision",
        "approve",
        task_id,
    )
    assert approved.exit_code == 0, approved.output
    assert "status=completed" in approved.output

    finished = _invoke("team", "run", "--db-path", str(db_path), team_id)
    assert f"Team {team_id}: status=completed" in finished.output


def test_run_several_teams_at_once(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    first, _ = _create(db_path, "a; b")
    second, _ = _create(db_path, "c")

    result = _invoke("team", "run", "--db-path", str(db_path), first, second)

    assert result.exit_code == 0, result.output
    assert f"Team {first}: status=completed" in result.output
    assert f"Team {second}: status=completed" in result.output


def test_abort_and_archive(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    team_id, _ = _create(db_path, "never run")

    aborted = _invoke("team", "abort", "--db-path", str(db_path), team_id)
    assert "status=failed" in aborted.output

    archived = _invoke("team", "archive", "--db-path", str(db_path), team_id)
    assert archived.exit_code == 0, archived.output
    assert f"Team archived: team_id={team_id}" in archived.output

    again = _invoke("team", "abort", "--db-path", str(db_path), team_id)
    assert again.exit_code == 0, again.output
    assert "status=archived" in again.output


def test_unknown_team_is_reported(tmp_path: Path) -> None:
    result = _invoke("team", "show", "--db-path", str(tmp_path / "cli.db"), "ghost")

    assert result.exit_code == 1
    assert "Team not found: ghost" in result.output


def test_invalid_engine_configuration_is_reported(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AGENT_TEAMS_ENGINE", "cli")
    monkeypatch.delenv("AGENT_TEAMS_ENGINE_COMMAND", raising=False)

    result = _invoke("team", "create", "--db-path", str(tmp_path / "cli.db"), "--goal", "x")

    assert result.exit_code == 1
    assert "AGENT_TEAMS_ENGINE_COMMAND is required" in result.output


def test_version() -> None:
    result = _invoke("--version")

    assert result.exit_code == 0
    assert __version__ in result.output
