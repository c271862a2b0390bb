from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_teams.config import Settings

pytestmark = [
    allure.epic("Mission Runtime"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults(tmp_path: Path) -> None:
    settings = Settings.from_env(db_path=tmp_path / "teams.db")

    assert settings.db_path == tmp_path / "teams.db"
    assert settings.orchestrator.max_team_size == 5
    assert settings.orchestrator.default_max_revisions == 3
    assert settings.orchestrator.decomposition_attempts == 2
    assert settings.assignment.success_rate_window == 20
    assert settings.retry.max_attempts == 3
    assert settings.retry.max_seconds == 30.0
    assert settings.engine.backend == "echo"


def test_from_env_reads_db_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_TEAMS_DB_PATH", str(tmp_path / "env.db"))
    assert Settings.from_env().db_path == tmp_path / "env.db"


def test_from_env_parses_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_TEAMS_MAX_TEAM_SIZE", "2")
    monkeypatch.setenv("AGENT_TEAMS_MAX_CONCURRENT_TASKS", "1")
    monkeypatch.setenv("AGENT_TEAMS_RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("AGENT_TEAMS_RETRY_BASE_SECONDS", "0.5")
    monkeypatch.setenv("AGENT_TEAMS_SUCCESS_RATE_WINDOW", "7")
    monkeypatch.setenv("AGENT_TEAMS_ENGINE", " CLI ")
    monkeypatch.setenv("AGENT_TEAMS_ENGINE_COMMAND", "agent --model {model} {prompt}")
    monkeypatch.setenv("AGENT_TEAMS_ENGINE_PRICING", "*:1.0:2.0")

    settings = Settings.from_env()

    assert settings.orchestrator.max_team_size == 2
    assert settings.orchestrator.max_concurrent_tasks == 1
    assert settings.retry.max_attempts == 5
    assert settings.retry.base_seconds == 0.5
    assert settings.assignment.success_rate_window == 7
    assert settings.engine.backend == "cli"
    assert settings.engine.pricing == "*:1.0:2.0"


def test_from_env_requires_command_for_cli_engine(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_TEAMS_ENGINE", "cli")
    monkeypatch.delenv("AGENT_TEAMS_ENGINE_COMMAND", raising=False)

    with pytest.raises(ValueError, match="AGENT_TEAMS_ENGINE_COMMAND"):
        Settings.from_env()


def test_from_env_rejects_unknown_engine(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_TEAMS_ENGINE", "telepathy")

    with pytest.raises(ValueError, match="Unsupported AGENT_TEAMS_ENGINE"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("AGENT_TEAMS_MAX_TEAM_SIZE", "0"),
        ("AGENT_TEAMS_MAX_REVISIONS", "0"),
        ("AGENT_TEAMS_POLL_INTERVAL_SECONDS", "0"),
        ("AGENT_TEAMS_DECOMPOSITION_ATTEMPTS", "0"),
        ("AGENT_TEAMS_RETRY_JITTER_SECONDS", "-1"),
        ("AGENT_TEAMS_ENGINE_TIMEOUT_SECONDS", "0"),
    ],
)
def test_from_env_rejects_out_of_range_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError):
        Settings.from_env()
