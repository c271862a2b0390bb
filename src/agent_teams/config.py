"""Runtime configuration for team orchestration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class OrchestratorSettings:
    """Mission control-loop settings."""

    max_team_size: int = 5
    default_max_revisions: int = 3
    max_concurrent_tasks: int = 3
    poll_interval_seconds: float = 0.2
    mission_timeout_seconds: float = 3_600.0
    decomposition_attempts: int = 2
    sqlite_busy_timeout_ms: int = 5_000
    loop_lease_seconds: float = 30.0


@dataclass(slots=True)
class AssignmentSettings:
    """Worker selection settings."""

    success_rate_window: int = 20


@dataclass(slots=True)
class RetrySettings:
    """Failure handler backoff settings."""

    max_attempts: int = 3
    base_seconds: float = 1.0
    max_seconds: float = 30.0
    jitter_seconds: float = 1.0


@dataclass(slots=True)
class EngineSettings:
    """Reasoning engine settings."""

    backend: str = "echo"
    command_template: str = ""
    model: str = "default"
    call_timeout_seconds: float = 120.0
    pricing: str = ""


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_teams.db")
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    assignment: AssignmentSettings = field(default_factory=AssignmentSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    engine: EngineSettings = field(default_factory=EngineSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        settings = cls(
            db_path=db_path or Path(os.getenv("AGENT_TEAMS_DB_PATH", ".agent_teams.db")),
            orchestrator=OrchestratorSettings(
                max_team_size=int(os.getenv("AGENT_TEAMS_MAX_TEAM_SIZE", "5")),
                default_max_revisions=int(os.getenv("AGENT_TEAMS_MAX_REVISIONS", "3")),
                max_concurrent_tasks=int(os.getenv("AGENT_TEAMS_MAX_CONCURRENT_TASKS", "3")),
                poll_interval_seconds=float(
                    os.getenv("AGENT_TEAMS_POLL_INTERVAL_SECONDS", "0.2"),
                ),
                mission_timeout_seconds=float(
                    os.getenv("AGENT_TEAMS_MISSION_TIMEOUT_SECONDS", "3600"),
                ),
                decomposition_attempts=int(
                    os.getenv("AGENT_TEAMS_DECOMPOSITION_ATTEMPTS", "2"),
                ),
                sqlite_busy_timeout_ms=int(
                    os.getenv("AGENT_TEAMS_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
                loop_lease_seconds=float(
                    os.getenv("AGENT_TEAMS_LOOP_LEASE_SECONDS", "30"),
                ),
            ),
            assignment=AssignmentSettings(
                success_rate_window=int(os.getenv("AGENT_TEAMS_SUCCESS_RATE_WINDOW", "20")),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("AGENT_TEAMS_RETRY_MAX_ATTEMPTS", "3")),
                base_seconds=float(os.getenv("AGENT_TEAMS_RETRY_BASE_SECONDS", "1.0")),
                max_seconds=float(os.getenv("AGENT_TEAMS_RETRY_MAX_SECONDS", "30.0")),
                jitter_seconds=float(os.getenv("AGENT_TEAMS_RETRY_JITTER_SECONDS", "1.0")),
            ),
            engine=EngineSettings(
                backend=os.getenv("AGENT_TEAMS_ENGINE", "echo").strip().lower(),
                command_template=os.getenv("AGENT_TEAMS_ENGINE_COMMAND", ""),
                model=os.getenv("AGENT_TEAMS_ENGINE_MODEL", "default"),
                call_timeout_seconds=float(
                    os.getenv("AGENT_TEAMS_ENGINE_TIMEOUT_SECONDS", "120"),
                ),
                pricing=os.getenv("AGENT_TEAMS_ENGINE_PRICING", ""),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        orchestrator = self.orchestrator
        if orchestrator.max_team_size < 1:
            raise ValueError("AGENT_TEAMS_MAX_TEAM_SIZE must be >= 1.")
        if orchestrator.default_max_revisions < 1:
            raise ValueError("AGENT_TEAMS_MAX_REVISIONS must be >= 1.")
        if orchestrator.max_concurrent_tasks < 1:
            raise ValueError("AGENT_TEAMS_MAX_CONCURRENT_TASKS must be >= 1.")
        if orchestrator.poll_interval_seconds <= 0:
            raise ValueError("AGENT_TEAMS_POLL_INTERVAL_SECONDS must be > 0.")
        if orchestrator.mission_timeout_seconds <= 0:
            raise ValueError("AGENT_TEAMS_MISSION_TIMEOUT_SECONDS must be > 0.")
        if orchestrator.decomposition_attempts < 1:
            raise ValueError("AGENT_TEAMS_DECOMPOSITION_ATTEMPTS must be >= 1.")
        if orchestrator.loop_lease_seconds <= 0:
            raise ValueError("AGENT_TEAMS_LOOP_LEASE_SECONDS must be > 0.")
        if self.assignment.success_rate_window < 1:
            raise ValueError("AGENT_TEAMS_SUCCESS_RATE_WINDOW must be >= 1.")
        if self.retry.max_attempts < 0:
            raise ValueError("AGENT_TEAMS_RETRY_MAX_ATTEMPTS must be >= 0.")
        if self.retry.base_seconds < 0 or self.retry.max_seconds < 0:
            raise ValueError("Retry delays must be >= 0.")
        if self.retry.jitter_seconds < 0:
            raise ValueError("AGENT_TEAMS_RETRY_JITTER_SECONDS must be >= 0.")
        if self.engine.backend not in {"echo", "cli"}:
            raise ValueError(
                f"Unsupported AGENT_TEAMS_ENGINE={self.engine.backend!r}; use 'echo' or 'cli'.",
            )
        if self.engine.backend == "cli" and not self.engine.command_template.strip():
            raise ValueError("AGENT_TEAMS_ENGINE_COMMAND is required when AGENT_TEAMS_ENGINE=cli.")
        if self.engine.call_timeout_seconds <= 0:
            raise ValueError("AGENT_TEAMS_ENGINE_TIMEOUT_SECONDS must be > 0.")
