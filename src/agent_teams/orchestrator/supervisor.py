"""Runs one control loop per team, each on its own thread."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from agent_teams.config import Settings
from agent_teams.orchestrator.backend.base import ReasoningEngine, ToolExecutor
from agent_teams.orchestrator.errors import OrchestratorError
from agent_teams.orchestrator.models import TeamView
from agent_teams.orchestrator.repository import TeamRepository
from agent_teams.orchestrator.team_orchestrator import TeamOrchestrator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _TeamThread:
    thread: threading.Thread
    stop: threading.Event
    result: TeamView | None = None
    error: BaseException | None = None
    done: threading.Event = field(default_factory=threading.Event)


class TeamSupervisor:
    """Hosts concurrent missions; teams share no mutable state.

    Each thread opens its own repository on the shared database and gets fresh
    engine/executor instances from the factories.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        engine_factory: Callable[[], ReasoningEngine],
        executor_factory: Callable[[], ToolExecutor],
    ) -> None:
        self.settings = settings
        self.engine_factory = engine_factory
        self.executor_factory = executor_factory
        self._threads: dict[str, _TeamThread] = {}
        self._lock = threading.Lock()

    def start(self, team_id: str) -> None:
        with self._lock:
            existing = self._threads.get(team_id)
            if existing is not None and existing.thread.is_alive():
                raise OrchestratorError(f"Team {team_id} is already running.")
            stop = threading.Event()
            thread = threading.Thread(
                target=self._run_team,
                args=(team_id,),
                name=f"team-loop-{team_id[:8]}",
            )
            self._threads[team_id] = _TeamThread(thread=thread, stop=stop)
        thread.start()
        logger.info("Started control loop for team %s", team_id)

    def stop(self, team_id: str) -> None:
        """Ask a team's loop to suspend at the next checkpoint boundary."""

        with self._lock:
            entry = self._threads.get(team_id)
        if entry is not None:
            entry.stop.set()

    def stop_all(self) -> None:
        with self._lock:
            entries = list(self._threads.values())
        for entry in entries:
            entry.stop.set()

    def wait(self, team_id: str, timeout: float | None = None) -> TeamView | None:
        """Block until the team's loop exits; re-raises its error, if any."""

        with self._lock:
            entry = self._threads.get(team_id)
        if entry is None:
            raise OrchestratorError(f"Team {team_id} was never started here.")
        if not entry.done.wait(timeout):
            return None
        entry.thread.join()
        if entry.error is not None:
            raise entry.error
        return entry.result

    def running(self) -> list[str]:
        with self._lock:
            return [team_id for team_id, entry in self._threads.items() if entry.thread.is_alive()]

    def _run_team(self, team_id: str) -> None:
        with self._lock:
            entry = self._threads[team_id]
        repository = TeamRepository(
            self.settings.db_path,
            sqlite_busy_timeout_ms=self.settings.orchestrator.sqlite_busy_timeout_ms,
        )
        try:
            orchestrator = TeamOrchestrator(
                repository,
                engine=self.engine_factory(),
                executor=self.executor_factory(),
                settings=self.settings,
            )
            entry.result = orchestrator.run(team_id, stop=entry.stop)
            logger.info("Team %s loop exited with status %s", team_id, entry.result.status.value)
        except Exception as error:  # noqa: BLE001
            logger.exception("Control loop for team %s crashed", team_id)
            entry.error = error
        finally:
            repository.close()
            entry.done.set()
