"""Error taxonomy for mission orchestration."""

from __future__ import annotations

from agent_teams.orchestrator.models import FailureClass


class OrchestratorError(RuntimeError):
    """Base class for orchestration errors."""


class TeamNotFound(OrchestratorError):
    def __init__(self, team_id: str) -> None:
        super().__init__(f"Team not found: {team_id}")
        self.team_id = team_id


class TaskNotFound(OrchestratorError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TeamImmutable(OrchestratorError):
    """Raised when a mutation targets a team that already reached a terminal state."""


class InvalidTransition(OrchestratorError):
    def __init__(self, *, entity: str, status_from: str, status_to: str) -> None:
        super().__init__(f"Invalid {entity} transition from {status_from} to {status_to}")
        self.entity = entity
        self.status_from = status_from
        self.status_to = status_to


class ConcurrentModification(OrchestratorError):
    """Compare-and-swap update lost against a concurrent writer."""


class DecompositionInvalid(OrchestratorError):
    """Goal decomposition failed validation; fatal to the mission after one retry."""

    def __init__(self, message: str, *, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [])


class NoEligibleWorker(OrchestratorError):
    """No candidate has spare capacity; the task stays queued."""

    def __init__(self, task_id: str, *, reason: str = "all_candidates_at_capacity") -> None:
        super().__init__(f"No eligible worker for task {task_id}: {reason}")
        self.task_id = task_id
        self.reason = reason


class CheckpointConflict(OrchestratorError):
    """Duplicate or out-of-order checkpoint write."""

    def __init__(self, *, task_id: str, step_number: int, latest_step: int) -> None:
        super().__init__(
            f"Checkpoint rejected for task {task_id}: step {step_number} "
            f"(latest persisted step is {latest_step})",
        )
        self.task_id = task_id
        self.step_number = step_number
        self.latest_step = latest_step


class RevisionLimitExceeded(OrchestratorError):
    def __init__(self, *, task_id: str, max_revisions: int) -> None:
        super().__init__(f"Task {task_id} reached max_revisions={max_revisions}")
        self.task_id = task_id
        self.max_revisions = max_revisions


class ExecutionError(OrchestratorError):
    """Task execution error carrying its normalized failure class."""

    failure_class: FailureClass = FailureClass.UNRECOVERABLE

    def __init__(
        self,
        message: str,
        *,
        failure_class: FailureClass | None = None,
        diagnostics: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        if failure_class is not None:
            self.failure_class = failure_class
        self.diagnostics = dict(diagnostics or {})


class TransientExecutionError(ExecutionError):
    failure_class = FailureClass.TRANSIENT


class ReasoningTimeout(TransientExecutionError):
    """A reasoning engine call exceeded its per-call timeout."""

    failure_class = FailureClass.TIMEOUT


class UnsuitableTool(ExecutionError):
    failure_class = FailureClass.UNSUITABLE_TOOL


class UnrecoverableExecutionError(ExecutionError):
    failure_class = FailureClass.UNRECOVERABLE
