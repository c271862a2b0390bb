"""Step-by-step task execution against the checkpoint store."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from agent_teams.orchestrator.backend.base import ExecutionRequest, ToolExecutor
from agent_teams.orchestrator.checkpoints import CheckpointStore
from agent_teams.orchestrator.errors import ExecutionError
from agent_teams.orchestrator.failure_classifier import classify_execution_status
from agent_teams.orchestrator.models import ExecutionStatus, MemberView, TaskView
from agent_teams.orchestrator.repository import TeamRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunOutcome:
    """Result of one execution pass over a task's steps."""

    output: dict[str, Any] | None = None
    error: ExecutionError | None = None
    cancelled: bool = False
    progressed: bool = False
    steps_run: list[int] = field(default_factory=list)


@dataclass(slots=True)
class _Position:
    checkpoint_step: int
    step_index: int
    state: dict[str, Any]
    output: dict[str, Any]


class TaskRunner:
    """Runs a task's steps, checkpointing after each one.

    Checkpoint step numbers grow monotonically over the task's whole life; each
    checkpoint context records the revision pass and step index it belongs to,
    so a retry resumes mid-pass while a revision starts a fresh pass.
    """

    def __init__(
        self,
        repository: TeamRepository,
        checkpoints: CheckpointStore,
        executor: ToolExecutor,
    ) -> None:
        self.repository = repository
        self.checkpoints = checkpoints
        self.executor = executor

    def run(
        self,
        task: TaskView,
        member: MemberView,
        *,
        cancel: threading.Event | None = None,
    ) -> RunOutcome:
        steps = task.steps or (task.title,)
        position = self._position(task)
        feedback = self._latest_feedback(task)
        outcome = RunOutcome()

        if position.step_index > 0:
            logger.info(
                "Resuming task %s at step %s/%s from checkpoint %s",
                task.task_id,
                position.step_index + 1,
                len(steps),
                position.checkpoint_step,
            )
            self.repository.add_event(
                team_id=task.team_id,
                task_id=task.task_id,
                event_type="resumed_from_checkpoint",
                status_from=task.status.value,
                status_to=task.status.value,
                details={
                    "checkpoint_step": position.checkpoint_step,
                    "next_step_index": position.step_index + 1,
                },
            )

        state = position.state
        output = position.output
        checkpoint_step = position.checkpoint_step
        for step_index in range(position.step_index + 1, len(steps) + 1):
            if cancel is not None and cancel.is_set():
                logger.info("Task %s cancelled before step %s", task.task_id, step_index)
                outcome.cancelled = True
                return outcome

            request = ExecutionRequest(
                team_id=task.team_id,
                task_id=task.task_id,
                task_key=task.task_key,
                member_id=member.member_id,
                specialization=member.specialization,
                step_number=step_index,
                total_steps=len(steps),
                step=steps[step_index - 1],
                context=dict(state),
                input_payload=dict(task.input_payload),
                revision_feedback=feedback,
            )
            try:
                result = self.executor.execute(request)
            except ExecutionError as error:
                outcome.error = error
                return outcome
            outcome.steps_run.append(step_index)

            if result.status != ExecutionStatus.SUCCESS:
                classification = classify_execution_status(result.status, message=result.message)
                outcome.error = ExecutionError(
                    result.message or f"Step {step_index} failed with {result.status.value}.",
                    failure_class=classification.failure_class,
                    diagnostics=classification.to_event_details(),
                )
                return outcome

            state = dict(result.context)
            output = dict(result.output) or output
            checkpoint_step += 1
            self.checkpoints.save(
                task.task_id,
                checkpoint_step,
                {
                    "revision": task.revision_count,
                    "step_index": step_index,
                    "state": state,
                    "output": output,
                },
            )
            outcome.progressed = True

        outcome.output = {**output, "steps_completed": len(steps)}
        return outcome

    def _position(self, task: TaskView) -> _Position:
        point = self.checkpoints.resume_point(
            task.task_id,
            initial_context={
                "revision": task.revision_count,
                "step_index": 0,
                "state": dict(task.input_payload),
                "output": {},
            },
        )
        context = point.context
        state = dict(context.get("state") or {})
        if context.get("revision") != task.revision_count:
            # New revision pass: start from the first step, carrying prior state.
            return _Position(
                checkpoint_step=point.next_step - 1,
                step_index=0,
                state=state,
                output={},
            )
        return _Position(
            checkpoint_step=point.next_step - 1,
            step_index=int(context.get("step_index", 0)),
            state=state,
            output=dict(context.get("output") or {}),
        )

    def _latest_feedback(self, task: TaskView) -> str | None:
        if task.revision_count == 0:
            return None
        revisions = self.repository.list_revisions(task.task_id)
        return revisions[-1].feedback if revisions else None
