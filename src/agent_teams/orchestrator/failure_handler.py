"""Recovery policy for failed task executions and review calls."""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import timedelta

from agent_teams.config import RetrySettings
from agent_teams.orchestrator.assignment import has_alternative_worker
from agent_teams.orchestrator.checkpoints import CheckpointStore
from agent_teams.orchestrator.errors import ExecutionError
from agent_teams.orchestrator.models import (
    FailureClass,
    MemberView,
    RecoveryAction,
    TaskView,
)
from agent_teams.orchestrator.repository import TeamRepository
from agent_teams.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FailureDecision:
    action: RecoveryAction
    delay_seconds: float = 0.0
    reason: str | None = None


class FailureHandler:
    """Chooses and applies Retry, ResumeFromCheckpoint, Reassign or Escalate.

    Rules, first match wins:

    1. transient error, a checkpoint exists and attempts remain: resume from checkpoint;
    2. transient error and attempts remain: retry from scratch after backoff;
    3. unsuitable tool: reassign to another worker;
    4. anything else: escalate (task Failed, `escalation` event).

    An attempt that persisted new checkpoints counts as progress and resets
    the attempt counter before the rules are evaluated.
    """

    def __init__(
        self,
        repository: TeamRepository,
        checkpoints: CheckpointStore,
        *,
        retry: RetrySettings,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.checkpoints = checkpoints
        self.retry = retry
        self._random = rng or random.Random()  # noqa: S311

    def compute_delay(self, attempt_count: int) -> float:
        """`min(max, base * 2**attempt)` seconds plus uniform jitter."""

        backoff = min(self.retry.max_seconds, self.retry.base_seconds * (2**attempt_count))
        return backoff + self._random.uniform(0, self.retry.jitter_seconds)

    def decide(
        self,
        *,
        failure_class: FailureClass,
        attempt_count: int,
        has_checkpoint: bool,
    ) -> FailureDecision:
        attempts_left = attempt_count < self.retry.max_attempts
        if failure_class.is_transient and attempts_left:
            action = (
                RecoveryAction.RESUME_FROM_CHECKPOINT if has_checkpoint else RecoveryAction.RETRY
            )
            return FailureDecision(action=action, delay_seconds=self.compute_delay(attempt_count))
        if failure_class == FailureClass.UNSUITABLE_TOOL:
            return FailureDecision(action=RecoveryAction.REASSIGN)
        reason = "retries_exhausted" if failure_class.is_transient else failure_class.value
        return FailureDecision(action=RecoveryAction.ESCALATE, reason=reason)

    def handle(
        self,
        task: TaskView,
        error: ExecutionError,
        *,
        members: Iterable[MemberView],
        progressed: bool = False,
    ) -> FailureDecision:
        """Decide the recovery action for a failed execution and persist it."""

        attempt_count = 0 if progressed else task.attempt_count
        decision = self.decide(
            failure_class=error.failure_class,
            attempt_count=attempt_count,
            has_checkpoint=self.checkpoints.has_checkpoint(task.task_id),
        )
        if decision.action == RecoveryAction.REASSIGN and not has_alternative_worker(
            task,
            members,
            current=task.assigned_member_id or "",
        ):
            decision = FailureDecision(
                action=RecoveryAction.ESCALATE,
                reason="no_alternative_worker",
            )

        summary = str(error)
        diagnostics = _diagnostics(error)
        logger.warning(
            "Task %s failed (%s, attempt=%s): %s -> %s",
            task.task_id,
            error.failure_class.value,
            attempt_count,
            summary,
            decision.action.value,
        )

        if decision.action in {RecoveryAction.RETRY, RecoveryAction.RESUME_FROM_CHECKPOINT}:
            latest = self.checkpoints.latest(task.task_id)
            self.repository.schedule_task_retry(
                task.task_id,
                run_after=utc_now() + timedelta(seconds=decision.delay_seconds),
                attempt_count=attempt_count + 1,
                failure_class=error.failure_class,
                error_summary=summary,
                resume_step=(
                    latest.step_number + 1
                    if decision.action == RecoveryAction.RESUME_FROM_CHECKPOINT and latest
                    else None
                ),
                details=diagnostics,
            )
        elif decision.action == RecoveryAction.REASSIGN:
            self.repository.requeue_for_reassignment(
                task.task_id,
                failure_class=error.failure_class,
                error_summary=summary,
                details=diagnostics,
            )
        else:
            self.repository.fail_task(
                task.task_id,
                failure_class=error.failure_class,
                error_summary=summary,
                event_type="escalation",
                details={
                    "reason": decision.reason,
                    "attempt_count": attempt_count,
                    **diagnostics,
                },
            )
        return decision

    def handle_review_failure(self, task: TaskView, error: ExecutionError) -> FailureDecision:
        """A failed review call leaves the output in Review and retries later, or escalates."""

        summary = str(error)
        if error.failure_class.is_transient and task.attempt_count < self.retry.max_attempts:
            decision = FailureDecision(
                action=RecoveryAction.RETRY,
                delay_seconds=self.compute_delay(task.attempt_count),
            )
            self.repository.schedule_review_retry(
                task.task_id,
                run_after=utc_now() + timedelta(seconds=decision.delay_seconds),
                attempt_count=task.attempt_count + 1,
                failure_class=error.failure_class,
                error_summary=summary,
            )
            logger.warning("Review of task %s deferred: %s", task.task_id, summary)
            return decision

        decision = FailureDecision(action=RecoveryAction.ESCALATE, reason="review_failed")
        self.repository.fail_task(
            task.task_id,
            failure_class=error.failure_class,
            error_summary=summary,
            event_type="escalation",
            details={"reason": decision.reason, "attempt_count": task.attempt_count},
        )
        logger.error("Review of task %s escalated: %s", task.task_id, summary)
        return decision


def _diagnostics(error: ExecutionError) -> dict[str, object]:
    return {"classification": error.diagnostics} if error.diagnostics else {}
