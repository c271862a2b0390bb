"""Manager review of submitted task output and the bounded revision cycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from agent_teams.orchestrator.backend.base import (
    ReasoningEngine,
    ReviewRequest,
    ReviewResult,
    call_with_timeout,
)
from agent_teams.orchestrator.errors import (
    ExecutionError,
    InvalidTransition,
    RevisionLimitExceeded,
)
from agent_teams.orchestrator.failure_handler import FailureHandler
from agent_teams.orchestrator.models import (
    FailureClass,
    ReviewDecision,
    TaskStatus,
    TaskView,
    TeamView,
    UsageWrite,
)
from agent_teams.orchestrator.repository import TeamRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReviewOutcome:
    task: TaskView
    decision: ReviewDecision
    escalated: bool = False


def ensure_revision_budget(task: TaskView) -> None:
    """Raise RevisionLimitExceeded when one more revision would reach the ceiling."""

    if task.revision_count + 1 >= task.max_revisions:
        raise RevisionLimitExceeded(task_id=task.task_id, max_revisions=task.max_revisions)


class ReviewStateMachine:
    """Applies review verdicts to tasks waiting in Review."""

    def __init__(self, repository: TeamRepository) -> None:
        self.repository = repository

    def apply_decision(
        self,
        task_id: str,
        decision: ReviewDecision,
        *,
        feedback: str = "",
        reviewer: str,
    ) -> ReviewOutcome:
        task = self.repository.require_task(task_id)
        if task.status != TaskStatus.REVIEW:
            raise InvalidTransition(
                entity="task",
                status_from=task.status.value,
                status_to=_decision_target(decision).value,
            )

        if decision == ReviewDecision.APPROVE:
            completed = self.repository.complete_task(task_id, reviewer=reviewer)
            logger.info("Task %s approved by %s", task_id, reviewer)
            return ReviewOutcome(task=completed, decision=decision)

        if decision == ReviewDecision.REJECT:
            reason = feedback.strip() or "Output rejected by reviewer."
            failed = self.repository.fail_task(
                task_id,
                failure_class=None,
                error_summary=reason,
                event_type="rejection",
                details={"reviewer": reviewer},
            )
            self._escalate(failed, reason="rejected", reviewer=reviewer)
            return ReviewOutcome(task=failed, decision=decision, escalated=True)

        if not feedback.strip():
            raise ValueError("A revision request requires feedback.")
        try:
            ensure_revision_budget(task)
        except RevisionLimitExceeded as error:
            failed = self.repository.apply_revision_request(
                task_id,
                feedback=feedback.strip(),
                reviewer=reviewer,
                status_to=TaskStatus.FAILED,
            )
            self._escalate(failed, reason="revision_limit_exceeded", reviewer=reviewer)
            logger.warning("%s", error)
            return ReviewOutcome(task=failed, decision=decision, escalated=True)

        revised = self.repository.apply_revision_request(
            task_id,
            feedback=feedback.strip(),
            reviewer=reviewer,
            status_to=TaskStatus.REVISION_REQUESTED,
        )
        logger.info(
            "Revision %s/%s requested for task %s",
            revised.revision_count,
            revised.max_revisions,
            task_id,
        )
        return ReviewOutcome(task=revised, decision=decision)

    def auto_review(
        self,
        task: TaskView,
        team: TeamView,
        *,
        engine: ReasoningEngine,
        timeout_seconds: float,
        failure_handler: FailureHandler,
    ) -> ReviewOutcome | None:
        """Ask the reasoning engine for a verdict; returns None when the call failed."""

        try:
            result = self.request_verdict(
                task,
                team,
                engine=engine,
                timeout_seconds=timeout_seconds,
            )
        except ExecutionError as error:
            failure_handler.handle_review_failure(task, error)
            return None
        return self.record_verdict(task, team, result)

    def request_verdict(
        self,
        task: TaskView,
        team: TeamView,
        *,
        engine: ReasoningEngine,
        timeout_seconds: float,
    ) -> ReviewResult:
        """Engine call only; touches no task state. Raises `ExecutionError` on failure."""

        request = ReviewRequest(
            team_id=team.team_id,
            task_id=task.task_id,
            task_key=task.task_key,
            goal=team.goal,
            title=task.title,
            description=task.description,
            acceptance_criteria=task.acceptance_criteria,
            output=task.output_payload or {},
            revision_count=task.revision_count,
            max_revisions=task.max_revisions,
        )
        return call_with_timeout(
            lambda: engine.review(request),
            timeout_seconds=timeout_seconds,
            operation="review",
        )

    def record_verdict(
        self,
        task: TaskView,
        team: TeamView,
        result: ReviewResult,
    ) -> ReviewOutcome:
        self.repository.record_usage(
            team.team_id,
            UsageWrite(
                operation="review",
                prompt_tokens=result.usage.prompt_tokens,
                completion_tokens=result.usage.completion_tokens,
                cost_usd=result.usage.cost_usd,
                model=result.usage.model,
                task_id=task.task_id,
            ),
        )
        return self.apply_decision(
            task.task_id,
            result.decision,
            feedback=result.feedback,
            reviewer="manager",
        )

    def _escalate(self, task: TaskView, *, reason: str, reviewer: str) -> None:
        self.repository.add_event(
            team_id=task.team_id,
            task_id=task.task_id,
            event_type="escalation",
            status_from=task.status.value,
            status_to=task.status.value,
            details={
                "reason": reason,
                "reviewer": reviewer,
                "revision_count": task.revision_count,
                "max_revisions": task.max_revisions,
                "failure_class": FailureClass.UNRECOVERABLE.value,
            },
        )


def _decision_target(decision: ReviewDecision) -> TaskStatus:
    if decision == ReviewDecision.APPROVE:
        return TaskStatus.COMPLETED
    if decision == ReviewDecision.REQUEST_REVISION:
        return TaskStatus.REVISION_REQUESTED
    return TaskStatus.FAILED
