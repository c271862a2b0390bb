from __future__ import annotations

import random
from dataclasses import replace

import allure
import pytest

from agent_teams.config import RetrySettings
from agent_teams.orchestrator.backend.base import EngineUsage, ReviewRequest, ReviewResult
from agent_teams.orchestrator.backend.echo_engine import EchoReasoningEngine
from agent_teams.orchestrator.checkpoints import CheckpointStore
from agent_teams.orchestrator.errors import (
    InvalidTransition,
    ReasoningTimeout,
    RevisionLimitExceeded,
)
from agent_teams.orchestrator.failure_handler import FailureHandler
from agent_teams.orchestrator.models import MemberRole, ReviewDecision, TaskStatus
from agent_teams.orchestrator.repository import TeamRepository
from agent_teams.orchestrator.review import ReviewStateMachine, ensure_revision_budget

pytestmark = [
    allure.epic("Mission Runtime"),
    allure.feature("Review Cycle"),
]


class _TimingOutEngine(EchoReasoningEngine):
    def review(self, request: ReviewRequest) -> ReviewResult:
        raise ReasoningTimeout("review call exceeded 1s")


def _submitted(repository: TeamRepository, seed_team, draft, **draft_fields):
    team, members, tasks = seed_team([draft("a", **draft_fields)])
    worker = next(member for member in members if member.role == MemberRole.WORKER)
    task_id = tasks["a"].task_id
    repository.assign_task(task_id, member_id=worker.member_id)
    repository.start_task(task_id)
    repository.submit_output(task_id, output={"summary": "first draft"})
    return team, worker, task_id


def _resubmit(repository: TeamRepository, task_id: str) -> None:
    repository.start_task(task_id)
    repository.submit_output(task_id, output={"summary": "revised draft"})


def test_third_revision_request_fails_the_task(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    team, worker, task_id = _submitted(repository, seed_team, draft, max_revisions=3)
    review = ReviewStateMachine(repository)

    first = review.apply_decision(
        task_id,
        ReviewDecision.REQUEST_REVISION,
        feedback="Cite sources.",
        reviewer="manager",
    )
    assert first.task.status == TaskStatus.REVISION_REQUESTED
    assert first.task.revision_count == 1
    _resubmit(repository, task_id)

    second = review.apply_decision(
        task_id,
        ReviewDecision.REQUEST_REVISION,
        feedback="Shorter intro.",
        reviewer="manager",
    )
    assert second.task.revision_count == 2
    _resubmit(repository, task_id)

    third = review.apply_decision(
        task_id,
        ReviewDecision.REQUEST_REVISION,
        feedback="Still too long.",
        reviewer="manager",
    )

    assert third.escalated is True
    assert third.task.status == TaskStatus.FAILED
    assert third.task.revision_count == 3
    assert [revision.feedback for revision in repository.list_revisions(task_id)] == [
        "Cite sources.",
        "Shorter intro.",
        "Still too long.",
    ]
    event_types = [event.event_type for event in repository.list_events(team.team_id)]
    assert event_types.count("revision_request") == 2
    assert event_types[-2:] == ["revision_limit_exceeded", "escalation"]
    assert repository.get_member(worker.member_id).current_workload == 0


def test_approval_completes_the_task(repository: TeamRepository, seed_team, draft) -> None:
    _, worker, task_id = _submitted(repository, seed_team, draft)

    outcome = ReviewStateMachine(repository).apply_decision(
        task_id,
        ReviewDecision.APPROVE,
        reviewer="manager",
    )

    assert outcome.task.status == TaskStatus.COMPLETED
    assert outcome.escalated is False
    assert repository.get_member(worker.member_id).current_workload == 0


def test_rejection_fails_and_escalates(repository: TeamRepository, seed_team, draft) -> None:
    team, _, task_id = _submitted(repository, seed_team, draft)

    outcome = ReviewStateMachine(repository).apply_decision(
        task_id,
        ReviewDecision.REJECT,
        feedback="Wrong topic.",
        reviewer="human",
    )

    assert outcome.task.status == TaskStatus.FAILED
    assert outcome.task.error_summary == "Wrong topic."
    event_types = [event.event_type for event in repository.list_events(team.team_id)]
    assert event_types[-2:] == ["rejection", "escalation"]


def test_revision_request_requires_feedback(repository: TeamRepository, seed_team, draft) -> None:
    _, _, task_id = _submitted(repository, seed_team, draft)

    with pytest.raises(ValueError, match="feedback"):
        ReviewStateMachine(repository).apply_decision(
            task_id,
            ReviewDecision.REQUEST_REVISION,
            feedback="  ",
            reviewer="manager",
        )


def test_decisions_only_apply_to_tasks_in_review(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    _, _, tasks = seed_team([draft("a")])

    with pytest.raises(InvalidTransition):
        ReviewStateMachine(repository).apply_decision(
            tasks["a"].task_id,
            ReviewDecision.APPROVE,
            reviewer="manager",
        )


def test_ensure_revision_budget_guards_the_ceiling(seed_team, draft) -> None:
    _, _, tasks = seed_team([draft("a", max_revisions=2)])

    with pytest.raises(RevisionLimitExceeded):
        ensure_revision_budget(replace(tasks["a"], revision_count=1))
    ensure_revision_budget(tasks["a"])


def test_auto_review_applies_engine_verdict_and_records_usage(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    team, _, task_id = _submitted(repository, seed_team, draft)
    engine = EchoReasoningEngine(
        reviews={"a": [ReviewResult(ReviewDecision.REQUEST_REVISION, "Add a chart.")]},
        usage=EngineUsage(prompt_tokens=40, completion_tokens=10, cost_usd=0.01),
    )
    handler = FailureHandler(repository, CheckpointStore(repository), retry=RetrySettings())

    outcome = ReviewStateMachine(repository).auto_review(
        repository.require_task(task_id),
        team,
        engine=engine,
        timeout_seconds=5,
        failure_handler=handler,
    )

    assert outcome is not None
    assert outcome.task.status == TaskStatus.REVISION_REQUESTED
    assert engine.review_calls[0].output == {"summary": "first draft"}
    usage = repository.usage_summary(team.team_id)
    assert (usage.calls, usage.prompt_tokens, usage.completion_tokens) == (1, 40, 10)


def test_auto_review_failure_defers_the_review(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    team, _, task_id = _submitted(repository, seed_team, draft)
    handler = FailureHandler(
        repository,
        CheckpointStore(repository),
        retry=RetrySettings(),
        rng=random.Random(1),
    )

    outcome = ReviewStateMachine(repository).auto_review(
        repository.require_task(task_id),
        team,
        engine=_TimingOutEngine(),
        timeout_seconds=5,
        failure_handler=handler,
    )

    assert outcome is None
    assert repository.require_task(task_id).status == TaskStatus.REVIEW
    assert repository.usage_summary(team.team_id).calls == 0
