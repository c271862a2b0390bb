from __future__ import annotations

import random
from dataclasses import replace

import allure
import pytest

from agent_teams.config import RetrySettings
from agent_teams.orchestrator.checkpoints import CheckpointStore
from agent_teams.orchestrator.errors import (
    ExecutionError,
    ReasoningTimeout,
    TransientExecutionError,
    UnsuitableTool,
)
from agent_teams.orchestrator.failure_handler import FailureHandler
from agent_teams.orchestrator.models import (
    FailureClass,
    MemberCreate,
    MemberRole,
    RecoveryAction,
    TaskStatus,
)
from agent_teams.orchestrator.repository import TeamRepository
from agent_teams.storage.common import utc_now

pytestmark = [
    allure.epic("Mission Runtime"),
    allure.feature("Failure Recovery"),
]

TWO_WORKERS = [
    MemberCreate(role=MemberRole.WORKER, specialization="writer"),
    MemberCreate(role=MemberRole.WORKER, specialization="editor"),
]


def _handler(repository: TeamRepository, **retry) -> FailureHandler:
    return FailureHandler(
        repository,
        CheckpointStore(repository),
        retry=RetrySettings(**retry),
        rng=random.Random(7),
    )


def _in_progress(repository: TeamRepository, seed_team, draft, *, workers=None):
    _, members, tasks = seed_team([draft("a")], workers=workers)
    worker = next(member for member in members if member.role == MemberRole.WORKER)
    task_id = tasks["a"].task_id
    repository.assign_task(task_id, member_id=worker.member_id)
    return repository.start_task(task_id), members


@pytest.mark.parametrize(
    ("failure_class", "attempt_count", "has_checkpoint", "expected"),
    [
        (FailureClass.TRANSIENT, 0, True, RecoveryAction.RESUME_FROM_CHECKPOINT),
        (FailureClass.TIMEOUT, 2, False, RecoveryAction.RETRY),
        (FailureClass.RATE_LIMIT, 3, True, RecoveryAction.ESCALATE),
        (FailureClass.UNSUITABLE_TOOL, 0, True, RecoveryAction.REASSIGN),
        (FailureClass.UNRECOVERABLE, 0, True, RecoveryAction.ESCALATE),
    ],
)
def test_decide_applies_rules_in_order(
    repository: TeamRepository,
    failure_class: FailureClass,
    attempt_count: int,
    has_checkpoint: bool,
    expected: RecoveryAction,
) -> None:
    decision = _handler(repository).decide(
        failure_class=failure_class,
        attempt_count=attempt_count,
        has_checkpoint=has_checkpoint,
    )
    assert decision.action == expected


def test_exhausted_transient_failure_escalates_with_reason(repository: TeamRepository) -> None:
    decision = _handler(repository, max_attempts=2).decide(
        failure_class=FailureClass.TRANSIENT,
        attempt_count=2,
        has_checkpoint=False,
    )
    assert decision.action == RecoveryAction.ESCALATE
    assert decision.reason == "retries_exhausted"


def test_compute_delay_is_capped_exponential_with_jitter(repository: TeamRepository) -> None:
    handler = _handler(repository, base_seconds=1.0, max_seconds=30.0, jitter_seconds=1.0)

    assert 1.0 <= handler.compute_delay(0) <= 2.0
    assert 4.0 <= handler.compute_delay(2) <= 5.0
    assert 30.0 <= handler.compute_delay(10) <= 31.0


def test_transient_failure_with_checkpoint_schedules_resume(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    task, members = _in_progress(repository, seed_team, draft)
    CheckpointStore(repository).save(task.task_id, 1, {"revision": 0, "step_index": 1})
    before = utc_now()

    decision = _handler(repository).handle(
        task,
        TransientExecutionError("connection reset"),
        members=members,
    )

    scheduled = repository.require_task(task.task_id)
    assert decision.action == RecoveryAction.RESUME_FROM_CHECKPOINT
    assert scheduled.status == TaskStatus.ASSIGNED
    assert scheduled.attempt_count == 1
    assert scheduled.failure_class == FailureClass.TRANSIENT
    assert scheduled.run_after > before
    event = repository.list_events(task.team_id, task_id=task.task_id)[-1]
    assert event.event_type == "resume_scheduled"
    assert event.details["resume_from_step"] == 2


def test_progress_resets_the_attempt_counter(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    task, members = _in_progress(repository, seed_team, draft)
    exhausted = replace(task, attempt_count=3)

    decision = _handler(repository).handle(
        exhausted,
        ReasoningTimeout("step timed out"),
        members=members,
        progressed=True,
    )

    assert decision.action == RecoveryAction.RETRY
    assert repository.require_task(task.task_id).attempt_count == 1


def test_exhausted_retries_escalate_and_free_the_worker(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    task, members = _in_progress(repository, seed_team, draft)

    decision = _handler(repository).handle(
        replace(task, attempt_count=3),
        TransientExecutionError(
            "service unavailable",
            diagnostics={"reason_code": "tool_transient_error", "matched_rule": "reported_status"},
        ),
        members=members,
    )

    failed = repository.require_task(task.task_id)
    assert decision.action == RecoveryAction.ESCALATE
    assert failed.status == TaskStatus.FAILED
    assert repository.get_member(task.assigned_member_id).current_workload == 0
    event = repository.list_events(task.team_id, task_id=task.task_id)[-1]
    assert event.event_type == "escalation"
    assert event.details["reason"] == "retries_exhausted"
    assert event.details["classification"]["matched_rule"] == "reported_status"


def test_unsuitable_tool_is_reassigned_when_another_worker_exists(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    task, members = _in_progress(repository, seed_team, draft, workers=TWO_WORKERS)

    decision = _handler(repository).handle(task, UnsuitableTool("unknown tool"), members=members)

    requeued = repository.require_task(task.task_id)
    assert decision.action == RecoveryAction.REASSIGN
    assert requeued.status == TaskStatus.PENDING
    assert requeued.excluded_member_ids == (task.assigned_member_id,)


def test_unsuitable_tool_without_alternative_escalates(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    task, members = _in_progress(repository, seed_team, draft)

    decision = _handler(repository).handle(task, UnsuitableTool("unknown tool"), members=members)

    assert decision.action == RecoveryAction.ESCALATE
    assert decision.reason == "no_alternative_worker"
    assert repository.require_task(task.task_id).status == TaskStatus.FAILED


def test_review_failure_keeps_output_in_review_when_transient(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    task, _ = _in_progress(repository, seed_team, draft)
    task = repository.submit_output(task.task_id, output={"summary": "draft"})

    decision = _handler(repository).handle_review_failure(task, ReasoningTimeout("slow"))

    reviewed = repository.require_task(task.task_id)
    assert decision.action == RecoveryAction.RETRY
    assert reviewed.status == TaskStatus.REVIEW
    assert reviewed.attempt_count == 1
    assert repository.list_events(task.team_id)[-1].event_type == "review_retry_scheduled"


def test_review_failure_escalates_when_unrecoverable(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    task, _ = _in_progress(repository, seed_team, draft)
    task = repository.submit_output(task.task_id, output={"summary": "draft"})

    decision = _handler(repository).handle_review_failure(
        task,
        ExecutionError("invalid api key"),
    )

    assert decision.action == RecoveryAction.ESCALATE
    assert decision.reason == "review_failed"
    assert repository.require_task(task.task_id).status == TaskStatus.FAILED
