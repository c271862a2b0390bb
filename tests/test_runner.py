from __future__ import annotations

import threading
from datetime import timedelta

import allure

from agent_teams.orchestrator.backend.base import ExecutionRequest, ExecutionResult
from agent_teams.orchestrator.backend.echo_engine import EchoToolExecutor
from agent_teams.orchestrator.checkpoints import CheckpointStore
from agent_teams.orchestrator.errors import UnsuitableTool
from agent_teams.orchestrator.models import (
    ExecutionStatus,
    FailureClass,
    MemberRole,
    TaskStatus,
)
from agent_teams.orchestrator.repository import TeamRepository
from agent_teams.orchestrator.runner import TaskRunner
from agent_teams.storage.common import utc_now

pytestmark = [
    allure.epic("Mission Runtime"),
    allure.feature("Checkpoint Recovery"),
]

SIX_STEPS = ("collect", "filter", "group", "draft", "chart", "publish")


class _RaisingExecutor:
    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        raise UnsuitableTool("spreadsheet tool is not supported by this worker")


def _started(repository: TeamRepository, seed_team, draft, *, steps=SIX_STEPS):
    _, members, tasks = seed_team([draft("report", steps=steps, input_payload={"topic": "q3"})])
    worker = next(member for member in members if member.role == MemberRole.WORKER)
    task_id = tasks["report"].task_id
    repository.assign_task(task_id, member_id=worker.member_id)
    return repository.start_task(task_id), worker


def test_resume_after_transient_failure_skips_checkpointed_steps(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    task, worker = _started(repository, seed_team, draft)
    executor = EchoToolExecutor(failures={("report", 5): [ExecutionStatus.TRANSIENT_ERROR]})
    runner = TaskRunner(repository, CheckpointStore(repository), executor)

    failed = runner.run(task, worker)

    assert failed.error is not None
    assert failed.error.failure_class == FailureClass.TRANSIENT
    assert failed.error.diagnostics["failure_class"] == "transient"
    assert failed.progressed is True
    assert failed.steps_run == [1, 2, 3, 4, 5]
    assert repository.latest_step(task.task_id) == 4

    repository.schedule_task_retry(
        task.task_id,
        run_after=utc_now() - timedelta(seconds=1),
        attempt_count=1,
        failure_class=FailureClass.TRANSIENT,
        error_summary=str(failed.error),
        resume_step=5,
    )
    resumed = runner.run(repository.start_task(task.task_id), worker)

    assert resumed.error is None
    assert resumed.steps_run == [5, 6]
    assert executor.steps_for("report") == [1, 2, 3, 4, 5, 5, 6]
    assert resumed.output["steps_completed"] == 6
    assert resumed.output["summary"] == "report: " + ", ".join(SIX_STEPS)
    steps = [checkpoint.step_number for checkpoint in repository.list_checkpoints(task.task_id)]
    assert steps == [1, 2, 3, 4, 5, 6]
    resumed_events = [
        event
        for event in repository.list_events(task.team_id, task_id=task.task_id)
        if event.event_type == "resumed_from_checkpoint"
    ]
    assert resumed_events[0].details == {"checkpoint_step": 4, "next_step_index": 5}


def test_first_step_receives_task_input(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    task, worker = _started(repository, seed_team, draft, steps=("only",))
    captured: list[ExecutionRequest] = []

    class _Recorder(EchoToolExecutor):
        def execute(self, request: ExecutionRequest) -> ExecutionResult:
            captured.append(request)
            return super().execute(request)

    outcome = TaskRunner(repository, CheckpointStore(repository), _Recorder()).run(task, worker)

    assert outcome.output["steps_completed"] == 1
    assert captured[0].context == {"topic": "q3"}
    assert captured[0].input_payload == {"topic": "q3"}
    assert captured[0].revision_feedback is None


def test_revision_pass_reruns_every_step_with_feedback(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    task, worker = _started(repository, seed_team, draft, steps=("outline", "write"))
    executor = EchoToolExecutor()
    runner = TaskRunner(repository, CheckpointStore(repository), executor)

    first = runner.run(task, worker)
    repository.submit_output(task.task_id, output=first.output)
    repository.apply_revision_request(
        task.task_id,
        feedback="Add a conclusion.",
        reviewer="manager",
        status_to=TaskStatus.REVISION_REQUESTED,
    )
    second = runner.run(repository.start_task(task.task_id), worker)

    assert executor.steps_for("report") == [1, 2, 1, 2]
    assert second.output["addressed_feedback"] == "Add a conclusion."
    assert repository.latest_step(task.task_id) == 4
    assert repository.latest_checkpoint(task.task_id).context["revision"] == 1


def test_cancellation_stops_before_the_next_step(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    task, worker = _started(repository, seed_team, draft)
    executor = EchoToolExecutor()
    cancel = threading.Event()
    cancel.set()

    outcome = TaskRunner(repository, CheckpointStore(repository), executor).run(
        task,
        worker,
        cancel=cancel,
    )

    assert outcome.cancelled is True
    assert executor.executed == []


def test_executor_exceptions_are_returned_as_outcome_errors(
    repository: TeamRepository,
    seed_team,
    draft,
) -> None:
    task, worker = _started(repository, seed_team, draft)

    outcome = TaskRunner(repository, CheckpointStore(repository), _RaisingExecutor()).run(
        task,
        worker,
    )

    assert outcome.error is not None
    assert outcome.error.failure_class == FailureClass.UNSUITABLE_TOOL
    assert outcome.progressed is False
    assert repository.latest_step(task.task_id) == 0
