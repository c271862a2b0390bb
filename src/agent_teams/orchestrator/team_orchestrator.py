"""Mission control loop: planning, dispatch, review, recovery and completion."""

from __future__ import annotations

import logging
import os
import random
import socket
import threading
import time
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from contextlib import contextmanager
from uuid import uuid4

from agent_teams.config import Settings
from agent_teams.orchestrator.assignment import assign
from agent_teams.orchestrator.backend.base import (
    ReasoningEngine,
    ToolExecutor,
    call_with_timeout,
)
from agent_teams.orchestrator.checkpoints import CheckpointStore
from agent_teams.orchestrator.errors import (
    ConcurrentModification,
    DecompositionInvalid,
    ExecutionError,
    NoEligibleWorker,
    OrchestratorError,
)
from agent_teams.orchestrator.failure_handler import FailureHandler
from agent_teams.orchestrator.models import (
    FailureClass,
    FailurePolicy,
    MemberCreate,
    MemberRole,
    MemberView,
    ReviewMode,
    TaskStatus,
    TaskView,
    TeamStatus,
    TeamView,
    UsageWrite,
)
from agent_teams.orchestrator.repository import TeamRepository
from agent_teams.orchestrator.review import ReviewStateMachine
from agent_teams.orchestrator.runner import RunOutcome, TaskRunner
from agent_teams.orchestrator.state_machine import TERMINAL_TEAM_STATUSES
from agent_teams.orchestrator.task_graph import Decomposition, TaskGraph, parse_decomposition
from agent_teams.storage.common import utc_now

logger = logging.getLogger(__name__)

MANAGER_SPECIALIZATION = "coordinator"
_EXECUTABLE_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.REVISION_REQUESTED})


class TaskLocks:
    """In-process registry giving each task id a single writer."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, task_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(task_id, threading.Lock())
        with lock:
            yield


class TeamOrchestrator:
    """Drives one mission from Pending to a terminal status.

    Runs in a single control thread per team; task executions and reviews run
    on a pool sized by the team's total worker capacity.
    """

    def __init__(
        self,
        repository: TeamRepository,
        *,
        engine: ReasoningEngine,
        executor: ToolExecutor,
        settings: Settings,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.settings = settings
        self.checkpoints = CheckpointStore(repository)
        self.failure_handler = FailureHandler(
            repository,
            self.checkpoints,
            retry=settings.retry,
            rng=rng,
        )
        self.review = ReviewStateMachine(repository)
        self.runner = TaskRunner(repository, self.checkpoints, executor)
        self.locks = TaskLocks()
        self.loop_owner = f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"
        self._cancel = threading.Event()
        self._slots_freed = threading.Event()
        self._queued: set[str] = set()
        self._in_flight: dict[str, Future[None]] = {}

    # -- planning ------------------------------------------------------------

    def start(self, team_id: str) -> TeamView:
        """Pending -> Planning, decompose the goal, form the team and build the task graph."""

        team = self.repository.require_team(team_id)
        team = self.repository.transition_team(team_id, TeamStatus.PLANNING)
        try:
            decomposition = self.decompose(team)
        except DecompositionInvalid as error:
            self.repository.transition_team(
                team_id,
                TeamStatus.FAILED,
                reason="decomposition_invalid",
                details={"problems": error.problems},
            )
            raise
        except ExecutionError as error:
            self.repository.transition_team(
                team_id,
                TeamStatus.FAILED,
                reason="analysis_failed",
                details={"error": str(error), "failure_class": error.failure_class.value},
            )
            raise

        self.repository.add_members(
            team_id,
            [
                MemberCreate(
                    role=MemberRole.MANAGER,
                    specialization=MANAGER_SPECIALIZATION,
                    max_concurrent_tasks=1,
                ),
                *decomposition.workers,
            ],
        )
        tasks = self.repository.insert_task_graph(team_id, decomposition.tasks)
        logger.info(
            "Team %s planned: %s tasks, %s workers",
            team_id,
            len(tasks),
            len(decomposition.workers),
        )
        return self.repository.require_team(team_id)

    def decompose(self, team: TeamView) -> Decomposition:
        """Request and validate a decomposition, re-requesting after a rejection."""

        attempts = self.settings.orchestrator.decomposition_attempts
        feedback: list[str] | None = None
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                result = call_with_timeout(
                    lambda: self.engine.analyze(team.goal, feedback=feedback),
                    timeout_seconds=self.settings.engine.call_timeout_seconds,
                    operation="analyze",
                )
                self.repository.record_usage(
                    team.team_id,
                    UsageWrite(
                        operation="analyze",
                        prompt_tokens=result.usage.prompt_tokens,
                        completion_tokens=result.usage.completion_tokens,
                        cost_usd=result.usage.cost_usd,
                        model=result.usage.model,
                    ),
                )
                return parse_decomposition(
                    result.payload,
                    max_team_size=self.settings.orchestrator.max_team_size,
                    default_max_revisions=self.settings.orchestrator.default_max_revisions,
                    max_concurrent_tasks=self.settings.orchestrator.max_concurrent_tasks,
                )
            except DecompositionInvalid as error:
                last_error = error
                feedback = error.problems or [str(error)]
                self.repository.add_event(
                    team_id=team.team_id,
                    event_type="decomposition_rejected",
                    details={"attempt": attempt, "problems": feedback},
                )
                logger.warning(
                    "Decomposition attempt %s/%s for team %s rejected: %s",
                    attempt,
                    attempts,
                    team.team_id,
                    "; ".join(feedback),
                )
            except ExecutionError as error:
                last_error = error
                self.repository.add_event(
                    team_id=team.team_id,
                    event_type="system_event",
                    details={
                        "attempt": attempt,
                        "operation": "analyze",
                        "error": str(error),
                        "failure_class": error.failure_class.value,
                    },
                )
                logger.warning("Goal analysis for team %s failed: %s", team.team_id, error)
                if not error.failure_class.is_transient:
                    raise
        assert last_error is not None
        raise last_error

    # -- control loop --------------------------------------------------------

    def run(self, team_id: str, *, stop: threading.Event | None = None) -> TeamView:
        """Run the mission until it is terminal or no further progress is possible here.

        Returns early, leaving the team Active, when the only open work is
        waiting for a manual review decision or when `stop` is set. Holds the
        team's loop lease meanwhile, so a second loop on the same team is refused.
        """

        lease_seconds = self.settings.orchestrator.loop_lease_seconds
        if not self.repository.claim_team_loop(
            team_id,
            owner=self.loop_owner,
            lease_seconds=lease_seconds,
        ):
            raise OrchestratorError(f"Team {team_id} is already driven by another control loop.")
        try:
            return self._drive(team_id, stop=stop)
        finally:
            self.repository.release_team_loop(team_id, owner=self.loop_owner)

    def _drive(self, team_id: str, *, stop: threading.Event | None) -> TeamView:
        team = self.repository.require_team(team_id)
        if team.status == TeamStatus.PENDING:
            if team.abort_requested:
                return self.repository.transition_team(
                    team_id,
                    TeamStatus.FAILED,
                    reason="aborted",
                )
            team = self.start(team_id)
        if team.status in TERMINAL_TEAM_STATUSES:
            return team
        if team.status == TeamStatus.PLANNING and not self.repository.list_tasks(team_id):
            return self.repository.transition_team(
                team_id,
                TeamStatus.FAILED,
                reason="planning_interrupted",
            )

        self._recover_interrupted(team_id)
        deadline = time.monotonic() + self.settings.orchestrator.mission_timeout_seconds
        heartbeat_every = self.settings.orchestrator.loop_lease_seconds / 3
        last_heartbeat = time.monotonic()
        capacity = sum(
            member.max_concurrent_tasks
            for member in self.repository.list_members(team_id, role=MemberRole.WORKER)
        )
        with ThreadPoolExecutor(
            max_workers=max(1, capacity) + 1,
            thread_name_prefix=f"team-{team_id[:8]}",
        ) as pool:
            while True:
                if time.monotonic() - last_heartbeat >= heartbeat_every:
                    self.repository.heartbeat_team_loop(team_id, owner=self.loop_owner)
                    last_heartbeat = time.monotonic()
                team = self.repository.require_team(team_id)
                if team.abort_requested:
                    return self.abort(team_id, reason="aborted")
                if stop is not None and stop.is_set():
                    return self._suspend(team_id)
                if time.monotonic() > deadline:
                    return self.abort(team_id, reason="mission_timeout")
                if self._budget_exceeded(team):
                    return self.abort(team_id, reason="budget_exceeded")

                finished = self.tick(team, pool)
                if finished is not None:
                    return finished
                time.sleep(self.settings.orchestrator.poll_interval_seconds)

    def tick(self, team: TeamView, pool: ThreadPoolExecutor) -> TeamView | None:
        """One pass of the control loop; returns the team when the loop should exit."""

        self._reap()
        team_id = team.team_id
        graph = TaskGraph(self.repository.list_tasks(team_id))

        failed = [task for task in graph.tasks.values() if task.status == TaskStatus.FAILED]
        if failed and team.failure_policy == FailurePolicy.FAIL_FAST:
            return self.abort(team_id, reason="task_failed")
        for task in failed:
            blocked = graph.blocked_dependents(task.task_id)
            if blocked:
                self.repository.mark_obsolete(
                    blocked,
                    reason=f"prerequisite {task.task_key} failed",
                )
                graph = TaskGraph(self.repository.list_tasks(team_id))

        self._dispatch(team, graph)
        graph = TaskGraph(self.repository.list_tasks(team_id))

        if team.status == TeamStatus.PLANNING and graph.ready_roots_assigned():
            team = self.repository.transition_team(team_id, TeamStatus.ACTIVE)
            logger.info("Team %s is active", team_id)

        self._submit_work(team, graph, pool)

        if self._in_flight:
            return None
        open_tasks = graph.open_tasks()
        if not open_tasks:
            return self._finish(team_id, graph)
        if self._waiting_on_schedule(team, graph):
            return None
        if any(task.status == TaskStatus.REVIEW for task in open_tasks):
            logger.info("Team %s is waiting for review decisions", team_id)
            return self.repository.require_team(team_id)
        self._escalate_unplaceable(team_id, graph)
        return None

    def _dispatch(self, team: TeamView, graph: TaskGraph) -> None:
        retry_queued = self._slots_freed.is_set()
        self._slots_freed.clear()
        ready = [
            task
            for task in graph.ready_tasks()
            if retry_queued or task.task_id not in self._queued
        ]
        if not ready:
            return
        members = self.repository.list_members(team.team_id)
        success_rates = self.repository.member_success_rates(
            [member.member_id for member in members],
            window=self.settings.assignment.success_rate_window,
        )
        for task in ready:
            with self.locks.hold(task.task_id):
                try:
                    choice = assign(task, members, success_rates=success_rates)
                    self.repository.assign_task(
                        task.task_id,
                        member_id=choice.member_id,
                        scoring=choice.to_event_details(),
                    )
                except NoEligibleWorker as error:
                    if task.task_id not in self._queued:
                        self._queued.add(task.task_id)
                        self.repository.add_event(
                            team_id=team.team_id,
                            task_id=task.task_id,
                            event_type="task_queued",
                            status_from=task.status.value,
                            status_to=task.status.value,
                            details={"reason": error.reason},
                        )
                        logger.info("Task %s queued: %s", task.task_id, error.reason)
                    continue
                except ConcurrentModification as error:
                    logger.info("Assignment of task %s lost a race: %s", task.task_id, error)
                    self._queued.add(task.task_id)
                    continue
            self._queued.discard(task.task_id)
            members = self.repository.list_members(team.team_id)

    def _submit_work(self, team: TeamView, graph: TaskGraph, pool: ThreadPoolExecutor) -> None:
        now = utc_now()
        for task in graph.open_tasks():
            if task.task_id in self._in_flight or task.run_after > now:
                continue
            if task.status in _EXECUTABLE_STATUSES:
                self._in_flight[task.task_id] = pool.submit(self._execute, task.task_id)
            elif task.status == TaskStatus.REVIEW and team.review_mode == ReviewMode.AUTO:
                self._in_flight[task.task_id] = pool.submit(self._review, task.task_id)

    def _reap(self) -> None:
        for task_id, future in list(self._in_flight.items()):
            if future.done():
                del self._in_flight[task_id]
                future.result()

    def _waiting_on_schedule(self, team: TeamView, graph: TaskGraph) -> bool:
        """True when some task is only waiting for its backoff to elapse."""

        waiting = set(_EXECUTABLE_STATUSES)
        if team.review_mode == ReviewMode.AUTO:
            waiting.add(TaskStatus.REVIEW)
        return any(task.status in waiting for task in graph.open_tasks())

    def _escalate_unplaceable(self, team_id: str, graph: TaskGraph) -> None:
        """Queued tasks with nothing in flight to free a slot can never be placed."""

        for task in graph.ready_tasks():
            if task.task_id not in self._queued:
                continue
            with self.locks.hold(task.task_id):
                self.repository.fail_task(
                    task.task_id,
                    failure_class=FailureClass.UNRECOVERABLE,
                    error_summary="No eligible worker can take this task.",
                    event_type="escalation",
                    details={"reason": "no_eligible_worker"},
                )
            self._queued.discard(task.task_id)
            logger.error("Task %s escalated: no eligible worker in team %s", task.task_id, team_id)

    # -- workers -------------------------------------------------------------

    def _execute(self, task_id: str) -> None:
        """Tool steps run without the task lock; only state changes take it."""

        try:
            with self.locks.hold(task_id):
                started = self._start_execution(task_id)
            if started is None:
                return
            task, member = started
            outcome = self.runner.run(task, member, cancel=self._cancel)
            if outcome.cancelled:
                return
            with self.locks.hold(task_id):
                self._settle_execution(task, outcome)
        except ConcurrentModification as error:
            logger.info("Execution of task %s lost a race: %s", task_id, error)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected failure executing task %s", task_id)
            with self.locks.hold(task_id):
                self._escalate_crash(task_id, error)
        finally:
            self._slots_freed.set()

    def _start_execution(self, task_id: str) -> tuple[TaskView, MemberView] | None:
        task = self.repository.require_task(task_id)
        if task.status not in _EXECUTABLE_STATUSES or task.assigned_member_id is None:
            return None
        member = self.repository.get_member(task.assigned_member_id)
        if member is None:
            return None
        return self.repository.start_task(task_id), member

    def _settle_execution(self, task: TaskView, outcome: RunOutcome) -> None:
        if outcome.error is not None:
            fresh = self.repository.require_task(task.task_id)
            self.failure_handler.handle(
                fresh,
                outcome.error,
                members=self.repository.list_members(task.team_id),
                progressed=outcome.progressed,
            )
            return
        self.repository.submit_output(task.task_id, output=outcome.output or {})
        logger.info("Task %s submitted for review", task.task_id)

    def _review(self, task_id: str) -> None:
        """The engine call runs without the task lock; only the verdict takes it."""

        try:
            task = self.repository.require_task(task_id)
            if task.status != TaskStatus.REVIEW or task.run_after > utc_now():
                return
            team = self.repository.require_team(task.team_id)
            try:
                result = self.review.request_verdict(
                    task,
                    team,
                    engine=self.engine,
                    timeout_seconds=self.settings.engine.call_timeout_seconds,
                )
            except ExecutionError as error:
                with self.locks.hold(task_id):
                    self.failure_handler.handle_review_failure(
                        self.repository.require_task(task_id),
                        error,
                    )
                return
            with self.locks.hold(task_id):
                self.review.record_verdict(self.repository.require_task(task_id), team, result)
        except ConcurrentModification as error:
            logger.info("Review of task %s lost a race: %s", task_id, error)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected failure reviewing task %s", task_id)
            with self.locks.hold(task_id):
                self._escalate_crash(task_id, error)
        finally:
            self._slots_freed.set()

    def _escalate_crash(self, task_id: str, error: Exception) -> None:
        self.repository.fail_task(
            task_id,
            failure_class=FailureClass.UNRECOVERABLE,
            error_summary=f"Unexpected error: {error}",
            event_type="escalation",
            details={"reason": "unexpected_error", "error_type": type(error).__name__},
        )

    # -- termination ---------------------------------------------------------

    def _finish(self, team_id: str, graph: TaskGraph) -> TeamView:
        team = self.repository.require_team(team_id)
        if graph.all_completed():
            if team.status == TeamStatus.PLANNING:
                self.repository.transition_team(team_id, TeamStatus.ACTIVE)
            finished = self.repository.transition_team(team_id, TeamStatus.COMPLETED)
            logger.info("Team %s completed", team_id)
            return finished
        failed = [
            task.task_key
            for task in graph.tasks.values()
            if task.status != TaskStatus.COMPLETED
        ]
        finished = self.repository.transition_team(
            team_id,
            TeamStatus.FAILED,
            reason="tasks_failed",
            details={"unfinished_tasks": failed},
        )
        logger.warning("Team %s failed: %s", team_id, ", ".join(failed))
        return finished

    def abort(self, team_id: str, *, reason: str) -> TeamView:
        """Stop assigning, let in-flight work reach its next checkpoint, obsolete the rest."""

        logger.warning("Aborting team %s: %s", team_id, reason)
        self._drain()
        graph = TaskGraph(self.repository.list_tasks(team_id))
        open_ids = [task.task_id for task in graph.open_tasks()]
        if open_ids:
            self.repository.mark_obsolete(open_ids, reason=reason)
        team = self.repository.require_team(team_id)
        if team.status in TERMINAL_TEAM_STATUSES:
            return team
        return self.repository.transition_team(team_id, TeamStatus.FAILED, reason=reason)

    def _suspend(self, team_id: str) -> TeamView:
        logger.info("Suspending team %s", team_id)
        self._drain()
        self._recover_interrupted(team_id)
        return self.repository.require_team(team_id)

    def _drain(self) -> None:
        self._cancel.set()
        if self._in_flight:
            wait_futures(list(self._in_flight.values()))
        self._reap()
        self._cancel.clear()

    def _recover_interrupted(self, team_id: str) -> None:
        for task in self.repository.list_tasks(team_id, status=TaskStatus.IN_PROGRESS):
            if task.task_id in self._in_flight:
                continue
            with self.locks.hold(task.task_id):
                self.repository.recover_interrupted_task(task.task_id)
            logger.info("Recovered interrupted task %s", task.task_id)

    def _budget_exceeded(self, team: TeamView) -> bool:
        if team.budget_limit_usd is None:
            return False
        spent = self.repository.usage_summary(team.team_id).cost_usd
        return spent > team.budget_limit_usd
