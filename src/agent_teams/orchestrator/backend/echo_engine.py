"""Deterministic local reasoning engine and tool executor."""

from __future__ import annotations

import copy
import threading
from collections import defaultdict, deque
from collections.abc import Iterable, Mapping
from typing import Any

from agent_teams.orchestrator.backend.base import (
    AnalysisResult,
    EngineUsage,
    ExecutionRequest,
    ExecutionResult,
    ReviewRequest,
    ReviewResult,
)
from agent_teams.orchestrator.models import ExecutionStatus, ReviewDecision

DEFAULT_STEPS = ("plan", "execute", "verify")


class EchoReasoningEngine:
    """Splits the goal on `;` into sequential tasks and approves every review.

    Tests can pin the analysis payload and script review verdicts per task key.
    """

    def __init__(
        self,
        *,
        payload: Mapping[str, Any] | None = None,
        payloads: Iterable[Mapping[str, Any]] = (),
        reviews: Mapping[str, Iterable[ReviewResult]] | None = None,
        usage: EngineUsage | None = None,
    ) -> None:
        self._payload = dict(payload) if payload is not None else None
        self._payloads = deque(dict(item) for item in payloads)
        self._reviews: dict[str, deque[ReviewResult]] = {
            key: deque(results) for key, results in (reviews or {}).items()
        }
        self._usage = usage or EngineUsage()
        self._lock = threading.Lock()
        self.analyze_calls: list[tuple[str, list[str] | None]] = []
        self.review_calls: list[ReviewRequest] = []

    def analyze(self, goal: str, *, feedback: list[str] | None = None) -> AnalysisResult:
        with self._lock:
            self.analyze_calls.append((goal, feedback))
            if self._payloads:
                payload = self._payloads.popleft()
            elif self._payload is not None:
                payload = copy.deepcopy(self._payload)
            else:
                payload = _split_goal(goal)
        return AnalysisResult(payload=payload, usage=copy.copy(self._usage))

    def review(self, request: ReviewRequest) -> ReviewResult:
        with self._lock:
            self.review_calls.append(request)
            scripted = self._reviews.get(request.task_key)
            if scripted:
                result = scripted.popleft()
                return ReviewResult(
                    decision=result.decision,
                    feedback=result.feedback,
                    usage=copy.copy(self._usage),
                )
        return ReviewResult(
            decision=ReviewDecision.APPROVE,
            feedback="Meets acceptance criteria.",
            usage=copy.copy(self._usage),
        )


class EchoToolExecutor:
    """Completes each step by echoing it; scripted statuses simulate failures.

    `failures` maps `(task_key, step_number)` to statuses returned, in order,
    on successive executions of that step before it succeeds.
    """

    def __init__(
        self,
        *,
        failures: Mapping[tuple[str, int], Iterable[ExecutionStatus]] | None = None,
        messages: Mapping[ExecutionStatus, str] | None = None,
    ) -> None:
        self._failures: dict[tuple[str, int], deque[ExecutionStatus]] = defaultdict(deque)
        for key, statuses in (failures or {}).items():
            self._failures[key].extend(statuses)
        self._messages = dict(messages or {})
        self._lock = threading.Lock()
        self.executed: list[tuple[str, int, str]] = []

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        with self._lock:
            self.executed.append((request.task_key, request.step_number, request.member_id))
            pending = self._failures.get((request.task_key, request.step_number))
            status = pending.popleft() if pending else ExecutionStatus.SUCCESS
        if status != ExecutionStatus.SUCCESS:
            return ExecutionResult(
                status=status,
                message=self._messages.get(
                    status,
                    f"step {request.step!r} failed: {status.value}",
                ),
            )

        completed = [*request.context.get("completed_steps", []), request.step]
        context = {**request.context, "completed_steps": completed}
        output: dict[str, Any] = {}
        if request.step_number == request.total_steps:
            output = {
                "summary": f"{request.task_key}: " + ", ".join(completed),
                "member_id": request.member_id,
            }
            if request.revision_feedback:
                output["addressed_feedback"] = request.revision_feedback
        return ExecutionResult(status=ExecutionStatus.SUCCESS, output=output, context=context)

    def steps_for(self, task_key: str) -> list[int]:
        """Step numbers executed for a task, in call order."""

        with self._lock:
            return [step for key, step, _ in self.executed if key == task_key]


def _split_goal(goal: str) -> dict[str, Any]:
    clauses = [part.strip() for part in goal.split(";") if part.strip()] or [goal.strip()]
    tasks: list[dict[str, Any]] = []
    for index, clause in enumerate(clauses, start=1):
        tasks.append(
            {
                "key": f"t{index}",
                "title": clause,
                "description": f"Deliver: {clause}",
                "acceptance_criteria": [f"Result addresses '{clause}'"],
                "depends_on": [f"t{index - 1}"] if index > 1 else [],
                "steps": list(DEFAULT_STEPS),
            },
        )
    return {"tasks": tasks, "workers": [{"specialization": "generalist", "skills": []}]}
