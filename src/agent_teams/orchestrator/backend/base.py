"""Contracts for the reasoning engine and tool executor collaborators."""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from agent_teams.orchestrator.errors import ReasoningTimeout
from agent_teams.orchestrator.models import ExecutionStatus, ReviewDecision

T = TypeVar("T")


@dataclass(slots=True)
class EngineUsage:
    """Token/cost count reported for one reasoning engine call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0
    model: str | None = None


@dataclass(slots=True)
class AnalysisResult:
    """Structured goal analysis: `{"tasks": [...], "workers": [...]}`."""

    payload: dict[str, Any]
    usage: EngineUsage = field(default_factory=EngineUsage)


@dataclass(slots=True)
class ReviewRequest:
    team_id: str
    task_id: str
    task_key: str
    goal: str
    title: str
    description: str
    acceptance_criteria: tuple[str, ...]
    output: dict[str, Any]
    revision_count: int
    max_revisions: int


@dataclass(slots=True)
class ReviewResult:
    decision: ReviewDecision
    feedback: str = ""
    usage: EngineUsage = field(default_factory=EngineUsage)


@dataclass(slots=True)
class ExecutionRequest:
    """One step of a task handed to the tool executor."""

    team_id: str
    task_id: str
    task_key: str
    member_id: str
    specialization: str
    step_number: int
    total_steps: int
    step: str
    context: dict[str, Any]
    input_payload: dict[str, Any]
    revision_feedback: str | None = None


@dataclass(slots=True)
class ExecutionResult:
    status: ExecutionStatus
    output: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    message: str = ""


class ReasoningEngine(Protocol):
    """Request/response reasoning collaborator returning structured JSON."""

    def analyze(self, goal: str, *, feedback: list[str] | None = None) -> AnalysisResult:
        """Decompose a goal; `feedback` lists problems of a rejected earlier attempt."""

    def review(self, request: ReviewRequest) -> ReviewResult:
        """Judge a submitted task output against its acceptance criteria."""


class ToolExecutor(Protocol):
    """Performs one concrete step of a task on behalf of a worker."""

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run a step and classify its outcome."""


def call_with_timeout(fn: Callable[[], T], *, timeout_seconds: float, operation: str) -> T:
    """Run `fn` with a wall-clock limit; exceeding it raises ReasoningTimeout."""

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"engine-{operation}")
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeout as error:
        future.cancel()
        raise ReasoningTimeout(
            f"Reasoning engine {operation} call exceeded {timeout_seconds:g}s.",
        ) from error
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
