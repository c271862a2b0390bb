"""Domain models for team missions, tasks, checkpoints and review records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TeamStatus(str, Enum):
    """Mission lifecycle states."""

    PENDING = "pending"
    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


class TaskStatus(str, Enum):
    """Task lifecycle states governed by the review state machine."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    REVISION_REQUESTED = "revision_requested"
    COMPLETED = "completed"
    FAILED = "failed"
    OBSOLETE = "obsolete"


class MemberRole(str, Enum):
    MANAGER = "manager"
    WORKER = "worker"


class MemberStatus(str, Enum):
    ACTIVE = "active"
    OFFLINE = "offline"


class ReviewDecision(str, Enum):
    """Verdicts returned by a review, automated or human."""

    APPROVE = "approve"
    REQUEST_REVISION = "request_revision"
    REJECT = "reject"


class FailureClass(str, Enum):
    """Closed set of execution failure kinds consumed by the failure handler."""

    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    UNSUITABLE_TOOL = "unsuitable_tool"
    UNRECOVERABLE = "unrecoverable"

    @property
    def is_transient(self) -> bool:
        return self in TRANSIENT_FAILURE_CLASSES


TRANSIENT_FAILURE_CLASSES = frozenset(
    {FailureClass.TIMEOUT, FailureClass.RATE_LIMIT, FailureClass.TRANSIENT},
)


class ExecutionStatus(str, Enum):
    """Status classification reported by a tool executor."""

    SUCCESS = "success"
    TRANSIENT_ERROR = "transient_error"
    UNSUITABLE_TOOL = "unsuitable_tool"
    UNRECOVERABLE = "unrecoverable"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    RESUME_FROM_CHECKPOINT = "resume_from_checkpoint"
    REASSIGN = "reassign"
    ESCALATE = "escalate"


class FailurePolicy(str, Enum):
    """How a mission reacts to a failed task.

    `continue` keeps running independent work and fails the mission at the end;
    `fail_fast` aborts the mission as soon as any task fails.
    """

    CONTINUE = "continue"
    FAIL_FAST = "fail_fast"


class ReviewMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


@dataclass(slots=True)
class TeamCreate:
    """Input payload for creating a mission."""

    goal: str
    budget_limit_usd: float | None = None
    failure_policy: FailurePolicy = FailurePolicy.CONTINUE
    review_mode: ReviewMode = ReviewMode.AUTO
    team_id: str | None = None


@dataclass(slots=True)
class TeamView:
    team_id: str
    goal: str
    status: TeamStatus
    failure_policy: FailurePolicy
    review_mode: ReviewMode
    budget_limit_usd: float | None
    failure_reason: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    archived_at: datetime | None
    abort_requested_at: datetime | None
    updated_at: datetime
    loop_owner: str | None = None
    loop_heartbeat_at: datetime | None = None

    @property
    def abort_requested(self) -> bool:
        return self.abort_requested_at is not None


@dataclass(slots=True)
class MemberCreate:
    """One role slot requested by team formation."""

    role: MemberRole
    specialization: str
    skills: tuple[str, ...] = ()
    max_concurrent_tasks: int = 3


@dataclass(slots=True)
class MemberView:
    member_id: str
    team_id: str
    role: MemberRole
    specialization: str
    skills: tuple[str, ...]
    status: MemberStatus
    current_workload: int
    max_concurrent_tasks: int
    joined_at: datetime

    @property
    def has_capacity(self) -> bool:
        return self.current_workload < self.max_concurrent_tasks


@dataclass(slots=True)
class TaskDraft:
    """Validated task produced by goal decomposition, addressed by its local key."""

    key: str
    title: str
    description: str
    acceptance_criteria: tuple[str, ...]
    required_skills: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    parent_key: str | None = None
    steps: tuple[str, ...] = ()
    input_payload: dict[str, Any] = field(default_factory=dict)
    max_revisions: int = 3


@dataclass(slots=True)
class TaskView:
    task_id: str
    team_id: str
    parent_task_id: str | None
    task_key: str
    title: str
    description: str
    acceptance_criteria: tuple[str, ...]
    required_skills: tuple[str, ...]
    steps: tuple[str, ...]
    assigned_member_id: str | None
    status: TaskStatus
    revision_count: int
    max_revisions: int
    attempt_count: int
    run_after: datetime
    input_payload: dict[str, Any]
    output_payload: dict[str, Any] | None
    excluded_member_ids: tuple[str, ...]
    first_assigned_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    failure_class: FailureClass | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime
    depends_on: tuple[str, ...] = ()


@dataclass(slots=True)
class CheckpointView:
    task_id: str
    step_number: int
    context: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class RevisionView:
    task_id: str
    revision_number: int
    feedback: str
    created_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class TeamEventView:
    """Audit trail entry."""

    event_id: int
    team_id: str
    task_id: str | None
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UsageWrite:
    """Token/cost accounting for one reasoning engine call."""

    operation: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0
    model: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class UsageSummary:
    calls: int
    prompt_tokens: int
    completion_tokens: int
    cost_usd: float


@dataclass(slots=True)
class TeamDetails:
    team: TeamView
    members: list[MemberView]
    tasks: list[TaskView]


@dataclass(slots=True)
class TaskDetails:
    task: TaskView
    checkpoints: list[CheckpointView]
    revisions: list[RevisionView]
    events: list[TeamEventView]
