"""Allowed status transitions for teams and tasks."""

from __future__ import annotations

from agent_teams.orchestrator.errors import InvalidTransition
from agent_teams.orchestrator.models import TaskStatus, TeamStatus

TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.OBSOLETE},
)
TERMINAL_TEAM_STATUSES = frozenset(
    {TeamStatus.COMPLETED, TeamStatus.FAILED, TeamStatus.ARCHIVED},
)
# Statuses in which a task holds a slot of its assignee's workload.
WORKLOAD_HOLDING_STATUSES = frozenset(
    {
        TaskStatus.ASSIGNED,
        TaskStatus.IN_PROGRESS,
        TaskStatus.REVIEW,
        TaskStatus.REVISION_REQUESTED,
    },
)

_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.ASSIGNED, TaskStatus.FAILED, TaskStatus.OBSOLETE},
    ),
    TaskStatus.ASSIGNED: frozenset(
        {
            TaskStatus.IN_PROGRESS,
            TaskStatus.PENDING,
            TaskStatus.FAILED,
            TaskStatus.OBSOLETE,
        },
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {
            TaskStatus.REVIEW,
            TaskStatus.ASSIGNED,
            TaskStatus.PENDING,
            TaskStatus.FAILED,
            TaskStatus.OBSOLETE,
        },
    ),
    TaskStatus.REVIEW: frozenset(
        {
            TaskStatus.COMPLETED,
            TaskStatus.REVISION_REQUESTED,
            TaskStatus.FAILED,
            TaskStatus.OBSOLETE,
        },
    ),
    TaskStatus.REVISION_REQUESTED: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.FAILED, TaskStatus.OBSOLETE},
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.OBSOLETE: frozenset(),
}

_TEAM_TRANSITIONS: dict[TeamStatus, frozenset[TeamStatus]] = {
    TeamStatus.PENDING: frozenset({TeamStatus.PLANNING, TeamStatus.FAILED}),
    TeamStatus.PLANNING: frozenset({TeamStatus.ACTIVE, TeamStatus.FAILED}),
    TeamStatus.ACTIVE: frozenset({TeamStatus.COMPLETED, TeamStatus.FAILED}),
    TeamStatus.COMPLETED: frozenset({TeamStatus.ARCHIVED}),
    TeamStatus.FAILED: frozenset({TeamStatus.ARCHIVED}),
    TeamStatus.ARCHIVED: frozenset(),
}


def can_transition_task(status_from: TaskStatus, status_to: TaskStatus) -> bool:
    return status_to in _TASK_TRANSITIONS[status_from]


def can_transition_team(status_from: TeamStatus, status_to: TeamStatus) -> bool:
    return status_to in _TEAM_TRANSITIONS[status_from]


def ensure_task_transition(status_from: TaskStatus, status_to: TaskStatus) -> None:
    if not can_transition_task(status_from, status_to):
        raise InvalidTransition(
            entity="task",
            status_from=status_from.value,
            status_to=status_to.value,
        )


def ensure_team_transition(status_from: TeamStatus, status_to: TeamStatus) -> None:
    if not can_transition_team(status_from, status_to):
        raise InvalidTransition(
            entity="team",
            status_from=status_from.value,
            status_to=status_to.value,
        )


def task_sources_for(status_to: TaskStatus) -> frozenset[TaskStatus]:
    """All statuses from which `status_to` is reachable in one step."""

    return frozenset(
        status_from
        for status_from, targets in _TASK_TRANSITIONS.items()
        if status_to in targets
    )
