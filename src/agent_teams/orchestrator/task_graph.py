"""Goal decomposition validation and prerequisite queries over a team's task arena."""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from agent_teams.orchestrator.errors import DecompositionInvalid
from agent_teams.orchestrator.models import (
    MemberCreate,
    MemberRole,
    TaskDraft,
    TaskStatus,
    TaskView,
)
from agent_teams.orchestrator.state_machine import TERMINAL_TASK_STATUSES


@dataclass(slots=True)
class Decomposition:
    """Validated output of goal analysis: task drafts plus the requested worker roster."""

    tasks: list[TaskDraft]
    workers: list[MemberCreate]


def parse_decomposition(
    payload: Mapping[str, Any],
    *,
    max_team_size: int,
    default_max_revisions: int,
    max_concurrent_tasks: int,
) -> Decomposition:
    """Validate a reasoning-engine analysis payload.

    Expected shape::

        {"tasks": [{"key", "title", "description", "acceptance_criteria",
                    "required_skills", "depends_on", "parent", "steps", "input"}],
         "workers": [{"specialization", "skills"}]}

    All problems are collected before raising so a single re-request can fix them.
    """

    problems: list[str] = []
    raw_tasks = payload.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise DecompositionInvalid(
            "Decomposition contains no tasks.",
            problems=["tasks: expected a non-empty list"],
        )

    drafts: list[TaskDraft] = []
    seen_keys: set[str] = set()
    for index, raw in enumerate(raw_tasks):
        label = f"tasks[{index}]"
        if not isinstance(raw, Mapping):
            problems.append(f"{label}: expected an object")
            continue
        key = _clean_str(raw.get("key")) or f"task-{index + 1}"
        title = _clean_str(raw.get("title"))
        description = _clean_str(raw.get("description"))
        criteria = _str_list(raw.get("acceptance_criteria"))
        if not title:
            problems.append(f"{label}: title is empty")
        if not description:
            problems.append(f"{label}: description is empty")
        if not criteria:
            problems.append(f"{label}: at least one acceptance criterion is required")
        if key in seen_keys:
            problems.append(f"{label}: duplicate key {key!r}")
        seen_keys.add(key)

        max_revisions = raw.get("max_revisions", default_max_revisions)
        if not _positive_int(max_revisions):
            problems.append(f"{label}: max_revisions must be a positive integer")
            max_revisions = default_max_revisions
        input_payload = raw.get("input") or {}
        if not isinstance(input_payload, Mapping):
            problems.append(f"{label}: input must be an object")
            input_payload = {}

        drafts.append(
            TaskDraft(
                key=key,
                title=title,
                description=description,
                acceptance_criteria=tuple(criteria),
                required_skills=tuple(_str_list(raw.get("required_skills"))),
                depends_on=tuple(dict.fromkeys(_str_list(raw.get("depends_on")))),
                parent_key=_clean_str(raw.get("parent")) or None,
                steps=tuple(_str_list(raw.get("steps"))),
                input_payload=dict(input_payload),
                max_revisions=max_revisions,
            ),
        )

    for draft in drafts:
        if draft.parent_key is not None and draft.parent_key not in seen_keys:
            problems.append(f"task {draft.key!r}: unknown parent {draft.parent_key!r}")
        if draft.parent_key == draft.key:
            problems.append(f"task {draft.key!r}: task cannot be its own parent")
        for dependency in draft.depends_on:
            if dependency not in seen_keys:
                problems.append(f"task {draft.key!r}: unknown dependency {dependency!r}")

    if not problems:
        cycle = _find_cycle(drafts)
        if cycle:
            problems.append("dependency cycle: " + " -> ".join(cycle))

    workers = _parse_workers(
        payload.get("workers"),
        max_team_size=max_team_size,
        max_concurrent_tasks=max_concurrent_tasks,
        problems=problems,
    )

    if problems:
        raise DecompositionInvalid(
            f"Decomposition rejected with {len(problems)} problem(s).",
            problems=problems,
        )
    return Decomposition(tasks=drafts, workers=workers)


def _parse_workers(
    raw_workers: Any,
    *,
    max_team_size: int,
    max_concurrent_tasks: int,
    problems: list[str],
) -> list[MemberCreate]:
    if not isinstance(raw_workers, list) or not raw_workers:
        problems.append("workers: at least one worker is required")
        return []
    if len(raw_workers) > max_team_size:
        problems.append(
            f"workers: {len(raw_workers)} requested, team size limit is {max_team_size}",
        )

    workers: list[MemberCreate] = []
    for index, raw in enumerate(raw_workers):
        if not isinstance(raw, Mapping):
            problems.append(f"workers[{index}]: expected an object")
            continue
        specialization = _clean_str(raw.get("specialization"))
        if not specialization:
            problems.append(f"workers[{index}]: specialization is empty")
            continue
        workers.append(
            MemberCreate(
                role=MemberRole.WORKER,
                specialization=specialization,
                skills=tuple(_str_list(raw.get("skills"))),
                max_concurrent_tasks=max_concurrent_tasks,
            ),
        )
    return workers


def _find_cycle(drafts: list[TaskDraft]) -> list[str]:
    """Return one prerequisite cycle as a key path, or an empty list."""

    edges: dict[str, list[str]] = defaultdict(list)
    for draft in drafts:
        edges[draft.key].extend(draft.depends_on)
        if draft.parent_key is not None:
            # A parent waits for each of its children.
            edges[draft.parent_key].append(draft.key)

    white, grey, black = 0, 1, 2
    color: dict[str, int] = {draft.key: white for draft in drafts}
    stack: list[str] = []

    def _visit(key: str) -> list[str]:
        color[key] = grey
        stack.append(key)
        for target in edges.get(key, []):
            if color.get(target, black) == grey:
                return [*stack[stack.index(target) :], target]
            if color.get(target, black) == white:
                found = _visit(target)
                if found:
                    return found
        stack.pop()
        color[key] = black
        return []

    for draft in drafts:
        if color[draft.key] == white:
            found = _visit(draft.key)
            if found:
                return found
    return []


class TaskGraph:
    """Read model over a team's tasks addressed by id; children are derived by lookup.

    A task's prerequisites are its children plus its declared dependencies.
    """

    def __init__(self, tasks: Iterable[TaskView]) -> None:
        self.tasks: dict[str, TaskView] = {task.task_id: task for task in tasks}
        self._children: dict[str, list[str]] = defaultdict(list)
        self._dependents: dict[str, list[str]] = defaultdict(list)
        for task in self.tasks.values():
            if task.parent_task_id is not None:
                self._children[task.parent_task_id].append(task.task_id)
        for task in self.tasks.values():
            for prerequisite in self.prerequisites_of(task.task_id):
                self._dependents[prerequisite].append(task.task_id)

    def children_of(self, task_id: str) -> list[str]:
        return list(self._children.get(task_id, []))

    def prerequisites_of(self, task_id: str) -> list[str]:
        task = self.tasks[task_id]
        return list(dict.fromkeys([*self._children.get(task_id, []), *task.depends_on]))

    def roots(self) -> list[TaskView]:
        return [task for task in self.tasks.values() if task.parent_task_id is None]

    def children_ready(self, task_id: str) -> bool:
        """True when every child and declared prerequisite of the task is Completed."""

        return all(
            self.tasks[prerequisite].status == TaskStatus.COMPLETED
            for prerequisite in self.prerequisites_of(task_id)
            if prerequisite in self.tasks
        )

    def ready_tasks(self) -> list[TaskView]:
        """Pending tasks whose prerequisites are all Completed, in creation order."""

        return [
            task
            for task in self.tasks.values()
            if task.status == TaskStatus.PENDING and self.children_ready(task.task_id)
        ]

    def blocked_dependents(self, task_id: str) -> list[str]:
        """Open tasks that transitively require `task_id`."""

        found: list[str] = []
        seen: set[str] = {task_id}
        queue = deque(self._dependents.get(task_id, []))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            if self.tasks[current].status not in TERMINAL_TASK_STATUSES:
                found.append(current)
            queue.extend(self._dependents.get(current, []))
        return found

    def all_completed(self) -> bool:
        return all(task.status == TaskStatus.COMPLETED for task in self.tasks.values())

    def open_tasks(self) -> list[TaskView]:
        return [
            task for task in self.tasks.values() if task.status not in TERMINAL_TASK_STATUSES
        ]

    def ready_roots_assigned(self) -> bool:
        """True once every ready top-level task has been assigned at least once."""

        for task in self.roots():
            if task.first_assigned_at is not None:
                continue
            if task.status == TaskStatus.PENDING and self.children_ready(task.task_id):
                return False
        return any(task.first_assigned_at is not None for task in self.tasks.values())


def _clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1
