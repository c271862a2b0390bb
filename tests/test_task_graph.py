from __future__ import annotations

from dataclasses import replace

import allure
import pytest

from agent_teams.orchestrator.errors import DecompositionInvalid
from agent_teams.orchestrator.models import MemberRole, TaskStatus
from agent_teams.orchestrator.task_graph import TaskGraph, parse_decomposition

pytestmark = [
    allure.epic("Mission Runtime"),
    allure.feature("Task Decomposition"),
]


def _task(key: str, **fields) -> dict:
    return {
        "key": key,
        "title": f"Task {key}",
        "description": f"Deliver {key}",
        "acceptance_criteria": [f"{key} is done"],
        **fields,
    }


def _parse(payload: dict, *, max_team_size: int = 5):
    return parse_decomposition(
        payload,
        max_team_size=max_team_size,
        default_max_revisions=3,
        max_concurrent_tasks=2,
    )


def test_parse_decomposition_builds_drafts_and_workers() -> None:
    decomposition = _parse(
        {
            "tasks": [
                _task("report", steps=["merge", "proofread"]),
                _task("research", parent="report", required_skills=["search"]),
                _task("charts", parent="report", depends_on=["research"], max_revisions=5),
            ],
            "workers": [
                {"specialization": "analyst", "skills": ["search", "sql"]},
                {"specialization": "designer"},
            ],
        },
    )

    drafts = {draft.key: draft for draft in decomposition.tasks}
    assert drafts["report"].steps == ("merge", "proofread")
    assert drafts["research"].parent_key == "report"
    assert drafts["research"].required_skills == ("search",)
    assert drafts["research"].max_revisions == 3
    assert drafts["charts"].depends_on == ("research",)
    assert drafts["charts"].max_revisions == 5
    assert [worker.specialization for worker in decomposition.workers] == ["analyst", "designer"]
    assert all(worker.role == MemberRole.WORKER for worker in decomposition.workers)
    assert all(worker.max_concurrent_tasks == 2 for worker in decomposition.workers)


def test_parse_decomposition_collects_every_problem() -> None:
    with pytest.raises(DecompositionInvalid) as error:
        _parse(
            {
                "tasks": [
                    _task("a", title=" "),
                    _task("b", acceptance_criteria=[]),
                    _task("c", depends_on=["ghost"], max_revisions=0),
                ],
                "workers": [{"specialization": "writer"}],
            },
        )

    problems = error.value.problems
    assert "tasks[0]: title is empty" in problems
    assert "tasks[1]: at least one acceptance criterion is required" in problems
    assert "tasks[2]: max_revisions must be a positive integer" in problems
    assert "task 'c': unknown dependency 'ghost'" in problems


def test_parse_decomposition_rejects_empty_task_list() -> None:
    with pytest.raises(DecompositionInvalid, match="no tasks"):
        _parse({"tasks": [], "workers": [{"specialization": "writer"}]})


@pytest.mark.parametrize(
    "tasks",
    [
        [_task("a", depends_on=["b"]), _task("b", depends_on=["a"])],
        [_task("parent"), _task("child", parent="parent", depends_on=["parent"])],
    ],
    ids=["sibling-cycle", "child-waits-for-parent"],
)
def test_parse_decomposition_rejects_cycles(tasks: list[dict]) -> None:
    with pytest.raises(DecompositionInvalid) as error:
        _parse({"tasks": tasks, "workers": [{"specialization": "writer"}]})

    assert any(problem.startswith("dependency cycle") for problem in error.value.problems)


def test_parse_decomposition_bounds_team_size() -> None:
    with pytest.raises(DecompositionInvalid) as too_many:
        _parse(
            {"tasks": [_task("a")], "workers": [{"specialization": f"w{i}"} for i in range(3)]},
            max_team_size=2,
        )
    with pytest.raises(DecompositionInvalid) as none:
        _parse({"tasks": [_task("a")], "workers": []})

    assert too_many.value.problems == ["workers: 3 requested, team size limit is 2"]
    assert none.value.problems == ["workers: at least one worker is required"]


def test_children_block_their_parent_until_completed(seed_team, draft) -> None:
    _, _, tasks = seed_team(
        [
            draft("report"),
            draft("research", parent_key="report"),
            draft("charts", parent_key="report", depends_on=("research",)),
        ],
    )
    graph = TaskGraph(tasks.values())

    assert [task.task_key for task in graph.ready_tasks()] == ["research"]
    assert sorted(graph.children_of(tasks["report"].task_id)) == sorted(
        [tasks["research"].task_id, tasks["charts"].task_id],
    )
    assert not graph.children_ready(tasks["report"].task_id)

    done = {
        key: replace(task, status=TaskStatus.COMPLETED)
        for key, task in tasks.items()
        if key != "report"
    }
    graph = TaskGraph([tasks["report"], *done.values()])
    assert graph.children_ready(tasks["report"].task_id)
    assert [task.task_key for task in graph.ready_tasks()] == ["report"]


def test_blocked_dependents_follow_the_graph_transitively(seed_team, draft) -> None:
    _, _, tasks = seed_team(
        [
            draft("fetch"),
            draft("clean", depends_on=("fetch",)),
            draft("publish", depends_on=("clean",)),
            draft("unrelated"),
        ],
    )
    graph = TaskGraph(
        [
            replace(tasks["fetch"], status=TaskStatus.FAILED),
            tasks["clean"],
            tasks["publish"],
            tasks["unrelated"],
        ],
    )

    blocked = graph.blocked_dependents(tasks["fetch"].task_id)

    assert sorted(blocked) == sorted([tasks["clean"].task_id, tasks["publish"].task_id])
    assert not graph.all_completed()


def test_ready_roots_assigned_waits_for_every_ready_root(seed_team, draft) -> None:
    _, _, tasks = seed_team([draft("a"), draft("b"), draft("c", depends_on=("a",))])
    graph = TaskGraph(tasks.values())
    assert not graph.ready_roots_assigned()

    assigned_at = tasks["a"].created_at
    partially = TaskGraph(
        [
            replace(tasks["a"], status=TaskStatus.ASSIGNED, first_assigned_at=assigned_at),
            tasks["b"],
            tasks["c"],
        ],
    )
    assert not partially.ready_roots_assigned()

    fully = TaskGraph(
        [
            replace(tasks["a"], status=TaskStatus.ASSIGNED, first_assigned_at=assigned_at),
            replace(tasks["b"], status=TaskStatus.ASSIGNED, first_assigned_at=assigned_at),
            tasks["c"],
        ],
    )
    assert fully.ready_roots_assigned()
