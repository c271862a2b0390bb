from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime

import allure
import pytest

from agent_teams.orchestrator.assignment import (
    assign,
    eligible_candidates,
    has_alternative_worker,
    rank_candidates,
    score_candidate,
    skill_match,
)
from agent_teams.orchestrator.errors import NoEligibleWorker
from agent_teams.orchestrator.models import MemberRole, MemberStatus, MemberView

pytestmark = [
    allure.epic("Mission Runtime"),
    allure.feature("Worker Assignment"),
]


def _member(
    member_id: str,
    *,
    skills: tuple[str, ...] = (),
    workload: int = 0,
    capacity: int = 3,
    role: MemberRole = MemberRole.WORKER,
    status: MemberStatus = MemberStatus.ACTIVE,
) -> MemberView:
    return MemberView(
        member_id=member_id,
        team_id="team-1",
        role=role,
        specialization="generalist",
        skills=skills,
        status=status,
        current_workload=workload,
        max_concurrent_tasks=capacity,
        joined_at=datetime(2026, 10, 17, tzinfo=UTC),
    )


@pytest.fixture()
def task(seed_team, draft):
    _, _, tasks = seed_team([draft("a", required_skills=("SQL", "charts"))])
    return tasks["a"]


def test_skill_match_is_a_case_insensitive_fraction() -> None:
    assert skill_match([], ["sql"]) == 1.0
    assert skill_match(["SQL", "charts"], ["sql"]) == 0.5
    assert skill_match(["sql"], []) == 0.0


def test_score_combines_skill_workload_and_success_rate(task) -> None:
    member = _member("m-1", skills=("sql", "charts"), workload=1)

    scored = score_candidate(task, member, success_rate=None)

    # 0.5 * 1.0 + 0.3 * 1/2 + 0.2 * 0.5
    assert scored.score == pytest.approx(0.75)
    assert scored.success_rate == 0.5
    assert scored.to_event_details()["workload"] == 1


def test_success_history_breaks_an_otherwise_equal_match(task) -> None:
    members = [_member("m-1", skills=("sql",)), _member("m-2", skills=("sql",))]

    ranked = rank_candidates(task, members, success_rates={"m-1": 0.2, "m-2": 0.9})

    assert [item.member_id for item in ranked] == ["m-2", "m-1"]


def test_equal_scores_resolve_by_member_id(task) -> None:
    members = [_member("m-b"), _member("m-a")]

    best = assign(task, members, success_rates={})

    assert best.member_id == "m-a"


def test_only_active_workers_with_capacity_are_eligible(task) -> None:
    members = [
        _member("manager", role=MemberRole.MANAGER),
        _member("offline", status=MemberStatus.OFFLINE),
        _member("busy", workload=3, capacity=3),
        _member("excluded"),
        _member("free"),
    ]
    task = replace(task, excluded_member_ids=("excluded",))

    assert [member.member_id for member in eligible_candidates(task, members)] == ["free"]


def test_assign_raises_when_everyone_is_at_capacity(task) -> None:
    members = [_member("m-1", workload=1, capacity=1), _member("m-2", workload=1, capacity=1)]

    with pytest.raises(NoEligibleWorker) as error:
        assign(task, members, success_rates={})

    assert error.value.reason == "all_candidates_at_capacity"
    assert error.value.task_id == task.task_id


def test_assign_reports_exclusion_of_every_worker(task) -> None:
    task = replace(task, excluded_member_ids=("m-1", "m-2"))

    with pytest.raises(NoEligibleWorker) as error:
        assign(task, [_member("m-1"), _member("m-2")], success_rates={})

    assert error.value.reason == "all_candidates_excluded"


def test_has_alternative_worker_ignores_current_and_excluded(task) -> None:
    members = [_member("m-1"), _member("m-2"), _member("lead", role=MemberRole.MANAGER)]

    assert has_alternative_worker(task, members, current="m-1")
    assert not has_alternative_worker(
        replace(task, excluded_member_ids=("m-2",)),
        members,
        current="m-1",
    )
