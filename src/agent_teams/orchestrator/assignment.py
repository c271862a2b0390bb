"""Worker selection for ready tasks."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from agent_teams.orchestrator.errors import NoEligibleWorker
from agent_teams.orchestrator.models import MemberRole, MemberStatus, MemberView, TaskView

logger = logging.getLogger(__name__)

SKILL_WEIGHT = 0.5
WORKLOAD_WEIGHT = 0.3
SUCCESS_RATE_WEIGHT = 0.2
DEFAULT_SUCCESS_RATE = 0.5


@dataclass(slots=True)
class CandidateScore:
    """Score breakdown for one member considered for a task."""

    member_id: str
    score: float
    skill_match: float
    workload: int
    success_rate: float

    def to_event_details(self) -> dict[str, object]:
        return {
            "member_id": self.member_id,
            "score": round(self.score, 6),
            "skill_match": round(self.skill_match, 6),
            "workload": self.workload,
            "success_rate": round(self.success_rate, 6),
        }


def skill_match(required_skills: Iterable[str], member_skills: Iterable[str]) -> float:
    """Fraction of required skills the member has (case-insensitive); 1.0 if none required."""

    required = {skill.strip().lower() for skill in required_skills if skill.strip()}
    if not required:
        return 1.0
    owned = {skill.strip().lower() for skill in member_skills if skill.strip()}
    return len(required & owned) / len(required)


def score_candidate(
    task: TaskView,
    member: MemberView,
    *,
    success_rate: float | None,
) -> CandidateScore:
    match = skill_match(task.required_skills, member.skills)
    rate = DEFAULT_SUCCESS_RATE if success_rate is None else success_rate
    score = (
        SKILL_WEIGHT * match
        + WORKLOAD_WEIGHT * (1.0 / (1 + member.current_workload))
        + SUCCESS_RATE_WEIGHT * rate
    )
    return CandidateScore(
        member_id=member.member_id,
        score=score,
        skill_match=match,
        workload=member.current_workload,
        success_rate=rate,
    )


def eligible_candidates(task: TaskView, members: Iterable[MemberView]) -> list[MemberView]:
    """Active worker-role members with spare capacity that the task has not excluded."""

    excluded = set(task.excluded_member_ids)
    return [
        member
        for member in members
        if member.role == MemberRole.WORKER
        and member.status == MemberStatus.ACTIVE
        and member.member_id not in excluded
        and member.has_capacity
    ]


def rank_candidates(
    task: TaskView,
    members: Iterable[MemberView],
    *,
    success_rates: Mapping[str, float | None],
) -> list[CandidateScore]:
    """Score eligible members, best first.

    Ties resolve by lowest workload, then lowest member id, so selection is
    deterministic for identical inputs.
    """

    scored = [
        score_candidate(task, member, success_rate=success_rates.get(member.member_id))
        for member in eligible_candidates(task, members)
    ]
    return sorted(scored, key=lambda item: (-item.score, item.workload, item.member_id))


def assign(
    task: TaskView,
    candidates: Iterable[MemberView],
    *,
    success_rates: Mapping[str, float | None],
) -> CandidateScore:
    """Pick the best member for `task` or raise NoEligibleWorker."""

    members = list(candidates)
    ranked = rank_candidates(task, members, success_rates=success_rates)
    if not ranked:
        reason = (
            "all_candidates_excluded"
            if _all_workers_excluded(task, members)
            else "all_candidates_at_capacity"
        )
        raise NoEligibleWorker(task.task_id, reason=reason)
    best = ranked[0]
    logger.debug(
        "Selected member %s for task %s (score=%.4f, candidates=%s)",
        best.member_id,
        task.task_id,
        best.score,
        len(ranked),
    )
    return best


def has_alternative_worker(task: TaskView, members: Iterable[MemberView], *, current: str) -> bool:
    """True when some active worker other than `current` was not yet excluded for the task."""

    excluded = {*task.excluded_member_ids, current}
    return any(
        member.role == MemberRole.WORKER
        and member.status == MemberStatus.ACTIVE
        and member.member_id not in excluded
        for member in members
    )


def _all_workers_excluded(task: TaskView, members: list[MemberView]) -> bool:
    excluded = set(task.excluded_member_ids)
    workers = [
        member
        for member in members
        if member.role == MemberRole.WORKER and member.status == MemberStatus.ACTIVE
    ]
    return all(member.member_id in excluded for member in workers)
