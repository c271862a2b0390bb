"""Durable per-task step checkpoints used to resume interrupted work."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from agent_teams.orchestrator.errors import CheckpointConflict
from agent_teams.orchestrator.models import CheckpointView
from agent_teams.orchestrator.repository import TeamRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ResumePoint:
    """Where a task's next execution pass picks up."""

    next_step: int
    context: dict[str, Any]
    resumed: bool


class CheckpointStore:
    """Append-only checkpoint log keyed by `(task_id, step_number)`."""

    def __init__(self, repository: TeamRepository) -> None:
        self.repository = repository

    def save(self, task_id: str, step_number: int, context: dict[str, Any]) -> CheckpointView:
        """Persist the checkpoint taken after `step_number` completed.

        Re-saving an already persisted step returns the stored checkpoint, so a
        replayed step never creates a second record.
        """

        try:
            checkpoint = self.repository.append_checkpoint(
                task_id,
                step_number=step_number,
                context=context,
            )
        except CheckpointConflict as error:
            existing = self.repository.get_checkpoint(task_id, step_number)
            if existing is None:
                raise
            logger.info(
                "Checkpoint step %s for task %s already persisted (latest=%s); keeping stored one",
                step_number,
                task_id,
                error.latest_step,
            )
            return existing
        logger.debug("Saved checkpoint step %s for task %s", step_number, task_id)
        return checkpoint

    def latest(self, task_id: str) -> CheckpointView | None:
        return self.repository.latest_checkpoint(task_id)

    def resume_point(self, task_id: str, *, initial_context: dict[str, Any]) -> ResumePoint:
        """Continue after the highest checkpoint, or start at step 1 with `initial_context`."""

        latest = self.latest(task_id)
        if latest is None:
            return ResumePoint(next_step=1, context=dict(initial_context), resumed=False)
        return ResumePoint(
            next_step=latest.step_number + 1,
            context=dict(latest.context),
            resumed=True,
        )

    def has_checkpoint(self, task_id: str) -> bool:
        return self.repository.latest_step(task_id) > 0

    def history(self, task_id: str) -> list[CheckpointView]:
        return self.repository.list_checkpoints(task_id)

    def purge_team(self, team_id: str) -> int:
        """Drop checkpoints of an archived team."""

        removed = self.repository.purge_team_checkpoints(team_id)
        logger.info("Purged %s checkpoints of archived team %s", removed, team_id)
        return removed
