"""CLI entrypoint for agent-teams."""

import logging
from pathlib import Path

import rich_click as click

from agent_teams import __version__
from agent_teams.orchestrator.controllers import (
    TaskInspectCommand,
    TaskReviewCommand,
    TeamCreateCommand,
    TeamEventsCommand,
    TeamInspectCommand,
    TeamListTasksCommand,
    TeamRunCommand,
    TeamsCliController,
)
from agent_teams.orchestrator.errors import OrchestratorError
from agent_teams.orchestrator.models import (
    FailurePolicy,
    ReviewDecision,
    ReviewMode,
    TaskStatus,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TeamsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-teams")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging level for orchestration diagnostics.",
)
def agent_teams(log_level: str) -> None:
    """Multi-agent team orchestration CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_teams.group()
def team() -> None:
    """Mission lifecycle commands."""


@team.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--goal", required=True, help="Goal the team should accomplish.")
@click.option(
    "--budget-usd",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Abort the mission once reasoning costs exceed this amount.",
)
@click.option(
    "--failure-policy",
    type=click.Choice([policy.value for policy in FailurePolicy]),
    default=FailurePolicy.CONTINUE.value,
    show_default=True,
    help="`continue` finishes independent work; `fail_fast` aborts on the first failed task.",
)
@click.option(
    "--review-mode",
    type=click.Choice([mode.value for mode in ReviewMode]),
    default=ReviewMode.AUTO.value,
    show_default=True,
    help="`auto` lets the manager engine review; `manual` waits for `task review`.",
)
@click.option("--run/--no-run", default=False, show_default=True, help="Run right away.")
def team_create(  # noqa: PLR0913
    db_path: Path | None,
    goal: str,
    budget_usd: float | None,
    failure_policy: str,
    review_mode: str,
    run: bool,
) -> None:
    """Create a mission for a goal."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.create_team(
                TeamCreateCommand(
                    db_path=db_path,
                    goal=goal,
                    budget_usd=budget_usd,
                    failure_policy=failure_policy,
                    review_mode=review_mode,
                    run=run,
                ),
            ),
        ),
    )


@team.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("team_ids", nargs=-1, required=True)
def team_run(db_path: Path | None, team_ids: tuple[str, ...]) -> None:
    """Drive missions until they finish or wait for review; several run concurrently."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_teams(TeamRunCommand(db_path=db_path, team_ids=team_ids)),
        ),
    )


@team.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("team_id")
def team_show(db_path: Path | None, team_id: str) -> None:
    """Show mission status, members and task counts."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.show_team(TeamInspectCommand(db_path=db_path, team_id=team_id)),
        ),
    )


@team.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.argument("team_id")
def team_tasks(db_path: Path | None, status: str | None, team_id: str) -> None:
    """List mission tasks."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.list_tasks(
                TeamListTasksCommand(db_path=db_path, team_id=team_id, status=status),
            ),
        ),
    )


@team.command("abort")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("team_id")
def team_abort(db_path: Path | None, team_id: str) -> None:
    """Request mission abort."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.abort_team(TeamInspectCommand(db_path=db_path, team_id=team_id)),
        ),
    )


@team.command("archive")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("team_id")
def team_archive(db_path: Path | None, team_id: str) -> None:
    """Archive a finished mission and drop its checkpoints."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.archive_team(TeamInspectCommand(db_path=db_path, team_id=team_id)),
        ),
    )


@team.command("events")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=5000),
    default=200,
    show_default=True,
    help="Max most recent events to print.",
)
@click.argument("team_id")
def team_events(db_path: Path | None, limit: int, team_id: str) -> None:
    """Print the mission audit log."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.list_events(
                TeamEventsCommand(db_path=db_path, team_id=team_id, limit=limit),
            ),
        ),
    )


@team.command("usage")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("team_id")
def team_usage(db_path: Path | None, team_id: str) -> None:
    """Print reasoning engine token and cost totals."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.usage(TeamInspectCommand(db_path=db_path, team_id=team_id))),
    )


@agent_teams.group()
def task() -> None:
    """Task inspection and review commands."""


@task.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def task_show(db_path: Path | None, task_id: str) -> None:
    """Show task details, revisions and checkpoint count."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.show_task(TaskInspectCommand(db_path=db_path, task_id=task_id)),
        ),
    )


@task.command("checkpoints")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def task_checkpoints(db_path: Path | None, task_id: str) -> None:
    """List persisted checkpoints of a task."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.list_checkpoints(
                TaskInspectCommand(db_path=db_path, task_id=task_id),
            ),
        ),
    )


@task.command("review")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--decision",
    type=click.Choice([decision.value for decision in ReviewDecision]),
    required=True,
    help="Review verdict.",
)
@click.option("--feedback", default="", help="Feedback; required for request_revision.")
@click.argument("task_id")
def task_review(db_path: Path | None, decision: str, feedback: str, task_id: str) -> None:
    """Submit a review decision for a task waiting in review."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.review_task(
                TaskReviewCommand(
                    db_path=db_path,
                    task_id=task_id,
                    decision=decision,
                    feedback=feedback,
                ),
            ),
        ),
    )


def _guarded(action) -> list[str]:
    try:
        return action()
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_teams()
