"""CLI entrypoint for dispatch-coordinator."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from dispatch_coordinator import __version__
from dispatch_coordinator.coordination.controllers import (
    CoordinationCliController,
    DbCommand,
    ExecutorAddCommand,
    ExecutorRemoveCommand,
    IntentSubmitCommand,
    MonitorCommand,
    TaskActionCommand,
    TaskAssignCommand,
    TaskCompleteCommand,
    TaskFeedbackCommand,
    TaskImportCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskMessageCommand,
    TaskReassignCommand,
    WinsCommand,
)
from dispatch_coordinator.coordination.errors import CoordinationError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CoordinationCliController()

C = TypeVar("C")
R = TypeVar("R")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (default: DISPATCH_DB_PATH or .dispatch.db).",
)


@click.group()
@click.version_option(version=__version__, prog_name="dispatch-coordinator")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for engine diagnostics.",
)
def dispatch_coordinator(log_level: str) -> None:
    """Task coordination and deadline escalation CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dispatch_coordinator.group()
def executors() -> None:
    """Executor (team member) commands."""


@executors.command("add")
@db_path_option
@click.option("--id", "executor_id", required=True, help="Executor id.")
@click.option("--name", required=True, help="Display name.")
@click.option("--role", default="", help="Role shown in routing prompts.")
@click.option("--skill", "skills", multiple=True, help="Skill tag. Can be repeated.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=5,
    show_default=True,
    help="Maximum concurrent active tasks.",
)
def executors_add(  # noqa: PLR0913
    db_path: Path | None,
    executor_id: str,
    name: str,
    role: str,
    skills: tuple[str, ...],
    max_tasks: int,
) -> None:
    """Register or update an executor."""

    _emit_lines(
        _run(
            CONTROLLER.add_executor,
            ExecutorAddCommand(
                db_path=db_path,
                executor_id=executor_id,
                name=name,
                role=role,
                skills=skills,
                max_concurrent_tasks=max_tasks,
            ),
        ),
    )


@executors.command("list")
@db_path_option
def executors_list(db_path: Path | None) -> None:
    """List executors with their current load."""

    _emit_lines(_run(CONTROLLER.list_executors, DbCommand(db_path=db_path)))


@executors.command("remove")
@db_path_option
@click.option("--id", "executor_id", required=True, help="Executor id.")
def executors_remove(db_path: Path | None, executor_id: str) -> None:
    """Remove an executor that holds no active tasks."""

    _emit_lines(
        _run(
            CONTROLLER.remove_executor,
            ExecutorRemoveCommand(db_path=db_path, executor_id=executor_id),
        ),
    )


@dispatch_coordinator.command("seed")
@db_path_option
def seed(db_path: Path | None) -> None:
    """Load the demo team and demo tasks."""

    _emit_lines(_run(CONTROLLER.seed, DbCommand(db_path=db_path)))


@dispatch_coordinator.group()
def intent() -> None:
    """Intent routing commands."""


@intent.command("submit")
@db_path_option
@click.option("--requester", "requester_id", required=True, help="Requesting user id.")
@click.option(
    "--router-response",
    "router_response_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Use canned router JSON from this file instead of calling the router API.",
)
@click.argument("text")
def intent_submit(
    db_path: Path | None,
    requester_id: str,
    router_response_path: Path | None,
    text: str,
) -> None:
    """Route a free-text request into a tracked task."""

    _emit_lines(
        _run(
            CONTROLLER.submit_intent,
            IntentSubmitCommand(
                db_path=db_path,
                requester_id=requester_id,
                intent=text,
                router_response_path=router_response_path,
            ),
        ),
    )


@dispatch_coordinator.group()
def tasks() -> None:
    """Task lifecycle commands."""


@tasks.command("list")
@db_path_option
@click.option("--user", "user_id", default=None, help="Show one user's view.")
@click.option(
    "--view",
    type=click.Choice(["assigned", "requested", "completed"]),
    default="assigned",
    show_default=True,
    help="Per-user view (with --user).",
)
@click.option(
    "--status",
    type=click.Choice(
        ["pending", "assigned", "in_progress", "completed", "reassigned", "cancelled"],
    ),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max rows to print.",
)
def tasks_list(
    db_path: Path | None,
    user_id: str | None,
    view: str,
    status: str | None,
    limit: int,
) -> None:
    """List tasks."""

    _emit_lines(
        _run(
            CONTROLLER.list_tasks,
            TaskListCommand(
                db_path=db_path,
                user_id=user_id,
                view=view,
                status=status,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show task details, thread and audit events."""

    _emit_lines(_run(CONTROLLER.inspect_task, TaskInspectCommand(db_path=db_path, task_id=task_id)))


@tasks.command("start")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--actor", "actor_id", required=True, help="Acting user id (the assignee).")
def tasks_start(db_path: Path | None, task_id: str, actor_id: str) -> None:
    """Start work on an assigned task."""

    _emit_lines(
        _run(
            CONTROLLER.start_task,
            TaskActionCommand(db_path=db_path, task_id=task_id, actor_id=actor_id),
        ),
    )


@tasks.command("complete")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--actor", "actor_id", default=None, help="Acting user id (the assignee).")
@click.option("--result", default=None, help="Result text.")
def tasks_complete(
    db_path: Path | None,
    task_id: str,
    actor_id: str | None,
    result: str | None,
) -> None:
    """Complete a task."""

    _emit_lines(
        _run(
            CONTROLLER.complete_task,
            TaskCompleteCommand(
                db_path=db_path,
                task_id=task_id,
                actor_id=actor_id,
                result=result,
            ),
        ),
    )


@tasks.command("reassign")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--to", "new_assignee_id", required=True, help="New assignee id.")
@click.option("--reason", required=True, help="Why the task moves.")
@click.option("--actor", "actor_id", default=None, help="Acting user id.")
def tasks_reassign(
    db_path: Path | None,
    task_id: str,
    new_assignee_id: str,
    reason: str,
    actor_id: str | None,
) -> None:
    """Reassign a task to another executor."""

    _emit_lines(
        _run(
            CONTROLLER.reassign_task,
            TaskReassignCommand(
                db_path=db_path,
                task_id=task_id,
                new_assignee_id=new_assignee_id,
                reason=reason,
                actor_id=actor_id,
            ),
        ),
    )


@tasks.command("cancel")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--actor", "actor_id", default=None, help="Acting user id.")
def tasks_cancel(db_path: Path | None, task_id: str, actor_id: str | None) -> None:
    """Cancel a task and free its assignee's capacity."""

    _emit_lines(
        _run(
            CONTROLLER.cancel_task,
            TaskActionCommand(db_path=db_path, task_id=task_id, actor_id=actor_id),
        ),
    )


@tasks.command("assign")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--executor",
    "executor_id",
    default=None,
    help="Executor id; picked by skill and capacity when omitted.",
)
def tasks_assign(db_path: Path | None, task_id: str, executor_id: str | None) -> None:
    """Assign a pending task."""

    _emit_lines(
        _run(
            CONTROLLER.assign_task,
            TaskAssignCommand(db_path=db_path, task_id=task_id, executor_id=executor_id),
        ),
    )


@tasks.command("feedback")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--actor", "actor_id", required=True, help="Requester id.")
@click.option(
    "--quality",
    type=click.Choice(["thumbs_up", "thumbs_down"]),
    default=None,
    help="Quality rating.",
)
@click.option("--kudos/--no-kudos", default=None, help="Give kudos to the assignee.")
def tasks_feedback(
    db_path: Path | None,
    task_id: str,
    actor_id: str,
    quality: str | None,
    kudos: bool | None,
) -> None:
    """Rate a completed task."""

    _emit_lines(
        _run(
            CONTROLLER.submit_feedback,
            TaskFeedbackCommand(
                db_path=db_path,
                task_id=task_id,
                actor_id=actor_id,
                quality=quality,
                kudos=kudos,
            ),
        ),
    )


@tasks.command("message")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--author", "author_id", required=True, help="Author id (assignee or requester).")
@click.argument("content")
def tasks_message(db_path: Path | None, task_id: str, author_id: str, content: str) -> None:
    """Post a message on a task thread."""

    _emit_lines(
        _run(
            CONTROLLER.post_message,
            TaskMessageCommand(
                db_path=db_path,
                task_id=task_id,
                author_id=author_id,
                content=content,
            ),
        ),
    )


@tasks.command("import")
@db_path_option
@click.argument("path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def tasks_import(db_path: Path | None, path: Path) -> None:
    """Import task records exported by the remote task service (JSON)."""

    _emit_lines(_run(CONTROLLER.import_tasks, TaskImportCommand(db_path=db_path, path=path)))


@dispatch_coordinator.command("wins")
@db_path_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max wins to print.",
)
def wins(db_path: Path | None, limit: int) -> None:
    """Show the shared wins feed."""

    _emit_lines(_run(CONTROLLER.wins, WinsCommand(db_path=db_path, limit=limit)))


@dispatch_coordinator.command("monitor")
@db_path_option
@click.option("--once/--loop", default=True, show_default=True, help="Single tick or loop.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many ticks.",
)
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between ticks (default: DISPATCH_MONITOR_INTERVAL_SECONDS).",
)
@click.option(
    "--confirm",
    "confirmed_task_ids",
    multiple=True,
    help="Task id whose assignee confirms at the check-in. Can be repeated.",
)
def monitor(
    db_path: Path | None,
    once: bool,
    max_ticks: int | None,
    interval_seconds: float | None,
    confirmed_task_ids: tuple[str, ...],
) -> None:
    """Run the deadline monitor."""

    _emit_lines(
        _run(
            CONTROLLER.monitor,
            MonitorCommand(
                db_path=db_path,
                once=once,
                max_ticks=max_ticks,
                interval_seconds=interval_seconds,
                confirmed_task_ids=confirmed_task_ids,
            ),
        ),
    )


@dispatch_coordinator.command("doctor")
@db_path_option
def doctor(db_path: Path | None) -> None:
    """Verify executor capacity rows match task assignees."""

    lines, ok = _run(CONTROLLER.doctor, DbCommand(db_path=db_path))
    _emit_lines(lines)
    if not ok:
        raise click.ClickException("Capacity invariants violated.")


def _run(handler: Callable[[C], R], command: C) -> R:
    try:
        return handler(command)
    except (CoordinationError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    dispatch_coordinator()
