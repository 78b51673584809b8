"""Controllers for coordination CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from dispatch_coordinator.config import Settings
from dispatch_coordinator.coordination.fanout import NotificationFanout
from dispatch_coordinator.coordination.lifecycle import LifecycleController
from dispatch_coordinator.coordination.models import (
    ExecutorUpsert,
    FeedbackQuality,
    TaskListView,
    TaskStatus,
    TaskView,
)
from dispatch_coordinator.coordination.monitor import (
    CheckInOutcome,
    DeadlineCheckIn,
    DeadlineMonitor,
    InlineCheckIn,
    ScriptedCheckIn,
)
from dispatch_coordinator.coordination.repository import CoordinationRepository
from dispatch_coordinator.coordination.routing import (
    HttpIntentRouter,
    IntentRouter,
    StaticIntentRouter,
)
from dispatch_coordinator.coordination.seed import seed_demo
from dispatch_coordinator.coordination.services import CoordinationService, SubmitIntent


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class ExecutorAddCommand:
    """CLI input for registering or updating an executor."""

    db_path: Path | None
    executor_id: str
    name: str
    role: str
    skills: tuple[str, ...]
    max_concurrent_tasks: int


@dataclass(slots=True)
class ExecutorRemoveCommand:
    db_path: Path | None
    executor_id: str


@dataclass(slots=True)
class IntentSubmitCommand:
    """CLI input for routing a free-text intent into a task."""

    db_path: Path | None
    requester_id: str
    intent: str
    router_response_path: Path | None = None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing, per user view or across all users."""

    db_path: Path | None
    user_id: str | None
    view: str
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskActionCommand:
    """CLI input for start/cancel operations."""

    db_path: Path | None
    task_id: str
    actor_id: str | None


@dataclass(slots=True)
class TaskCompleteCommand:
    db_path: Path | None
    task_id: str
    actor_id: str | None
    result: str | None


@dataclass(slots=True)
class TaskReassignCommand:
    db_path: Path | None
    task_id: str
    new_assignee_id: str
    reason: str
    actor_id: str | None


@dataclass(slots=True)
class TaskAssignCommand:
    db_path: Path | None
    task_id: str
    executor_id: str | None


@dataclass(slots=True)
class TaskFeedbackCommand:
    db_path: Path | None
    task_id: str
    actor_id: str
    quality: str | None
    kudos: bool | None


@dataclass(slots=True)
class TaskMessageCommand:
    db_path: Path | None
    task_id: str
    author_id: str
    content: str


@dataclass(slots=True)
class TaskImportCommand:
    """CLI input for importing remote task records from a JSON file."""

    db_path: Path | None
    path: Path


@dataclass(slots=True)
class WinsCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class MonitorCommand:
    """CLI input for deadline monitor execution."""

    db_path: Path | None
    once: bool
    max_ticks: int | None
    interval_seconds: float | None
    confirmed_task_ids: tuple[str, ...] = ()


@dataclass(slots=True)
class CoordinationRuntime:
    """Wired components for one CLI invocation."""

    settings: Settings
    repository: CoordinationRepository
    fanout: NotificationFanout
    controller: LifecycleController


class CoordinationCliController:
    """Coordinates executor, task, intent and monitor CLI operations."""

    def add_executor(self, command: ExecutorAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            executor = repository.upsert_executor(
                ExecutorUpsert(
                    executor_id=command.executor_id,
                    name=command.name,
                    role=command.role,
                    skills=command.skills,
                    max_concurrent_tasks=command.max_concurrent_tasks,
                ),
            )
        return [
            f"Executor saved: {executor.executor_id} name={executor.name} "
            f"load={executor.load}/{executor.max_concurrent_tasks}",
        ]

    def list_executors(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            executors = repository.list_executors()
        lines = [f"Executors: {len(executors)}"]
        for executor in executors:
            flag = " OVER CAPACITY" if executor.load > executor.max_concurrent_tasks else ""
            lines.append(
                f"  {executor.executor_id} name={executor.name} role={executor.role or '-'} "
                f"skills={','.join(executor.skills) or '-'} "
                f"load={executor.load}/{executor.max_concurrent_tasks}{flag}",
            )
        return lines

    def remove_executor(self, command: ExecutorRemoveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.delete_executor(command.executor_id)
        return [f"Executor removed: {command.executor_id}"]

    def seed(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            summary = seed_demo(repository)
        return [f"Seeded demo data: executors={summary.executors} tasks={summary.tasks}"]

    def submit_intent(self, command: IntentSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        router = _router(settings, command.router_response_path)
        try:
            with _runtime(settings) as runtime:
                service = CoordinationService(
                    repository=runtime.repository,
                    controller=runtime.controller,
                    router=router,
                    router_timeout_seconds=settings.router.timeout_seconds,
                )
                outcome = service.submit_intent(
                    SubmitIntent(intent=command.intent, requester_id=command.requester_id),
                )
        finally:
            if isinstance(router, HttpIntentRouter):
                router.close()

        task = outcome.task
        lines = [
            f"Task created: task_id={task.task_id} tier={task.execution_tier.value} "
            f"status={task.status.value} assignee={task.assignee_id or '-'}",
            f"Routing: {outcome.routed.routing_reason or '-'}",
        ]
        if outcome.win is not None:
            lines.append(f"Result: {task.result or '-'}")
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _runtime(settings) as runtime:
            if command.user_id:
                service = CoordinationService(
                    repository=runtime.repository,
                    controller=runtime.controller,
                )
                tasks = service.list_by_view(command.user_id, _parse_view(command.view))
                if status_filter is not None:
                    tasks = [task for task in tasks if task.status is status_filter]
                tasks = tasks[: command.limit]
            else:
                tasks = runtime.repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        escalation = task.escalation
        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Tier: {task.execution_tier.value}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Requester: {task.requester_id if task.requester_revealed else 'anonymous'}",
            f"Assignee: {task.assignee_id or '-'}",
            f"Skills: {', '.join(task.required_skills) or '-'}",
            f"Deadline: {task.deadline.isoformat() if task.deadline else '-'}",
            f"Started: {task.started_at.isoformat() if task.started_at else '-'}",
            "Escalation: "
            f"checked_50={escalation.checked_at_50} warned_75={escalation.warned_at_75} "
            f"reassigned_90={escalation.reassigned_at_90} "
            f"manual_review={escalation.manual_review} "
            f"previous={','.join(escalation.previous_assignee_ids) or '-'}",
            f"Result: {task.result or '-'}",
            f"Messages: {len(details.messages)}",
        ]
        for message in details.messages:
            lines.append(
                f"  [{message.created_at.isoformat()}] {message.author_id or 'system'}: "
                f"{message.content}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'}"
                f" -> {event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def start_task(self, command: TaskActionCommand) -> list[str]:
        if not command.actor_id:
            raise ValueError("--actor is required to start a task.")
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.controller.start_task(command.task_id, command.actor_id)
        return [f"Task started: {_task_line(task)}"]

    def complete_task(self, command: TaskCompleteCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            completed = runtime.controller.complete_task(
                command.task_id,
                command.actor_id,
                command.result,
            )
        return [
            f"Task completed: {_task_line(completed.task)}",
            f"Shared win: {completed.win.task_title} by {completed.win.completed_by_name}",
        ]

    def reassign_task(self, command: TaskReassignCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.controller.reassign_task(
                command.task_id,
                command.new_assignee_id,
                command.reason,
                actor_id=command.actor_id,
            )
        return [f"Task reassigned: {_task_line(task)}"]

    def cancel_task(self, command: TaskActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.controller.cancel_task(command.task_id, command.actor_id)
        return [f"Task cancelled: {_task_line(task)}"]

    def assign_task(self, command: TaskAssignCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.controller.assign_task(command.task_id, command.executor_id)
        return [f"Task assigned: {_task_line(task)}"]

    def submit_feedback(self, command: TaskFeedbackCommand) -> list[str]:
        quality = None
        if command.quality is not None:
            try:
                quality = FeedbackQuality(command.quality)
            except ValueError as error:
                raise ValueError(f"Unsupported feedback quality: {command.quality!r}") from error
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.controller.submit_feedback(
                command.task_id,
                command.actor_id,
                quality=quality,
                kudos=command.kudos,
            )
        return [f"Feedback saved: {_task_line(task)}"]

    def post_message(self, command: TaskMessageCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            message = runtime.controller.post_message(
                command.task_id,
                command.author_id,
                command.content,
            )
        return [f"Message posted: {message.message_id} on task {message.task_id}"]

    def import_tasks(self, command: TaskImportCommand) -> list[str]:
        try:
            payload = json.loads(command.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as error:
            raise ValueError(f"Invalid JSON in {command.path}: {error}") from error
        records = payload.get("tasks") if isinstance(payload, dict) else payload
        if not isinstance(records, list) or not all(isinstance(item, dict) for item in records):
            raise ValueError("Import file must hold a list of task objects.")
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            imported = repository.import_remote_tasks(records)
        return [f"Imported tasks: {imported}"]

    def wins(self, command: WinsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            wins = repository.list_shared_wins(limit=command.limit)
        lines = [f"Shared wins: {len(wins)}"]
        for win in wins:
            lines.append(
                f"  {win.completed_at.isoformat()} {win.task_title} "
                f"by {win.completed_by_name} ({win.execution_tier.value})",
            )
        return lines

    def monitor(self, command: MonitorCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.interval_seconds is not None:
            settings.monitor.interval_seconds = command.interval_seconds
        settings.validate()

        check_in: DeadlineCheckIn = InlineCheckIn()
        if command.confirmed_task_ids:
            check_in = ScriptedCheckIn(
                dict.fromkeys(command.confirmed_task_ids, CheckInOutcome.CONFIRMED),
                default=CheckInOutcome.UNSUPPORTED,
            )

        with _runtime(settings) as runtime:
            monitor = DeadlineMonitor(
                controller=runtime.controller,
                check_in=check_in,
                interval_seconds=settings.monitor.interval_seconds,
                check_threshold=settings.monitor.check_threshold,
                warn_threshold=settings.monitor.warn_threshold,
                reassign_threshold=settings.monitor.reassign_threshold,
            )
            if command.once:
                summary = monitor.run_once()
            else:
                summary = monitor.run_loop(max_ticks=command.max_ticks)

        return [
            "Monitor summary: "
            f"scanned={summary.scanned} checks={summary.checks} warnings={summary.warnings} "
            f"check_ins={summary.check_ins} reassigned={summary.reassigned} "
            f"manual_review={summary.manual_review} skipped={summary.skipped}",
        ]

    def doctor(self, command: DbCommand) -> tuple[list[str], bool]:
        """Check capacity rows against task assignees."""

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            violations = repository.check_capacity_invariants()
        if not violations:
            return ["Capacity invariants: OK"], True
        return [f"Capacity invariants: {len(violations)} violation(s)", *violations], False


def _task_line(task: TaskView) -> str:
    return (
        f"{task.task_id} title={task.title!r} tier={task.execution_tier.value} "
        f"status={task.status.value} priority={task.priority.value} "
        f"assignee={task.assignee_id or '-'} "
        f"deadline={task.deadline.isoformat() if task.deadline else '-'}"
    )


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value)
    except ValueError as error:
        raise ValueError(f"Unsupported task status filter: {value!r}") from error


def _parse_view(value: str) -> TaskListView:
    try:
        return TaskListView(value)
    except ValueError as error:
        raise ValueError(f"Unsupported task view: {value!r}") from error


def _router(settings: Settings, response_path: Path | None) -> IntentRouter:
    if response_path is not None:
        return StaticIntentRouter(response_path.read_text(encoding="utf-8"))
    if not settings.router.api_key:
        raise ValueError(
            "DISPATCH_ROUTER_API_KEY is not set. "
            "Set it or pass --router-response with a canned router answer.",
        )
    return HttpIntentRouter(
        base_url=settings.router.base_url,
        api_key=settings.router.api_key,
        model=settings.router.model,
        max_tokens=settings.router.max_tokens,
        max_attempts=settings.router.max_attempts,
        timeout_seconds=settings.router.timeout_seconds,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[CoordinationRepository]:
    repository = CoordinationRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _runtime(settings: Settings) -> Iterator[CoordinationRuntime]:
    with _repository(settings) as repository:
        fanout = NotificationFanout(queue_size=settings.fanout.queue_size)
        yield CoordinationRuntime(
            settings=settings,
            repository=repository,
            fanout=fanout,
            controller=LifecycleController(repository=repository, fanout=fanout),
        )
