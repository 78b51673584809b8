"""Persistent entity store for tasks, executors and their capacity rows."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from dispatch_coordinator.coordination.errors import InvalidStateError, NotFoundError
from dispatch_coordinator.coordination.mapping import task_from_remote
from dispatch_coordinator.coordination.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    EscalationState,
    ExecutionTier,
    ExecutorUpsert,
    ExecutorView,
    FeedbackQuality,
    SharedWin,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskFeedback,
    TaskMessageView,
    TaskPriority,
    TaskStatus,
    TaskView,
)
from dispatch_coordinator.storage.alembic_runner import upgrade_head
from dispatch_coordinator.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from dispatch_coordinator.storage.sqlmodel_models import (
    AssignmentHistoryRow,
    ExecutorAssignmentRow,
    ExecutorRow,
    SharedWinRow,
    TaskEventRow,
    TaskMessageRow,
    TaskRow,
)

logger = logging.getLogger(__name__)

SYSTEM_ROLE = "assistant"
USER_ROLE = "user"


class CoordinationRepository:
    """Entity store facade backed by SQLModel + SQLite.

    Every ``apply_*`` method is one transaction: the task row, the executor
    capacity rows, the audit event and the thread message commit together or
    not at all. Status transitions are guarded with
    ``UPDATE ... WHERE status = <expected>`` so a writer working from a stale
    read is rejected instead of overwriting a concurrent change.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- executors -----------------------------------------------------------

    def upsert_executor(self, payload: ExecutorUpsert) -> ExecutorView:
        """Create or update an executor profile; active assignments are kept."""

        if payload.max_concurrent_tasks < 1:
            raise ValueError(
                f"max_concurrent_tasks must be >= 1, got {payload.max_concurrent_tasks}",
            )
        executor_id = payload.executor_id.strip()
        if not executor_id:
            raise ValueError("Executor id must not be empty.")

        now = to_db_datetime(utc_now())
        skills_json = json.dumps(list(dict.fromkeys(payload.skills)), ensure_ascii=False)
        with Session(self.engine) as session:
            row = session.get(ExecutorRow, executor_id)
            if row is None:
                row = ExecutorRow(
                    executor_id=executor_id,
                    name=payload.name,
                    role=payload.role,
                    skills_json=skills_json,
                    max_concurrent_tasks=payload.max_concurrent_tasks,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.name = payload.name
                row.role = payload.role
                row.skills_json = skills_json
                row.max_concurrent_tasks = payload.max_concurrent_tasks
                row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_executor_view(row, self._current_task_ids(session, executor_id))

    def get_executor(self, executor_id: str) -> ExecutorView | None:
        with Session(self.engine) as session:
            row = session.get(ExecutorRow, executor_id)
            if row is None:
                return None
            return _to_executor_view(row, self._current_task_ids(session, executor_id))

    def list_executors(self) -> list[ExecutorView]:
        """All executors in registration order (the scorer's tie-break order)."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutorRow).order_by(
                    col(ExecutorRow.created_at).asc(),
                    col(ExecutorRow.executor_id).asc(),
                ),
            ).all()
            assignments = session.exec(
                select(ExecutorAssignmentRow).order_by(
                    col(ExecutorAssignmentRow.assigned_at).asc(),
                    col(ExecutorAssignmentRow.task_id).asc(),
                ),
            ).all()
        task_ids: dict[str, list[str]] = defaultdict(list)
        for assignment in assignments:
            task_ids[assignment.executor_id].append(assignment.task_id)
        return [_to_executor_view(row, task_ids.get(row.executor_id, [])) for row in rows]

    def delete_executor(self, executor_id: str) -> None:
        """Remove an executor that holds no active tasks."""

        with Session(self.engine) as session:
            row = session.get(ExecutorRow, executor_id)
            if row is None:
                raise NotFoundError(f"Executor not found: {executor_id}")
            active = self._current_task_ids(session, executor_id)
            if active:
                raise InvalidStateError(
                    f"Executor {executor_id} still holds {len(active)} active task(s); "
                    "reassign or cancel them first.",
                )
            session.delete(row)
            session.commit()

    # -- task reads ----------------------------------------------------------

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            return _to_task_view(row) if row is not None else None

    def require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(TaskRow).order_by(col(TaskRow.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_active_monitored_tasks(self) -> list[TaskView]:
        """Active tasks with both a start time and a deadline."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(
                    col(TaskRow.status).in_([status.value for status in ACTIVE_STATUSES]),
                    col(TaskRow.started_at).is_not(None),
                    col(TaskRow.deadline).is_not(None),
                )
                .order_by(col(TaskRow.deadline).asc(), col(TaskRow.task_id).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_assigned_to(self, user_id: str) -> list[TaskView]:
        """Open tasks the user is currently responsible for, soonest deadline first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(
                    TaskRow.assignee_id == user_id,
                    col(TaskRow.status).in_([status.value for status in ACTIVE_STATUSES]),
                )
                .order_by(
                    col(TaskRow.deadline).is_(None),
                    col(TaskRow.deadline).asc(),
                    col(TaskRow.created_at).asc(),
                ),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_requested_by(self, user_id: str) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(TaskRow.requester_id == user_id)
                .order_by(col(TaskRow.created_at).desc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_completed_involving(self, user_id: str) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(
                    TaskRow.status == TaskStatus.COMPLETED.value,
                    or_(TaskRow.assignee_id == user_id, TaskRow.requester_id == user_id),
                )
                .order_by(col(TaskRow.completed_at).desc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task with its discussion thread and audit events."""

        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                return None
            message_rows = session.exec(
                select(TaskMessageRow)
                .where(TaskMessageRow.task_id == task_id)
                .order_by(col(TaskMessageRow.created_at).asc()),
            ).all()
            event_rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.id).asc()),
            ).all()
            task = _to_task_view(row)

        return TaskDetails(
            task=task,
            messages=[_to_message_view(message) for message in message_rows],
            events=[_to_event_view(event) for event in event_rows],
        )

    def list_shared_wins(self, *, limit: int = 20) -> list[SharedWin]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SharedWinRow).order_by(col(SharedWinRow.completed_at).desc()).limit(limit),
            ).all()
        return [_to_shared_win(row) for row in rows]

    # -- compound writes -----------------------------------------------------

    def insert_task(
        self,
        payload: TaskCreate,
        *,
        assignee_id: str | None = None,
        assignment_reason: str | None = None,
        over_capacity: bool = False,
        degraded: bool = False,
    ) -> TaskView:
        """Create a task and, when assigned, its capacity row in one transaction."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        status = TaskStatus.ASSIGNED if assignee_id else TaskStatus.PENDING
        with Session(self.engine) as session:
            row = TaskRow(
                task_id=task_id,
                title=payload.title,
                description=payload.description,
                original_intent=payload.original_intent,
                requester_id=payload.requester_id,
                assignee_id=assignee_id,
                execution_tier=payload.execution_tier.value,
                status=status.value,
                priority=payload.priority.value,
                required_skills_json=json.dumps(list(payload.required_skills), ensure_ascii=False),
                routing_reason=payload.routing_reason,
                estimated_minutes=payload.estimated_minutes,
                deadline=to_db_datetime(payload.deadline) if payload.deadline else None,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
                previous_assignee_ids_json="[]",
            )
            session.add(row)
            session.flush()
            details: dict[str, object] = {
                "execution_tier": payload.execution_tier.value,
                "priority": payload.priority.value,
            }
            if assignee_id:
                executor = self._require_executor_row(session, assignee_id)
                self._attach_assignment(
                    session=session,
                    task_id=task_id,
                    from_executor_id=None,
                    executor=executor,
                    reason=assignment_reason or "Assigned at creation",
                    over_capacity=over_capacity,
                    degraded=degraded,
                    now=now,
                )
                details.update(
                    {
                        "assignee_id": assignee_id,
                        "reason": assignment_reason,
                        "over_capacity": over_capacity,
                        "degraded": degraded,
                    },
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=status,
                actor_id=payload.requester_id,
                details=details,
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def apply_assignment(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        expected_status: TaskStatus,
        executor_id: str,
        reason: str,
        over_capacity: bool = False,
        degraded: bool = False,
    ) -> TaskView:
        """Give a pending task its first assignee."""

        now = utc_now()
        with Session(self.engine) as session:
            executor = self._require_executor_row(session, executor_id)
            self._guarded_update(
                session=session,
                task_id=task_id,
                expected_status=expected_status,
                expected_assignee_id=None,
                values={
                    "status": TaskStatus.ASSIGNED.value,
                    "assignee_id": executor_id,
                    "updated_at": to_db_datetime(now),
                },
            )
            self._attach_assignment(
                session=session,
                task_id=task_id,
                from_executor_id=None,
                executor=executor,
                reason=reason,
                over_capacity=over_capacity,
                degraded=degraded,
                now=now,
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="assigned",
                status_from=expected_status,
                status_to=TaskStatus.ASSIGNED,
                actor_id=None,
                details={
                    "assignee_id": executor_id,
                    "reason": reason,
                    "over_capacity": over_capacity,
                    "degraded": degraded,
                },
            )
            session.commit()
            return self._task_view(session, task_id)

    def apply_start(
        self,
        *,
        task_id: str,
        expected_status: TaskStatus,
        actor_id: str,
    ) -> TaskView:
        now = utc_now()
        with Session(self.engine) as session:
            self._guarded_update(
                session=session,
                task_id=task_id,
                expected_status=expected_status,
                expected_assignee_id=actor_id,
                values={
                    "status": TaskStatus.IN_PROGRESS.value,
                    "started_at": to_db_datetime(now),
                    "updated_at": to_db_datetime(now),
                },
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="started",
                status_from=expected_status,
                status_to=TaskStatus.IN_PROGRESS,
                actor_id=actor_id,
                details={},
            )
            session.commit()
            return self._task_view(session, task_id)

    def apply_completion(
        self,
        *,
        task_id: str,
        expected_status: TaskStatus,
        actor_id: str | None,
        result: str | None,
    ) -> tuple[TaskView, SharedWin]:
        """Complete a task, free its capacity row and record the shared win."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._require_task_row(session, task_id)
            assignee_id = row.assignee_id
            self._guarded_update(
                session=session,
                task_id=task_id,
                expected_status=expected_status,
                expected_assignee_id=assignee_id,
                values={
                    "status": TaskStatus.COMPLETED.value,
                    "completed_at": to_db_datetime(now),
                    "result": result,
                    "requester_revealed": True,
                    "updated_at": to_db_datetime(now),
                },
            )
            freed = self._detach_assignments(session=session, task_id=task_id)

            completed_by = session.get(ExecutorRow, assignee_id) if assignee_id else None
            win_row = SharedWinRow(
                win_id=str(uuid4()),
                task_id=task_id,
                task_title=row.title,
                completed_by_id=assignee_id,
                completed_by_name=completed_by.name if completed_by else "AI",
                completed_by_role=completed_by.role if completed_by else "Assistant",
                execution_tier=row.execution_tier,
                completed_at=to_db_datetime(now),
            )
            session.add(win_row)
            self._add_message(
                session=session,
                task_id=task_id,
                author_id=None,
                role=SYSTEM_ROLE,
                content=(
                    f"Task completed by {completed_by.name}"
                    if completed_by
                    else result or "Task completed by AI"
                ),
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=expected_status,
                status_to=TaskStatus.COMPLETED,
                actor_id=actor_id,
                details={"freed_executor_ids": freed, "win_id": win_row.win_id},
            )
            session.commit()
            session.refresh(win_row)
            return self._task_view(session, task_id), _to_shared_win(win_row)

    def apply_reassignment(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        expected_status: TaskStatus,
        expected_assignee_id: str | None,
        new_assignee_id: str,
        reason: str,
        actor_id: str | None = None,
        over_capacity: bool = False,
        degraded: bool = False,
    ) -> TaskView:
        """Move a task to a new assignee, keeping both capacity sets consistent."""

        now = utc_now()
        with Session(self.engine) as session:
            executor = self._require_executor_row(session, new_assignee_id)
            row = self._require_task_row(session, task_id)
            previous_ids = _json_list(row.previous_assignee_ids_json)
            if expected_assignee_id and expected_assignee_id not in previous_ids:
                previous_ids.append(expected_assignee_id)
            self._guarded_update(
                session=session,
                task_id=task_id,
                expected_status=expected_status,
                expected_assignee_id=expected_assignee_id,
                values={
                    "status": TaskStatus.REASSIGNED.value,
                    "assignee_id": new_assignee_id,
                    "previous_assignee_ids_json": json.dumps(previous_ids),
                    "updated_at": to_db_datetime(now),
                },
            )
            freed = self._detach_assignments(session=session, task_id=task_id)
            self._attach_assignment(
                session=session,
                task_id=task_id,
                from_executor_id=expected_assignee_id,
                executor=executor,
                reason=reason,
                over_capacity=over_capacity,
                degraded=degraded,
                now=now,
            )
            self._add_message(
                session=session,
                task_id=task_id,
                author_id=None,
                role=SYSTEM_ROLE,
                content=(
                    f"Task reassigned from {expected_assignee_id or 'nobody'} "
                    f"to {new_assignee_id}: {reason}"
                ),
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="reassigned",
                status_from=expected_status,
                status_to=TaskStatus.REASSIGNED,
                actor_id=actor_id,
                details={
                    "from": expected_assignee_id,
                    "to": new_assignee_id,
                    "reason": reason,
                    "freed_executor_ids": freed,
                    "over_capacity": over_capacity,
                    "degraded": degraded,
                },
            )
            session.commit()
            return self._task_view(session, task_id)

    def apply_cancellation(
        self,
        *,
        task_id: str,
        expected_status: TaskStatus,
        actor_id: str | None = None,
    ) -> TaskView:
        now = utc_now()
        with Session(self.engine) as session:
            row = self._require_task_row(session, task_id)
            self._guarded_update(
                session=session,
                task_id=task_id,
                expected_status=expected_status,
                expected_assignee_id=row.assignee_id,
                values={
                    "status": TaskStatus.CANCELLED.value,
                    "assignee_id": None,
                    "updated_at": to_db_datetime(now),
                },
            )
            freed = self._detach_assignments(session=session, task_id=task_id)
            self._add_message(
                session=session,
                task_id=task_id,
                author_id=None,
                role=SYSTEM_ROLE,
                content="Task cancelled",
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cancelled",
                status_from=expected_status,
                status_to=TaskStatus.CANCELLED,
                actor_id=actor_id,
                details={"freed_executor_ids": freed},
            )
            session.commit()
            return self._task_view(session, task_id)

    def apply_escalation(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        expected_status: TaskStatus,
        expected_assignee_id: str | None,
        event_type: str,
        checked_at_50: bool = False,
        warned_at_75: bool = False,
        reassigned_at_90: bool = False,
        manual_review: bool = False,
        actor_id: str | None = None,
        details: dict[str, object] | None = None,
    ) -> TaskView | None:
        """Raise escalation flags; returns None when the task moved on meanwhile.

        Flags are only ever raised here, never cleared.
        """

        now = utc_now()
        values: dict[str, object] = {"updated_at": to_db_datetime(now)}
        if checked_at_50:
            values["checked_at_50"] = True
        if warned_at_75:
            values["warned_at_75"] = True
        if reassigned_at_90:
            values["reassigned_at_90"] = True
        if manual_review:
            values["manual_review"] = True

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(*_guard_clauses(task_id, expected_status, expected_assignee_id))
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=expected_status,
                status_to=expected_status,
                actor_id=actor_id,
                details=details or {},
            )
            session.commit()
            return self._task_view(session, task_id)

    def apply_feedback(
        self,
        *,
        task_id: str,
        feedback: TaskFeedback,
    ) -> TaskView:
        now = utc_now()
        quality = feedback.quality.value if feedback.quality is not None else None
        with Session(self.engine) as session:
            self._guarded_update(
                session=session,
                task_id=task_id,
                expected_status=TaskStatus.COMPLETED,
                expected_assignee_id=...,
                values={
                    "feedback_quality": quality,
                    "feedback_kudos": feedback.kudos,
                    "feedback_by_id": feedback.feedback_by_id,
                    "updated_at": to_db_datetime(now),
                },
            )
            session.exec(
                sa_update(SharedWinRow)
                .where(col(SharedWinRow.task_id) == task_id)
                .values(feedback_quality=quality, feedback_kudos=feedback.kudos),
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="feedback",
                status_from=TaskStatus.COMPLETED,
                status_to=TaskStatus.COMPLETED,
                actor_id=feedback.feedback_by_id,
                details={"quality": quality, "kudos": feedback.kudos},
            )
            session.commit()
            return self._task_view(session, task_id)

    def add_message(
        self,
        *,
        task_id: str,
        author_id: str | None,
        content: str,
    ) -> TaskMessageView:
        """Append a message to the task's discussion thread."""

        with Session(self.engine) as session:
            self._require_task_row(session, task_id)
            row = self._add_message(
                session=session,
                task_id=task_id,
                author_id=author_id,
                role=USER_ROLE if author_id else SYSTEM_ROLE,
                content=content,
            )
            session.commit()
            session.refresh(row)
            return _to_message_view(row)

    def import_remote_tasks(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Map remote task records and upsert them; see ``task_from_remote``."""

        return self.import_tasks([task_from_remote(record) for record in records])

    def import_tasks(self, tasks: Iterable[TaskView]) -> int:
        """Upsert canonical tasks from another store and rebuild their capacity rows.

        Assignees that are not registered executors are kept on the task but get
        no capacity row.
        """

        now = utc_now()
        imported = 0
        with Session(self.engine) as session:
            for task in tasks:
                row = session.get(TaskRow, task.task_id)
                if row is None:
                    row = TaskRow(
                        task_id=task.task_id,
                        title=task.title,
                        requester_id=task.requester_id,
                        execution_tier=task.execution_tier.value,
                        status=task.status.value,
                        priority=task.priority.value,
                        created_at=to_db_datetime(task.created_at),
                        updated_at=to_db_datetime(now),
                    )
                _fill_task_row(row, task, now=now)
                session.add(row)
                session.flush()
                self._detach_assignments(session=session, task_id=task.task_id)
                if task.assignee_id and task.status not in TERMINAL_STATUSES:
                    if session.get(ExecutorRow, task.assignee_id) is None:
                        logger.warning(
                            "Imported task %s references unknown executor %s; "
                            "no capacity row created",
                            task.task_id,
                            task.assignee_id,
                        )
                    else:
                        session.add(
                            ExecutorAssignmentRow(
                                executor_id=task.assignee_id,
                                task_id=task.task_id,
                                assigned_at=to_db_datetime(now),
                            ),
                        )
                self._add_event(
                    session=session,
                    task_id=task.task_id,
                    event_type="imported",
                    status_from=None,
                    status_to=task.status,
                    actor_id=None,
                    details={},
                )
                imported += 1
            session.commit()
        return imported

    def check_capacity_invariants(self) -> list[str]:
        """Describe every mismatch between task assignees and capacity rows."""

        violations: list[str] = []
        with Session(self.engine) as session:
            open_rows = session.exec(
                select(TaskRow).where(
                    col(TaskRow.assignee_id).is_not(None),
                    col(TaskRow.status).not_in([status.value for status in TERMINAL_STATUSES]),
                ),
            ).all()
            known_executors = {
                row.executor_id for row in session.exec(select(ExecutorRow)).all()
            }
            expected = {
                (row.assignee_id, row.task_id)
                for row in open_rows
                if row.assignee_id in known_executors
            }
            assignments = session.exec(select(ExecutorAssignmentRow)).all()
            actual = {(row.executor_id, row.task_id) for row in assignments}
            over_capacity_rows = {
                (row.executor_id, row.task_id) for row in assignments if row.over_capacity
            }
            executors = {
                row.executor_id: row.max_concurrent_tasks
                for row in session.exec(select(ExecutorRow)).all()
            }

        for executor_id, task_id in sorted(expected - actual):
            violations.append(f"missing capacity row: executor={executor_id} task={task_id}")
        for executor_id, task_id in sorted(actual - expected):
            violations.append(f"stale capacity row: executor={executor_id} task={task_id}")

        load: dict[str, int] = defaultdict(int)
        for executor_id, _ in actual:
            load[executor_id] += 1
        for executor_id, count in sorted(load.items()):
            limit = executors.get(executor_id, 0)
            flagged = any(row[0] == executor_id for row in over_capacity_rows)
            if count > limit and not flagged:
                violations.append(
                    f"unflagged over-capacity: executor={executor_id} load={count}/{limit}",
                )
        return violations

    # -- internals -----------------------------------------------------------

    def _guarded_update(
        self,
        *,
        session: Session,
        task_id: str,
        expected_status: TaskStatus,
        expected_assignee_id: object,
        values: dict[str, object],
    ) -> None:
        self._require_task_row(session, task_id)
        result = session.exec(
            sa_update(TaskRow)
            .where(*_guard_clauses(task_id, expected_status, expected_assignee_id))
            .values(**values),
        )
        if result.rowcount != 1:
            session.rollback()
            raise InvalidStateError(
                "Task state changed concurrently; "
                f"expected status={expected_status.value} (task_id={task_id}).",
            )

    def _require_task_row(self, session: Session, task_id: str) -> TaskRow:
        row = session.get(TaskRow, task_id)
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return row

    def _require_executor_row(self, session: Session, executor_id: str) -> ExecutorRow:
        row = session.get(ExecutorRow, executor_id)
        if row is None:
            raise NotFoundError(f"Executor not found: {executor_id}")
        return row

    def _task_view(self, session: Session, task_id: str) -> TaskView:
        row = self._require_task_row(session, task_id)
        session.refresh(row)
        return _to_task_view(row)

    def _current_task_ids(self, session: Session, executor_id: str) -> list[str]:
        rows = session.exec(
            select(ExecutorAssignmentRow)
            .where(ExecutorAssignmentRow.executor_id == executor_id)
            .order_by(
                col(ExecutorAssignmentRow.assigned_at).asc(),
                col(ExecutorAssignmentRow.task_id).asc(),
            ),
        ).all()
        return [row.task_id for row in rows]

    def _attach_assignment(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        from_executor_id: str | None,
        executor: ExecutorRow,
        reason: str,
        over_capacity: bool,
        degraded: bool,
        now: datetime,
    ) -> None:
        session.add(
            ExecutorAssignmentRow(
                executor_id=executor.executor_id,
                task_id=task_id,
                over_capacity=over_capacity,
                assigned_at=to_db_datetime(now),
            ),
        )
        session.add(
            AssignmentHistoryRow(
                task_id=task_id,
                from_executor_id=from_executor_id,
                to_executor_id=executor.executor_id,
                reason=reason,
                degraded=degraded,
                created_at=to_db_datetime(now),
            ),
        )
        if from_executor_id is None:
            self._add_message(
                session=session,
                task_id=task_id,
                author_id=None,
                role=SYSTEM_ROLE,
                content=f"Assigned to {executor.name}",
            )

    def _detach_assignments(self, *, session: Session, task_id: str) -> list[str]:
        rows = session.exec(
            select(ExecutorAssignmentRow).where(ExecutorAssignmentRow.task_id == task_id),
        ).all()
        freed = sorted(row.executor_id for row in rows)
        if rows:
            session.exec(
                sa_delete(ExecutorAssignmentRow).where(
                    col(ExecutorAssignmentRow.task_id) == task_id,
                ),
            )
        return freed

    def _add_message(
        self,
        *,
        session: Session,
        task_id: str,
        author_id: str | None,
        role: str,
        content: str,
    ) -> TaskMessageRow:
        row = TaskMessageRow(
            message_id=str(uuid4()),
            task_id=task_id,
            author_id=author_id,
            role=role,
            content=content,
            created_at=to_db_datetime(utc_now()),
        )
        session.add(row)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        actor_id: str | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                actor_id=actor_id,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _guard_clauses(
    task_id: str,
    expected_status: TaskStatus,
    expected_assignee_id: object,
) -> list[object]:
    clauses: list[object] = [
        col(TaskRow.task_id) == task_id,
        col(TaskRow.status) == expected_status.value,
    ]
    if expected_assignee_id is ...:
        return clauses
    if expected_assignee_id is None:
        clauses.append(col(TaskRow.assignee_id).is_(None))
    else:
        clauses.append(col(TaskRow.assignee_id) == expected_assignee_id)
    return clauses


def _fill_task_row(row: TaskRow, task: TaskView, *, now: datetime) -> None:
    row.title = task.title
    row.description = task.description
    row.original_intent = task.original_intent
    row.requester_id = task.requester_id
    row.assignee_id = task.assignee_id
    row.execution_tier = task.execution_tier.value
    row.status = task.status.value
    row.priority = task.priority.value
    row.required_skills_json = json.dumps(task.required_skills, ensure_ascii=False)
    row.routing_reason = task.routing_reason
    row.estimated_minutes = task.estimated_minutes
    row.deadline = to_db_datetime(task.deadline) if task.deadline else None
    row.created_at = to_db_datetime(task.created_at)
    row.started_at = to_db_datetime(task.started_at) if task.started_at else None
    row.completed_at = to_db_datetime(task.completed_at) if task.completed_at else None
    row.updated_at = to_db_datetime(now)
    row.checked_at_50 = task.escalation.checked_at_50
    row.warned_at_75 = task.escalation.warned_at_75
    row.reassigned_at_90 = task.escalation.reassigned_at_90
    row.manual_review = task.escalation.manual_review
    row.previous_assignee_ids_json = json.dumps(task.escalation.previous_assignee_ids)
    row.result = task.result
    row.is_anonymous = task.is_anonymous
    row.requester_revealed = task.requester_revealed
    if task.feedback is not None:
        row.feedback_quality = task.feedback.quality.value if task.feedback.quality else None
        row.feedback_kudos = task.feedback.kudos
        row.feedback_by_id = task.feedback.feedback_by_id


def _json_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed]


def _aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_executor_view(row: ExecutorRow, current_task_ids: list[str]) -> ExecutorView:
    return ExecutorView(
        executor_id=row.executor_id,
        name=row.name,
        role=row.role,
        skills=_json_list(row.skills_json),
        current_task_ids=list(current_task_ids),
        max_concurrent_tasks=row.max_concurrent_tasks,
    )


def _to_task_view(row: TaskRow) -> TaskView:
    feedback = None
    if row.feedback_quality is not None or row.feedback_kudos is not None:
        feedback = TaskFeedback(
            quality=FeedbackQuality(row.feedback_quality) if row.feedback_quality else None,
            kudos=row.feedback_kudos,
            feedback_by_id=row.feedback_by_id,
        )
    return TaskView(
        task_id=row.task_id,
        title=row.title,
        description=row.description,
        original_intent=row.original_intent,
        requester_id=row.requester_id,
        assignee_id=row.assignee_id,
        execution_tier=ExecutionTier(row.execution_tier),
        status=TaskStatus(row.status),
        priority=TaskPriority(row.priority),
        required_skills=_json_list(row.required_skills_json),
        deadline=_aware(row.deadline),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        escalation=EscalationState(
            checked_at_50=bool(row.checked_at_50),
            warned_at_75=bool(row.warned_at_75),
            reassigned_at_90=bool(row.reassigned_at_90),
            previous_assignee_ids=_json_list(row.previous_assignee_ids_json),
            manual_review=bool(row.manual_review),
        ),
        result=row.result,
        feedback=feedback,
        routing_reason=row.routing_reason,
        estimated_minutes=row.estimated_minutes,
        is_anonymous=bool(row.is_anonymous),
        requester_revealed=bool(row.requester_revealed),
    )


def _to_shared_win(row: SharedWinRow) -> SharedWin:
    feedback = None
    if row.feedback_quality is not None or row.feedback_kudos is not None:
        feedback = TaskFeedback(
            quality=FeedbackQuality(row.feedback_quality) if row.feedback_quality else None,
            kudos=row.feedback_kudos,
        )
    return SharedWin(
        win_id=row.win_id,
        task_id=row.task_id,
        task_title=row.task_title,
        completed_by_id=row.completed_by_id,
        completed_by_name=row.completed_by_name,
        completed_by_role=row.completed_by_role,
        execution_tier=ExecutionTier(row.execution_tier),
        completed_at=to_utc_aware_datetime(row.completed_at),
        feedback=feedback,
    )


def _to_message_view(row: TaskMessageRow) -> TaskMessageView:
    return TaskMessageView(
        message_id=row.message_id,
        task_id=row.task_id,
        author_id=row.author_id,
        role=row.role,
        content=row.content,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_event_view(row: TaskEventRow) -> TaskEventView:
    details: dict[str, object] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        actor_id=row.actor_id,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )
