"""Task lifecycle operations: create, assign, start, complete, reassign, cancel."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from dispatch_coordinator.coordination.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
)
from dispatch_coordinator.coordination.fanout import NotificationFanout, win_to_payload
from dispatch_coordinator.coordination.locks import TaskLockRegistry
from dispatch_coordinator.coordination.models import (
    STARTABLE_STATUSES,
    AssignmentDecision,
    EventType,
    ExecutionTier,
    ExecutorView,
    FeedbackQuality,
    SharedWin,
    TaskCreate,
    TaskFeedback,
    TaskMessageView,
    TaskStatus,
    TaskView,
)
from dispatch_coordinator.coordination.repository import CoordinationRepository
from dispatch_coordinator.coordination.scoring import select_assignee

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CompletedTask:
    """Completed task together with its shared-win record."""

    task: TaskView
    win: SharedWin


class LifecycleController:
    """Moves tasks through their state machine and keeps capacity consistent.

    Every mutation of one task runs under that task's lock, so an interactive
    call and a deadline-monitor escalation on the same task never interleave.
    Executor selection plus the write that consumes the chosen capacity run
    under one assignment lock.
    """

    def __init__(
        self,
        *,
        repository: CoordinationRepository,
        fanout: NotificationFanout,
        locks: TaskLockRegistry | None = None,
    ) -> None:
        self.repository = repository
        self.fanout = fanout
        self.locks = locks or TaskLockRegistry()
        self._assignment_lock = threading.Lock()

    def create_task(
        self,
        payload: TaskCreate,
        *,
        assignee_id: str | None = None,
        auto_assign: bool = False,
    ) -> TaskView:
        """Persist a new task, assigned when an assignee is given or picked.

        With ``auto_assign`` and no explicit assignee, tiers that need an
        executor go through the scorer. If nobody can be picked the task stays
        ``pending``.
        """

        with self._assignment_lock:
            decision = None
            if assignee_id:
                decision = self._explicit_decision(assignee_id, reason=payload.routing_reason)
            elif auto_assign and payload.execution_tier.needs_executor:
                decision = select_assignee(
                    payload.required_skills,
                    (),
                    self.repository.list_executors(),
                )
                if decision.executor is None:
                    logger.warning("No executor available for new task %r", payload.title)

            if decision is not None and decision.executor is not None:
                task = self.repository.insert_task(
                    payload,
                    assignee_id=decision.executor.executor_id,
                    assignment_reason=decision.reason,
                    over_capacity=decision.over_capacity,
                    degraded=decision.degraded,
                )
            else:
                task = self.repository.insert_task(payload)

        logger.info(
            "Created task %s (%s, %s) assignee=%s",
            task.task_id,
            task.execution_tier.value,
            task.status.value,
            task.assignee_id,
        )
        self.fanout.publish_task(
            EventType.TASK_CREATED,
            task,
            payload=_decision_payload(decision),
        )
        return task

    def assign_task(self, task_id: str, executor_id: str | None = None) -> TaskView:
        """Give a ``pending`` task its first assignee (scored when not given)."""

        with self.locks.hold(task_id):
            task = self.repository.require_task(task_id)
            _reject_terminal(task, "assign")
            if task.status is not TaskStatus.PENDING:
                raise InvalidStateError(
                    f"Task {task_id} is {task.status.value}; only pending tasks can be assigned.",
                )
            with self._assignment_lock:
                if executor_id:
                    decision = self._explicit_decision(executor_id, reason="Assigned manually")
                else:
                    decision = select_assignee(
                        task.required_skills,
                        (),
                        self.repository.list_executors(),
                    )
                if decision.executor is None:
                    raise NotFoundError(f"No executor available for task {task_id}.")
                updated = self.repository.apply_assignment(
                    task_id=task_id,
                    expected_status=task.status,
                    executor_id=decision.executor.executor_id,
                    reason=decision.reason,
                    over_capacity=decision.over_capacity,
                    degraded=decision.degraded,
                )
            self.fanout.publish_task(
                EventType.TASK_UPDATED,
                updated,
                payload=_decision_payload(decision),
            )
            return updated

    def start_task(self, task_id: str, actor_id: str) -> TaskView:
        with self.locks.hold(task_id):
            task = self.repository.require_task(task_id)
            _reject_terminal(task, "start")
            if task.status not in STARTABLE_STATUSES:
                raise InvalidStateError(
                    f"Task {task_id} is {task.status.value}; "
                    "only assigned or reassigned tasks can be started.",
                )
            if actor_id != task.assignee_id:
                raise AuthorizationError(
                    f"Only the assignee can start task {task_id}.",
                )
            updated = self.repository.apply_start(
                task_id=task_id,
                expected_status=task.status,
                actor_id=actor_id,
            )
            logger.info("Task %s started by %s", task_id, actor_id)
            self.fanout.publish_task(EventType.TASK_UPDATED, updated)
            return updated

    def complete_task(
        self,
        task_id: str,
        actor_id: str | None,
        result: str | None = None,
    ) -> CompletedTask:
        """Complete a task once; a repeated call raises ``InvalidStateError``."""

        with self.locks.hold(task_id):
            task = self.repository.require_task(task_id)
            _reject_terminal(task, "complete")
            on_behalf_of_ai = task.execution_tier is ExecutionTier.AI_DIRECT
            if not on_behalf_of_ai and (actor_id is None or actor_id != task.assignee_id):
                raise AuthorizationError(
                    f"Only the assignee can complete task {task_id}.",
                )
            updated, win = self.repository.apply_completion(
                task_id=task_id,
                expected_status=task.status,
                actor_id=actor_id,
                result=result,
            )
            logger.info("Task %s completed by %s", task_id, win.completed_by_name)
            self.fanout.publish_task(
                EventType.TASK_COMPLETED,
                updated,
                payload={"win": win_to_payload(win)},
            )
        self.locks.discard(task_id)
        return CompletedTask(task=updated, win=win)

    def reassign_task(  # noqa: PLR0913
        self,
        task_id: str,
        new_assignee_id: str,
        reason: str,
        *,
        actor_id: str | None = None,
        decision: AssignmentDecision | None = None,
    ) -> TaskView:
        """Move a task to ``new_assignee_id``, remembering the previous assignee.

        ``decision`` carries the scorer's flags when the new assignee came from
        a fallback; otherwise an explicit reassignment past the target's
        capacity is flagged here. A scored target that filled up after it was
        chosen is re-scored before the write.
        """

        with self.locks.hold(task_id):
            task = self.repository.require_task(task_id)
            _reject_terminal(task, "reassign")
            if new_assignee_id == task.assignee_id:
                raise InvalidStateError(
                    f"Task {task_id} is already assigned to {new_assignee_id}.",
                )
            with self._assignment_lock:
                if decision is None:
                    decision = self._explicit_decision(new_assignee_id, reason=reason)
                else:
                    chosen = self._revalidate_decision(task, decision)
                    if chosen is not decision and chosen.executor is not None:
                        new_assignee_id = chosen.executor.executor_id
                        reason = f"{reason} Re-scored: {chosen.reason}"
                    decision = chosen
                updated = self.repository.apply_reassignment(
                    task_id=task_id,
                    expected_status=task.status,
                    expected_assignee_id=task.assignee_id,
                    new_assignee_id=new_assignee_id,
                    reason=reason,
                    actor_id=actor_id,
                    over_capacity=decision.over_capacity,
                    degraded=decision.degraded,
                )
            logger.info(
                "Task %s reassigned %s -> %s: %s",
                task_id,
                task.assignee_id,
                new_assignee_id,
                reason,
            )
            self.fanout.publish_task(
                EventType.TASK_REASSIGNED,
                updated,
                extra_subscriber_ids=[task.assignee_id],
                payload={"from": task.assignee_id, "to": new_assignee_id, "reason": reason},
            )
            return updated

    def cancel_task(self, task_id: str, actor_id: str | None = None) -> TaskView:
        with self.locks.hold(task_id):
            task = self.repository.require_task(task_id)
            _reject_terminal(task, "cancel")
            updated = self.repository.apply_cancellation(
                task_id=task_id,
                expected_status=task.status,
                actor_id=actor_id,
            )
            logger.info("Task %s cancelled (assignee was %s)", task_id, task.assignee_id)
            self.fanout.publish_task(
                EventType.TASK_UPDATED,
                updated,
                extra_subscriber_ids=[task.assignee_id],
            )
        self.locks.discard(task_id)
        return updated

    def submit_feedback(
        self,
        task_id: str,
        actor_id: str,
        *,
        quality: FeedbackQuality | None = None,
        kudos: bool | None = None,
    ) -> TaskView:
        """Record the requester's quality signal on a completed task."""

        if quality is None and kudos is None:
            raise ValueError("Feedback needs a quality rating or kudos.")
        with self.locks.hold(task_id):
            task = self.repository.require_task(task_id)
            if task.status is not TaskStatus.COMPLETED:
                raise InvalidStateError(
                    f"Task {task_id} is {task.status.value}; feedback needs a completed task.",
                )
            if actor_id != task.requester_id:
                raise AuthorizationError(f"Only the requester can rate task {task_id}.")
            updated = self.repository.apply_feedback(
                task_id=task_id,
                feedback=TaskFeedback(quality=quality, kudos=kudos, feedback_by_id=actor_id),
            )
            self.fanout.publish_task(EventType.TASK_UPDATED, updated)
            return updated

    def post_message(self, task_id: str, author_id: str, content: str) -> TaskMessageView:
        """Append a participant's message to the task thread."""

        text = content.strip()
        if not text:
            raise ValueError("Message content must not be empty.")
        with self.locks.hold(task_id):
            task = self.repository.require_task(task_id)
            if author_id not in task.subscriber_ids:
                raise AuthorizationError(
                    f"Only the assignee or requester can post on task {task_id}.",
                )
            message = self.repository.add_message(
                task_id=task_id,
                author_id=author_id,
                content=text,
            )
            self.fanout.publish_message(task, message)
            return message

    def record_escalation(  # noqa: PLR0913
        self,
        task: TaskView,
        *,
        stage: str,
        checked_at_50: bool = False,
        warned_at_75: bool = False,
        reassigned_at_90: bool = False,
        manual_review: bool = False,
        notification: dict[str, Any] | None = None,
    ) -> TaskView | None:
        """Raise escalation flags on ``task`` as last read by the caller.

        Returns None without side effects when the task changed status or
        assignee since that read.
        """

        with self.locks.hold(task.task_id):
            updated = self.repository.apply_escalation(
                task_id=task.task_id,
                expected_status=task.status,
                expected_assignee_id=task.assignee_id,
                event_type=f"escalation_{stage}",
                checked_at_50=checked_at_50,
                warned_at_75=warned_at_75,
                reassigned_at_90=reassigned_at_90,
                manual_review=manual_review,
                details=notification,
            )
            if updated is None:
                logger.info("Escalation %s for task %s skipped: task changed", stage, task.task_id)
                return None
            self.fanout.publish_task(
                EventType.TASK_UPDATED,
                updated,
                payload={"escalation": {"stage": stage, **(notification or {})}},
            )
            return updated

    def select_replacement(self, task: TaskView) -> AssignmentDecision:
        """Score a replacement excluding the current and every previous assignee."""

        with self._assignment_lock:
            return self._score_replacement(task)

    def record_check_in(
        self,
        task: TaskView,
        outcome: str,
        *,
        progress: float,
    ) -> TaskView | None:
        """Store the assignee's answer to a deadline check-in on the audit trail.

        Returns None when the task changed status or assignee since ``task``
        was read.
        """

        with self.locks.hold(task.task_id):
            updated = self.repository.apply_escalation(
                task_id=task.task_id,
                expected_status=task.status,
                expected_assignee_id=task.assignee_id,
                event_type="check_in_response",
                actor_id=task.assignee_id,
                details={"outcome": outcome, "progress": progress},
            )
            if updated is None:
                logger.info("Check-in answer for task %s dropped: task changed", task.task_id)
            return updated

    def _score_replacement(self, task: TaskView) -> AssignmentDecision:
        excluded = [*task.escalation.previous_assignee_ids]
        if task.assignee_id:
            excluded.append(task.assignee_id)
        return select_assignee(task.required_skills, excluded, self.repository.list_executors())

    def _revalidate_decision(
        self,
        task: TaskView,
        decision: AssignmentDecision,
    ) -> AssignmentDecision:
        """Re-check a scored target under the assignment lock; re-score when it filled up."""

        if decision.executor is None:
            raise InvalidStateError(f"No replacement executor chosen for task {task.task_id}.")
        target = self.repository.get_executor(decision.executor.executor_id)
        if target is not None and (target.has_capacity or decision.over_capacity):
            return decision
        rescored = self._score_replacement(task)
        if rescored.executor is None:
            raise NotFoundError(f"Executor not found: {decision.executor.executor_id}")
        logger.warning(
            "Replacement %s for task %s is no longer available; re-scored to %s",
            decision.executor.executor_id,
            task.task_id,
            rescored.executor.executor_id,
        )
        return rescored

    def _explicit_decision(self, executor_id: str, *, reason: str | None) -> AssignmentDecision:
        executor = self.repository.get_executor(executor_id)
        if executor is None:
            raise NotFoundError(f"Executor not found: {executor_id}")
        over_capacity = not executor.has_capacity
        if over_capacity:
            logger.warning(
                "Assigning %s over capacity (load=%d/%d)",
                executor.executor_id,
                executor.load,
                executor.max_concurrent_tasks,
            )
        return AssignmentDecision(
            executor=executor,
            reason=_explicit_reason(executor, reason, over_capacity=over_capacity),
            over_capacity=over_capacity,
        )


def _explicit_reason(executor: ExecutorView, reason: str | None, *, over_capacity: bool) -> str:
    text = reason or f"Assigned to {executor.name}"
    if over_capacity:
        text += (
            f" (capacity limit exceeded: {executor.load}/{executor.max_concurrent_tasks} tasks)"
        )
    return text


def _reject_terminal(task: TaskView, operation: str) -> None:
    if task.status.is_terminal:
        raise InvalidStateError(
            f"Cannot {operation} task {task.task_id}: it is already {task.status.value}.",
        )


def _decision_payload(decision: AssignmentDecision | None) -> dict[str, Any]:
    if decision is None or decision.executor is None:
        return {}
    return {
        "assignment": {
            "executorId": decision.executor.executor_id,
            "reason": decision.reason,
            "overCapacity": decision.over_capacity,
            "skillFallback": decision.skill_fallback,
        },
    }
