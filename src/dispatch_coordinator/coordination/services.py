"""Use-case services behind the request surface: submit intent, list, complete, reassign."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from dispatch_coordinator.coordination.errors import RoutingFailure
from dispatch_coordinator.coordination.lifecycle import CompletedTask, LifecycleController
from dispatch_coordinator.coordination.models import (
    ExecutionTier,
    SharedWin,
    TaskCreate,
    TaskListView,
    TaskView,
)
from dispatch_coordinator.coordination.repository import CoordinationRepository
from dispatch_coordinator.coordination.routing import (
    IntentRouter,
    RoutedIntent,
    RouterRequest,
    route_intent,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitIntent:
    """High-level command to route a free-text request into a task."""

    intent: str
    requester_id: str


@dataclass(slots=True)
class IntentOutcome:
    """Created task plus the router decision it came from."""

    task: TaskView
    routed: RoutedIntent
    win: SharedWin | None = None


class CoordinationService:
    """Coordinates router call, task creation and the per-user views."""

    def __init__(
        self,
        *,
        repository: CoordinationRepository,
        controller: LifecycleController,
        router: IntentRouter | None = None,
        router_timeout_seconds: float = 30.0,
    ) -> None:
        self.repository = repository
        self.controller = controller
        self.router = router
        self.router_timeout_seconds = router_timeout_seconds

    def submit_intent(self, command: SubmitIntent) -> IntentOutcome:
        """Route an intent and create its task; nothing is created on ``RoutingFailure``."""

        intent = command.intent.strip()
        if not intent:
            raise ValueError("Intent text must not be empty.")
        if not command.requester_id:
            raise ValueError("Requester id must not be empty.")
        if self.router is None:
            raise RoutingFailure("No intent router configured.")

        routed = route_intent(
            self.router,
            RouterRequest(
                intent=intent,
                requester_id=command.requester_id,
                executors=self.repository.list_executors(),
            ),
            timeout_seconds=self.router_timeout_seconds,
        )
        logger.info(
            "Routed intent from %s as %s (%s)",
            command.requester_id,
            routed.execution_tier.value,
            routed.routing_reason or "no reason given",
        )

        payload = TaskCreate(
            title=routed.title,
            description=routed.description,
            original_intent=intent,
            requester_id=command.requester_id,
            execution_tier=routed.execution_tier,
            priority=routed.priority,
            required_skills=tuple(routed.required_skills),
            deadline=routed.deadline,
            routing_reason=routed.routing_reason,
            estimated_minutes=routed.estimated_minutes,
        )

        if routed.execution_tier is ExecutionTier.AI_DIRECT:
            task = self.controller.create_task(payload)
            completed = self.controller.complete_task(
                task.task_id,
                None,
                routed.result or "Task completed by AI",
            )
            return IntentOutcome(task=completed.task, routed=routed, win=completed.win)

        assignee_id = routed.assignee_id
        if assignee_id and self.repository.get_executor(assignee_id) is None:
            logger.warning(
                "Router suggested unknown executor %s; falling back to scorer",
                assignee_id,
            )
            assignee_id = None
        task = self.controller.create_task(payload, assignee_id=assignee_id, auto_assign=True)
        return IntentOutcome(task=task, routed=routed)

    def list_by_view(self, user_id: str, view: TaskListView) -> list[TaskView]:
        if view is TaskListView.ASSIGNED:
            return self.repository.list_assigned_to(user_id)
        if view is TaskListView.REQUESTED:
            return self.repository.list_requested_by(user_id)
        return self.repository.list_completed_involving(user_id)

    def complete_task(
        self,
        task_id: str,
        actor_id: str | None,
        result: str | None = None,
    ) -> CompletedTask:
        return self.controller.complete_task(task_id, actor_id, result)

    def reassign_task(
        self,
        task_id: str,
        new_assignee_id: str,
        reason: str,
        *,
        actor_id: str | None = None,
    ) -> TaskView:
        return self.controller.reassign_task(
            task_id,
            new_assignee_id,
            reason,
            actor_id=actor_id,
        )
