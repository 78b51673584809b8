from __future__ import annotations

import json

import allure
import pytest

from dispatch_coordinator.coordination.errors import RoutingFailure
from dispatch_coordinator.coordination.models import (
    ExecutionTier,
    TaskListView,
    TaskStatus,
)
from dispatch_coordinator.coordination.routing import StaticIntentRouter
from dispatch_coordinator.coordination.services import CoordinationService, SubmitIntent

pytestmark = [
    allure.epic("Coordination Engine"),
    allure.feature("Intent Submission"),
]


def _service(repository, controller, text: str) -> CoordinationService:
    return CoordinationService(
        repository=repository,
        controller=controller,
        router=StaticIntentRouter(text),
        router_timeout_seconds=5,
    )


def _routed(**overrides: object) -> str:
    payload: dict[str, object] = {
        "title": "Fix login bug",
        "description": "Users cannot log in with SSO",
        "executionTier": "human",
        "priority": "urgent",
        "requiredSkills": ["backend"],
        "routingReason": "Needs a backend engineer",
    }
    payload.update(overrides)
    return json.dumps(payload)


def test_human_intent_is_assigned_by_scorer(repository, controller, make_executor) -> None:
    make_executor("writer", skills=("copywriting",))
    make_executor("alex", skills=("backend", "frontend"))
    service = _service(repository, controller, _routed())
    command =SubmitIntent(intent="  login is broken  ", requester_id="sarah")

    outcome = service.submit_intent(command)

    task = outcome.task
    assert task.status is TaskStatus.ASSIGNED
    assert task.assignee_id == "alex"
    assert task.original_intent == "login is broken"
    assert task.requester_id == "sarah"
    assert outcome.win is None
    assert repository.get_executor("alex").current_task_ids == [task.task_id]


def test_router_suggestion_is_honoured(repository, controller, make_executor) -> None:
    make_executor("alex", skills=("backend",))
    make_executor("jordan")
    service = _service(repository, controller, _routed(assigneeId="jordan"))

    outcome = service.submit_intent(SubmitIntent(intent="login", requester_id="sarah"))

    assert outcome.task.assignee_id == "jordan"


def test_unknown_suggested_assignee_falls_back_to_scorer(
    repository,
    controller,
    make_executor,
) -> None:
    make_executor("alex", skills=("backend",))
    service = _service(repository, controller, _routed(assigneeId="nobody"))

    outcome = service.submit_intent(SubmitIntent(intent="login", requester_id="sarah"))

    assert outcome.task.assignee_id == "alex"


def test_ai_direct_intent_is_completed_with_win(repository, controller) -> None:
    service = _service(
        repository,
        controller,
        _routed(executionTier="ai_direct", requiredSkills=[], result="Here is the summary."),
    )

    outcome = service.submit_intent(SubmitIntent(intent="summarize notes", requester_id="sarah"))

    assert outcome.task.status is TaskStatus.COMPLETED
    assert outcome.task.execution_tier is ExecutionTier.AI_DIRECT
    assert outcome.task.result == "Here is the summary."
    assert outcome.win is not None
    assert outcome.win.completed_by_name == "AI"
    assert [task.task_id for task in service.list_by_view("sarah", TaskListView.COMPLETED)] == [
        outcome.task.task_id,
    ]


def test_no_executors_leaves_agent_task_pending(repository, controller) -> None:
    service = _service(repository, controller, _routed(executionTier="ai_agent"))

    outcome = service.submit_intent(SubmitIntent(intent="run the agent", requester_id="sarah"))

    assert outcome.task.status is TaskStatus.PENDING
    assert outcome.task.assignee_id is None


@pytest.mark.parametrize("text", ["I am not sure what you mean.", _routed(executionTier="robot")])
def test_routing_failure_creates_nothing(repository, controller, make_executor, text) -> None:
    make_executor("alex", skills=("backend",))
    service = _service(repository, controller, text)

    with pytest.raises(RoutingFailure):
        service.submit_intent(SubmitIntent(intent="login", requester_id="sarah"))

    assert repository.list_tasks() == []
    assert repository.list_executors()[0].current_task_ids == []


def test_missing_router_and_blank_intent_are_rejected(repository, controller) -> None:
    service = CoordinationService(repository=repository, controller=controller)

    with pytest.raises(ValueError):
        service.submit_intent(SubmitIntent(intent="   ", requester_id="sarah"))
    with pytest.raises(RoutingFailure):
        service.submit_intent(SubmitIntent(intent="login", requester_id="sarah"))


def test_views_split_assigned_requested_completed(
    repository,
    controller,
    make_executor,
    new_task,
) -> None:
    make_executor("alex")
    open_task = controller.create_task(new_task("Open", requester_id="sarah"), assignee_id="alex")
    done = controller.create_task(new_task("Done", requester_id="sarah"), assignee_id="alex")
    controller.start_task(done.task_id, "alex")
    controller.complete_task(done.task_id, "alex")
    service = CoordinationService(repository=repository, controller=controller)

    assigned = service.list_by_view("alex", TaskListView.ASSIGNED)
    requested = service.list_by_view("sarah", TaskListView.REQUESTED)
    completed = service.list_by_view("alex", TaskListView.COMPLETED)

    assert [task.task_id for task in assigned] == [open_task.task_id]
    assert {task.task_id for task in requested} == {open_task.task_id, done.task_id}
    assert [task.task_id for task in completed] == [done.task_id]
    assert service.list_by_view("sarah", TaskListView.ASSIGNED) == []
