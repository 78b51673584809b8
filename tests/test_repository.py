from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from dispatch_coordinator.coordination.errors import InvalidStateError, NotFoundError
from dispatch_coordinator.coordination.mapping import task_from_remote
from dispatch_coordinator.coordination.models import (
    ExecutionTier,
    ExecutorUpsert,
    TaskPriority,
    TaskStatus,
)

pytestmark = [
    allure.epic("Coordination Engine"),
    allure.feature("Persistence"),
]


def test_upsert_executor_updates_profile_and_keeps_assignments(
    repository,
    controller,
    make_executor,
    new_task,
) -> None:
    make_executor("sarah", skills=("writing", "writing", "editing"))
    task = controller.create_task(new_task(), assignee_id="sarah")

    updated = repository.upsert_executor(
        ExecutorUpsert(
            executor_id="sarah",
            name="Sarah K.",
            role="Editor",
            skills=("editing",),
            max_concurrent_tasks=5,
        ),
    )

    assert updated.name == "Sarah K."
    assert updated.skills == ["editing"]
    assert updated.max_concurrent_tasks == 5
    assert updated.current_task_ids == [task.task_id]
    assert make_executor("alex", skills=("a", "a", "b")).skills == ["a", "b"]


@pytest.mark.parametrize(
    ("executor_id", "max_tasks", "match"),
    [("", 3, "must not be empty"), ("sarah", 0, "max_concurrent_tasks")],
)
def test_upsert_executor_validates_input(repository, executor_id, max_tasks, match) -> None:
    with pytest.raises(ValueError, match=match):
        repository.upsert_executor(
            ExecutorUpsert(
                executor_id=executor_id,
                name="Sarah",
                role="Editor",
                skills=(),
                max_concurrent_tasks=max_tasks,
            ),
        )


def test_delete_executor_requires_no_active_tasks(
    repository,
    controller,
    make_executor,
    new_task,
) -> None:
    make_executor("sarah")
    make_executor("alex")
    task = controller.create_task(new_task(), assignee_id="sarah")

    with pytest.raises(InvalidStateError, match="active task"):
        repository.delete_executor("sarah")
    with pytest.raises(NotFoundError):
        repository.delete_executor("ghost")

    controller.cancel_task(task.task_id)
    repository.delete_executor("sarah")

    assert [executor.executor_id for executor in repository.list_executors()] == ["alex"]


def test_stale_guarded_write_is_rejected(repository, controller, make_executor, new_task) -> None:
    make_executor("sarah")
    task = controller.create_task(new_task(), assignee_id="sarah")
    controller.start_task(task.task_id, "sarah")

    with pytest.raises(InvalidStateError, match="changed concurrently"):
        repository.apply_start(
            task_id=task.task_id,
            expected_status=TaskStatus.ASSIGNED,
            actor_id="sarah",
        )

    events = [event.event_type for event in repository.get_task_details(task.task_id).events]
    assert events.count("started") == 1


def test_task_details_include_thread_and_audit_trail(
    repository,
    controller,
    make_executor,
    new_task,
) -> None:
    make_executor("sarah")
    task = controller.create_task(new_task(), assignee_id="sarah")
    controller.post_message(task.task_id, "requester", "Any update?")

    details = repository.get_task_details(task.task_id)

    assert details is not None
    assert details.task.task_id == task.task_id
    assert [message.content for message in details.messages] == [
        "Assigned to Sarah",
        "Any update?",
    ]
    assert [message.role for message in details.messages] == ["assistant", "user"]
    assert [event.event_type for event in details.events] == ["created"]
    assert repository.get_task_details("missing") is None


def test_list_tasks_filters_by_status(repository, controller, make_executor, new_task) -> None:
    make_executor("sarah")
    pending = controller.create_task(new_task("Pending"))
    assigned = controller.create_task(new_task("Assigned"), assignee_id="sarah")

    assert [task.task_id for task in repository.list_tasks(status=TaskStatus.PENDING)] == [
        pending.task_id,
    ]
    assert {task.task_id for task in repository.list_tasks()} == {
        pending.task_id,
        assigned.task_id,
    }
    assert len(repository.list_tasks(limit=1)) == 1


def test_task_from_remote_maps_backend_shape() -> None:
    task = task_from_remote(
        {
            "id": "remote-1",
            "title": "Review copy",
            "description": "Check the landing page",
            "requesterId": "sarah",
            "assigneeId": "alex",
            "status": "in_progress",
            "priority": "HIGH",
            "requiredSkills": ["writing"],
            "deadline": 1_792_000_000_000,
            "createdAt": "2026-10-01T08:00:00Z",
            "assignedAt": "2026-10-01T09:00:00Z",
        },
    )

    assert task.status is TaskStatus.IN_PROGRESS
    assert task.priority is TaskPriority.HIGH
    assert task.execution_tier is ExecutionTier.HUMAN
    assert task.original_intent == "Check the landing page"
    assert task.started_at == datetime(2026, 10, 1, 9, 0, tzinfo=UTC)
    assert task.deadline == datetime.fromtimestamp(1_792_000_000, tz=UTC)
    assert task.requester_revealed is False


def test_task_from_remote_normalizes_failed_and_ai_records() -> None:
    failed = task_from_remote({"id": "r-2", "status": "failed", "assigneeId": "alex"})
    done = task_from_remote(
        {
            "id": "r-3",
            "status": "completed",
            "aiCompleted": True,
            "aiResult": "Done.",
            "priority": "?",
        },
    )

    assert failed.status is TaskStatus.CANCELLED
    assert failed.assignee_id is None
    assert done.execution_tier is ExecutionTier.AI_DIRECT
    assert done.result == "Done."
    assert done.priority is TaskPriority.MEDIUM
    assert done.requester_revealed is True


@pytest.mark.parametrize(
    "record",
    [
        {"title": "no id"},
        {"id": "r-4", "status": "archived"},
        {"id": "r-5", "deadline": 1e20},
        {"id": "r-6", "createdAt": float("nan")},
        {"id": "r-7", "assignedAt": 10**400},
    ],
)
def test_task_from_remote_rejects_unusable_records(record) -> None:
    with pytest.raises(ValueError):
        task_from_remote(record)


def _remote(task_id: str, status: str, assignee_id: str, **extra: object) -> dict[str, object]:
    return {
        "id": task_id,
        "title": f"Remote {task_id}",
        "requesterId": "sarah",
        "assigneeId": assignee_id,
        "status": status,
        **extra,
    }


def test_import_rebuilds_capacity_rows(repository, make_executor) -> None:
    make_executor("alex")
    deadline = datetime.now(tz=UTC) + timedelta(hours=1)
    records = [
        _remote(
            "r-1",
            "in_progress",
            "alex",
            assignedAt="2026-10-01T09:00:00Z",
            deadline=deadline.isoformat(),
        ),
        _remote("r-2", "completed", "alex"),
        _remote("r-3", "assigned", "ghost"),
    ]

    imported = repository.import_remote_tasks(records)
    again = repository.import_remote_tasks(records[:1])

    assert (imported, again) == (3, 1)
    assert repository.get_executor("alex").current_task_ids == ["r-1"]
    assert repository.get_task("r-3").assignee_id == "ghost"
    assert [task.task_id for task in repository.list_active_monitored_tasks()] == ["r-1"]
    assert repository.check_capacity_invariants() == []


def test_capacity_invariant_check_reports_drift(repository, controller, make_executor, new_task):
    make_executor("alex")
    task = controller.create_task(new_task(), assignee_id="alex")
    with repository.engine.begin() as connection:
        connection.exec_driver_sql("DELETE FROM executor_assignments")

    violations = repository.check_capacity_invariants()

    assert violations == [f"missing capacity row: executor=alex task={task.task_id}"]
