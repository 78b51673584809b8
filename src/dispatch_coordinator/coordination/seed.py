"""Demo team and tasks for local runs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from dispatch_coordinator.coordination.models import (
    EscalationState,
    ExecutionTier,
    ExecutorUpsert,
    TaskPriority,
    TaskStatus,
    TaskView,
)
from dispatch_coordinator.coordination.repository import CoordinationRepository
from dispatch_coordinator.storage.common import utc_now

DEMO_EXECUTORS = (
    ExecutorUpsert(
        executor_id="sarah",
        name="Sarah Chen",
        role="Engineer",
        skills=("code", "typescript", "react", "api-design", "testing"),
        max_concurrent_tasks=3,
    ),
    ExecutorUpsert(
        executor_id="jordan",
        name="Jordan Rivers",
        role="Data Analyst",
        skills=("data", "analysis", "sql", "spreadsheets", "visualization", "python"),
        max_concurrent_tasks=3,
    ),
    ExecutorUpsert(
        executor_id="alex",
        name="Alex Park",
        role="PM",
        skills=("planning", "writing", "analysis", "spreadsheets", "user-research", "roadmapping"),
        max_concurrent_tasks=3,
    ),
)


@dataclass(slots=True)
class SeedSummary:
    executors: int
    tasks: int


def seed_demo(repository: CoordinationRepository, *, now: datetime | None = None) -> SeedSummary:
    """Register the demo team and load demo tasks.

    One in-progress task sits at 89% of its one-hour window so the first
    monitor tick walks it through the whole escalation ladder.
    """

    now = now or utc_now()
    for executor in DEMO_EXECUTORS:
        repository.upsert_executor(executor)
    tasks = demo_tasks(now)
    repository.import_tasks(tasks)
    return SeedSummary(executors=len(DEMO_EXECUTORS), tasks=len(tasks))


def demo_tasks(now: datetime) -> list[TaskView]:
    day = timedelta(days=1)
    window = timedelta(hours=1)
    metrics_started = now - window * 0.89
    return [
        _task(
            "demo-copy-review",
            "Review Q1 marketing copy",
            requester_id="alex",
            assignee_id="sarah",
            status=TaskStatus.ASSIGNED,
            skills=["writing"],
            created_at=now - timedelta(hours=2),
            deadline=now + 5 * day,
        ),
        _task(
            "demo-login-fix",
            "Fix login page responsiveness",
            requester_id="jordan",
            assignee_id="sarah",
            status=TaskStatus.IN_PROGRESS,
            skills=["code", "react"],
            priority=TaskPriority.HIGH,
            created_at=now - timedelta(hours=6),
            started_at=now - timedelta(hours=4),
            deadline=now + day,
        ),
        _task(
            "demo-metrics-dashboard",
            "Onboarding metrics dashboard",
            requester_id="sarah",
            assignee_id="jordan",
            status=TaskStatus.IN_PROGRESS,
            skills=["data", "visualization"],
            priority=TaskPriority.URGENT,
            created_at=metrics_started - timedelta(minutes=10),
            started_at=metrics_started,
            deadline=metrics_started + window,
        ),
        _task(
            "demo-investor-deck",
            "Prepare investor deck slides",
            requester_id="sarah",
            assignee_id="alex",
            status=TaskStatus.ASSIGNED,
            skills=["planning", "writing"],
            created_at=now - day,
            deadline=now + 7 * day,
        ),
        _task(
            "demo-interview-analysis",
            "Run user interview analysis",
            requester_id="sarah",
            assignee_id="jordan",
            status=TaskStatus.IN_PROGRESS,
            skills=["analysis", "user-research"],
            created_at=now - 2 * day,
            started_at=now - day,
        ),
        _task(
            "demo-onboarding-flow",
            "Design new onboarding flow",
            requester_id="alex",
            assignee_id="sarah",
            status=TaskStatus.COMPLETED,
            skills=["react"],
            created_at=now - 5 * day,
            started_at=now - 4 * day,
            completed_at=now - 2 * day,
        ),
    ]


def _task(  # noqa: PLR0913
    task_id: str,
    title: str,
    *,
    requester_id: str,
    assignee_id: str,
    status: TaskStatus,
    skills: list[str],
    created_at: datetime,
    priority: TaskPriority = TaskPriority.MEDIUM,
    started_at: datetime | None = None,
    deadline: datetime | None = None,
    completed_at: datetime | None = None,
) -> TaskView:
    return TaskView(
        task_id=task_id,
        title=title,
        description=title,
        original_intent=title,
        requester_id=requester_id,
        assignee_id=assignee_id,
        execution_tier=ExecutionTier.HUMAN,
        status=status,
        priority=priority,
        required_skills=skills,
        deadline=deadline,
        created_at=created_at,
        started_at=started_at,
        completed_at=completed_at,
        escalation=EscalationState(),
        requester_revealed=status is TaskStatus.COMPLETED,
    )
