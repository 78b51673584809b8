"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path

import pytest

from dispatch_coordinator.coordination.fanout import NotificationFanout
from dispatch_coordinator.coordination.lifecycle import LifecycleController
from dispatch_coordinator.coordination.models import (
    ExecutionTier,
    ExecutorUpsert,
    ExecutorView,
    TaskCreate,
    TaskPriority,
)
from dispatch_coordinator.coordination.repository import CoordinationRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[CoordinationRepository]:
    repo = CoordinationRepository(tmp_path / "coordination.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def fanout() -> NotificationFanout:
    return NotificationFanout(queue_size=100)


@pytest.fixture()
def controller(
    repository: CoordinationRepository,
    fanout: NotificationFanout,
) -> LifecycleController:
    return LifecycleController(repository=repository, fanout=fanout)


@pytest.fixture()
def make_executor(repository: CoordinationRepository) -> Callable[..., ExecutorView]:
    def _make(
        executor_id: str,
        *,
        skills: tuple[str, ...] = (),
        max_tasks: int = 3,
        role: str = "Engineer",
    ) -> ExecutorView:
        return repository.upsert_executor(
            ExecutorUpsert(
                executor_id=executor_id,
                name=executor_id.title(),
                role=role,
                skills=skills,
                max_concurrent_tasks=max_tasks,
            ),
        )

    return _make


def human_task(
    title: str = "Prepare report",
    *,
    requester_id: str = "requester",
    skills: tuple[str, ...] = (),
    deadline: datetime | None = None,
    tier: ExecutionTier = ExecutionTier.HUMAN,
) -> TaskCreate:
    return TaskCreate(
        title=title,
        description=f"{title} for the team",
        original_intent=f"please {title.lower()}",
        requester_id=requester_id,
        execution_tier=tier,
        priority=TaskPriority.HIGH,
        required_skills=skills,
        deadline=deadline,
    )


@pytest.fixture()
def new_task() -> Callable[..., TaskCreate]:
    return human_task
