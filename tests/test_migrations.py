from pathlib import Path

import allure
from sqlalchemy import inspect, text

from dispatch_coordinator.coordination.repository import CoordinationRepository

pytestmark = [
    allure.epic("Coordination Engine"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = CoordinationRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    assert version == "20261014_0002"

    tables = set(inspect(repository.engine).get_table_names())
    assert {
        "executors",
        "tasks",
        "executor_assignments",
        "task_events",
        "task_messages",
        "shared_wins",
        "assignment_history",
    } <= tables
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = CoordinationRepository(tmp_path / "twice.db")
    repository.init_schema()
    repository.init_schema()

    assert repository.list_tasks() == []
    repository.close()
