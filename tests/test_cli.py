from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from dispatch_coordinator.main import dispatch_coordinator

pytestmark = [
    allure.epic("Coordination Engine"),
    allure.feature("CLI"),
]


@pytest.fixture()
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.delenv("DISPATCH_ROUTER_API_KEY", raising=False)
    return tmp_path / "cli.db"


def _invoke(db_path: Path, *args: str):
    group, command, *rest = args
    return CliRunner().invoke(
        dispatch_coordinator,
        [group, command, "--db-path", str(db_path), *rest],
    )


def _task_id(output: str) -> str:
    line = next(line for line in output.splitlines() if line.startswith("Task created:"))
    return line.split("task_id=", 1)[1].split()[0]


def test_executor_add_and_list(db_path: Path) -> None:
    added = _invoke(
        db_path,
        "executors",
        "add",
        "--id",
        "jordan",
        "--name",
        "Jordan",
        "--skill",
        "data",
        "--skill",
        "sql",
        "--max-tasks",
        "2",
    )
    listed = _invoke(db_path, "executors", "list")

    assert added.exit_code == 0, added.output
    assert "Executor saved: jordan name=Jordan load=0/2" in added.output
    assert listed.exit_code == 0, listed.output
    assert "Executors: 1" in listed.output
    assert "skills=data,sql" in listed.output


def test_seeded_demo_lists_user_views_and_monitors(db_path: Path) -> None:
    seeded = CliRunner().invoke(dispatch_coordinator, ["seed", "--db-path", str(db_path)])
    assigned = _invoke(db_path, "tasks", "list", "--user", "jordan")
    monitored = CliRunner().invoke(
        dispatch_coordinator,
        ["monitor", "--db-path", str(db_path), "--once"],
    )
    doctor = CliRunner().invoke(dispatch_coordinator, ["doctor", "--db-path", str(db_path)])

    assert seeded.exit_code == 0, seeded.output
    assert "Seeded demo data: executors=3 tasks=6" in seeded.output
    assert assigned.exit_code == 0, assigned.output
    assert "Tasks: 2" in assigned.output
    assert "demo-metrics-dashboard" in assigned.output
    assert monitored.exit_code == 0, monitored.output
    assert "checks=1 warnings=1 check_ins=0" in monitored.output
    assert doctor.exit_code == 0, doctor.output
    assert "Capacity invariants: OK" in doctor.output


def test_intent_to_completion_round_trip(db_path: Path, tmp_path: Path) -> None:
    router_response = tmp_path / "router.json"
    router_response.write_text(
        json.dumps(
            {
                "title": "Fix login bug",
                "executionTier": "human",
                "priority": "high",
                "requiredSkills": ["code"],
                "routingReason": "Needs an engineer",
            },
        ),
        encoding="utf-8",
    )
    _invoke(db_path, "executors", "add", "--id", "sarah", "--name", "Sarah", "--skill", "code")

    submitted = _invoke(
        db_path,
        "intent",
        "submit",
        "--requester",
        "alex",
        "--router-response",
        str(router_response),
        "login is broken on mobile",
    )
    assert submitted.exit_code == 0, submitted.output
    assert "status=assigned assignee=sarah" in submitted.output
    task_id = _task_id(submitted.output)

    started = _invoke(db_path, "tasks", "start", "--task-id", task_id, "--actor", "sarah")
    completed = _invoke(
        db_path,
        "tasks",
        "complete",
        "--task-id",
        task_id,
        "--actor",
        "sarah",
        "--result",
        "Fixed the viewport meta tag",
    )
    feedback = _invoke(
        db_path,
        "tasks",
        "feedback",
        "--task-id",
        task_id,
        "--actor",
        "alex",
        "--quality",
        "thumbs_up",
        "--kudos",
    )
    again = _invoke(db_path, "tasks", "complete", "--task-id", task_id, "--actor", "sarah")
    wins = CliRunner().invoke(dispatch_coordinator, ["wins", "--db-path", str(db_path)])
    inspected = _invoke(db_path, "tasks", "inspect", "--task-id", task_id)

    assert started.exit_code == 0, started.output
    assert completed.exit_code == 0, completed.output
    assert "Shared win: Fix login bug by Sarah" in completed.output
    assert feedback.exit_code == 0, feedback.output
    assert again.exit_code != 0
    assert "already completed" in again.output
    assert "Shared wins: 1" in wins.output
    assert "Status: completed" in inspected.output
    assert "Requester: alex" in inspected.output


def test_intent_submit_without_router_fails_cleanly(db_path: Path) -> None:
    result = _invoke(db_path, "intent", "submit", "--requester", "alex", "do something")

    assert result.exit_code != 0
    assert "DISPATCH_ROUTER_API_KEY is not set" in result.output


def test_unknown_task_reports_error(db_path: Path) -> None:
    started = _invoke(db_path, "tasks", "start", "--task-id", "missing", "--actor", "sarah")
    inspected = _invoke(db_path, "tasks", "inspect", "--task-id", "missing")

    assert started.exit_code != 0
    assert "Task not found: missing" in started.output
    assert "Task not found: missing" in inspected.output


def test_import_remote_tasks_file(db_path: Path, tmp_path: Path) -> None:
    _invoke(db_path, "executors", "add", "--id", "alex", "--name", "Alex")
    export = tmp_path / "tasks.json"
    export.write_text(
        json.dumps(
            {
                "tasks": [
                    {
                        "id": "remote-1",
                        "title": "Remote task",
                        "requesterId": "sarah",
                        "assigneeId": "alex",
                        "status": "assigned",
                    },
                ],
            },
        ),
        encoding="utf-8",
    )

    imported = _invoke(db_path, "tasks", "import", str(export))
    listed = _invoke(db_path, "executors", "list")

    assert imported.exit_code == 0, imported.output
    assert "Imported tasks: 1" in imported.output
    assert "load=1/5" in listed.output
