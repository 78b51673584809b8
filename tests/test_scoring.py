from __future__ import annotations

import allure
import pytest

from dispatch_coordinator.coordination.models import ExecutorView
from dispatch_coordinator.coordination.scoring import (
    NO_REQUIRED_SKILLS_SCORE,
    score_candidate,
    select_assignee,
)

pytestmark = [
    allure.epic("Coordination Engine"),
    allure.feature("Assignment Scoring"),
]


def _executor(
    executor_id: str,
    *,
    skills: tuple[str, ...] = (),
    load: int = 0,
    max_tasks: int = 3,
) -> ExecutorView:
    return ExecutorView(
        executor_id=executor_id,
        name=executor_id.title(),
        role="Analyst",
        skills=list(skills),
        current_task_ids=[f"{executor_id}-task-{index}" for index in range(load)],
        max_concurrent_tasks=max_tasks,
    )


def test_skill_match_outweighs_spare_capacity() -> None:
    jordan = _executor("jordan", skills=("data", "visualization"), load=1)
    kim = _executor("kim", skills=("writing",), load=0)

    decision = select_assignee(["data", "visualization"], [], [kim, jordan])

    assert decision.executor is not None
    assert decision.executor.executor_id == "jordan"
    assert decision.skill_score == 1.0
    assert decision.availability_score == pytest.approx(2 / 3)
    assert decision.total_score == pytest.approx(0.7 + 0.3 * 2 / 3)
    assert not decision.degraded
    assert "100% skill match" in decision.reason


def test_everyone_at_capacity_falls_back_to_least_loaded() -> None:
    pool = [
        _executor("sarah", load=3, max_tasks=3),
        _executor("jordan", load=2, max_tasks=2),
        _executor("alex", load=4, max_tasks=4),
    ]

    decision = select_assignee(["data"], [], pool)

    assert decision.executor is not None
    assert decision.executor.executor_id == "jordan"
    assert decision.over_capacity is True
    assert decision.degraded is True
    assert "Capacity limit exceeded" in decision.reason


def test_no_skill_match_falls_back_to_availability() -> None:
    pool = [
        _executor("busy", skills=("code",), load=2),
        _executor("free", skills=("writing",), load=0),
    ]

    decision = select_assignee(["legal"], [], pool)

    assert decision.executor is not None
    assert decision.executor.executor_id == "free"
    assert decision.skill_fallback is True
    assert decision.over_capacity is False
    assert "required skills" in decision.reason


def test_full_candidates_are_skipped_while_others_have_room() -> None:
    pool = [
        _executor("expert", skills=("data",), load=3, max_tasks=3),
        _executor("novice", skills=("data",), load=1, max_tasks=3),
    ]

    decision = select_assignee(["data"], [], pool)

    assert decision.executor is not None
    assert decision.executor.executor_id == "novice"
    assert decision.over_capacity is False


def test_excluded_candidates_are_never_returned() -> None:
    pool = [
        _executor("a", skills=("data",)),
        _executor("b", skills=("data",)),
        _executor("c"),
    ]

    decision = select_assignee(["data"], ["a", "b"], pool)

    assert decision.executor is not None
    assert decision.executor.executor_id == "c"


def test_exclusions_that_empty_the_pool_return_no_executor() -> None:
    pool = [_executor("a"), _executor("b")]

    decision = select_assignee([], ["a", "b"], pool)

    assert decision.executor is None
    assert decision.reason


def test_ties_keep_first_candidate_in_pool_order() -> None:
    pool = [_executor("first", skills=("data",)), _executor("second", skills=("data",))]

    assert select_assignee(["data"], [], pool).executor.executor_id == "first"
    assert select_assignee(["data"], [], list(reversed(pool))).executor.executor_id == "second"


def test_empty_required_skills_use_neutral_skill_score() -> None:
    score = score_candidate([], _executor("a", skills=("data",), load=1))

    assert score.skill_score == NO_REQUIRED_SKILLS_SCORE
    assert score.total_score == pytest.approx(0.7 * 0.5 + 0.3 * (2 / 3))


def test_skill_matching_ignores_case_and_duplicates() -> None:
    score = score_candidate(["Data", "data", "SQL"], _executor("a", skills=("sql", "DATA")))

    assert score.skill_score == 1.0


@pytest.mark.parametrize("load", [0, 1, 2])
def test_more_skill_overlap_never_scores_lower(load: int) -> None:
    required = ["data", "sql", "python", "visualization"]
    scores = [
        score_candidate(required, _executor(f"e{count}", skills=tuple(required[:count]), load=load))
        for count in range(len(required) + 1)
    ]

    totals = [score.total_score for score in scores]
    assert totals == sorted(totals)
