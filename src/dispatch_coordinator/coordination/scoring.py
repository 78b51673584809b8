"""Executor selection by skill match and spare capacity."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from dispatch_coordinator.coordination.models import AssignmentDecision, ExecutorView

logger = logging.getLogger(__name__)

SKILL_WEIGHT = 0.7
AVAILABILITY_WEIGHT = 0.3
NO_REQUIRED_SKILLS_SCORE = 0.5


@dataclass(slots=True)
class CandidateScore:
    """Per-candidate scoring breakdown."""

    executor: ExecutorView
    skill_score: float
    availability_score: float

    @property
    def total_score(self) -> float:
        return SKILL_WEIGHT * self.skill_score + AVAILABILITY_WEIGHT * self.availability_score


def normalize_skills(skills: Iterable[str]) -> list[str]:
    """Lower-case, strip and de-duplicate skill tags keeping first-seen order."""

    normalized: list[str] = []
    for skill in skills:
        value = skill.strip().lower()
        if value and value not in normalized:
            normalized.append(value)
    return normalized


def skill_score(required_skills: Sequence[str], executor: ExecutorView) -> float:
    required = normalize_skills(required_skills)
    if not required:
        return NO_REQUIRED_SKILLS_SCORE
    owned = set(normalize_skills(executor.skills))
    return sum(1 for skill in required if skill in owned) / len(required)


def availability_score(executor: ExecutorView) -> float:
    if executor.max_concurrent_tasks <= 0:
        return 0.0
    return max(0.0, 1.0 - executor.load / executor.max_concurrent_tasks)


def score_candidate(required_skills: Sequence[str], executor: ExecutorView) -> CandidateScore:
    return CandidateScore(
        executor=executor,
        skill_score=skill_score(required_skills, executor),
        availability_score=availability_score(executor),
    )


def select_assignee(
    required_skills: Sequence[str],
    exclude_ids: Iterable[str],
    candidate_pool: Sequence[ExecutorView],
) -> AssignmentDecision:
    """Pick the best executor for a task.

    Candidates in ``exclude_ids`` are never returned. Among the rest, executors
    at full capacity are dropped and the remainder ranked by
    ``0.7 * skill + 0.3 * availability``. Ties keep the candidate that comes
    first in ``candidate_pool``.

    Two fallbacks keep "always assign someone" semantics and are reported via
    ``AssignmentDecision.reason`` and its flags:

    - everyone is at capacity: the least-loaded candidate, ignoring capacity;
    - skills were required but nobody matches any: rank on availability alone.

    Returns a decision with ``executor=None`` only when exclusions leave no
    candidates at all.
    """

    excluded = set(exclude_ids)
    pool = [executor for executor in candidate_pool if executor.executor_id not in excluded]
    if not pool:
        return AssignmentDecision(
            executor=None,
            reason="No eligible executors remain after exclusions.",
        )

    available = [executor for executor in pool if executor.has_capacity]
    if not available:
        least_loaded = min(pool, key=lambda executor: executor.load)
        score = score_candidate(required_skills, least_loaded)
        logger.warning(
            "All %d candidates at capacity; assigning least-loaded executor %s over capacity "
            "(load=%d/%d)",
            len(pool),
            least_loaded.executor_id,
            least_loaded.load,
            least_loaded.max_concurrent_tasks,
        )
        return AssignmentDecision(
            executor=least_loaded,
            reason=(
                f"No executor has spare capacity; assigning least-loaded {least_loaded.name} "
                f"({least_loaded.load}/{least_loaded.max_concurrent_tasks} tasks). "
                "Capacity limit exceeded."
            ),
            skill_score=score.skill_score,
            availability_score=score.availability_score,
            total_score=score.total_score,
            over_capacity=True,
        )

    scored = [score_candidate(required_skills, executor) for executor in available]
    if normalize_skills(required_skills):
        matched = [candidate for candidate in scored if candidate.skill_score > 0]
        if not matched:
            best = _first_max(scored, key=lambda candidate: candidate.availability_score)
            logger.warning(
                "No candidate matches required skills %s; falling back to availability, "
                "chose %s",
                list(required_skills),
                best.executor.executor_id,
            )
            return AssignmentDecision(
                executor=best.executor,
                reason=(
                    f"No one has the required skills ({', '.join(required_skills)}); "
                    f"assigning {best.executor.name} by availability "
                    f"({_percent(best.availability_score)}% capacity free)."
                ),
                skill_score=best.skill_score,
                availability_score=best.availability_score,
                total_score=best.availability_score,
                skill_fallback=True,
            )
        scored = matched

    best = _first_max(scored, key=lambda candidate: candidate.total_score)
    role = f"{best.executor.role}, " if best.executor.role else ""
    return AssignmentDecision(
        executor=best.executor,
        reason=(
            f"Assigning to {best.executor.name} ({role}"
            f"{_percent(best.skill_score)}% skill match, "
            f"{_percent(best.availability_score)}% capacity)."
        ),
        skill_score=best.skill_score,
        availability_score=best.availability_score,
        total_score=best.total_score,
    )


def _first_max(
    candidates: list[CandidateScore],
    *,
    key: Callable[[CandidateScore], float],
) -> CandidateScore:
    best = candidates[0]
    best_value = key(best)
    for candidate in candidates[1:]:
        value = key(candidate)
        if value > best_value:
            best = candidate
            best_value = value
    return best


def _percent(value: float) -> int:
    return round(value * 100)
