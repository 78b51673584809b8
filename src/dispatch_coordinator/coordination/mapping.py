"""Mapping of tasks held by the remote task service onto the canonical task."""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from dispatch_coordinator.coordination.models import (
    EscalationState,
    ExecutionTier,
    TaskPriority,
    TaskStatus,
    TaskView,
)
from dispatch_coordinator.storage.common import from_epoch_millis, from_iso, utc_now

_REMOTE_STATUS = {
    "pending": TaskStatus.PENDING,
    "assigned": TaskStatus.ASSIGNED,
    "in_progress": TaskStatus.IN_PROGRESS,
    "completed": TaskStatus.COMPLETED,
    "reassigned": TaskStatus.REASSIGNED,
    "cancelled": TaskStatus.CANCELLED,
    "failed": TaskStatus.CANCELLED,
}


def task_from_remote(record: Mapping[str, Any]) -> TaskView:
    """Convert one remote task record (camelCase JSON) into a ``TaskView``.

    The remote store has no escalation bookkeeping, routing metadata or
    original intent, so those come back at their defaults. ``aiCompleted``
    records map to the ``ai_direct`` tier, everything else to ``human``.
    Unknown priorities fall back to ``medium``; unknown statuses are rejected.
    """

    task_id = str(record.get("id") or "").strip()
    if not task_id:
        raise ValueError("Remote task record has no id.")

    raw_status = str(record.get("status") or "pending").strip().lower()
    status = _REMOTE_STATUS.get(raw_status)
    if status is None:
        raise ValueError(f"Remote task {task_id} has unknown status {raw_status!r}.")

    try:
        priority = TaskPriority(str(record.get("priority") or "medium").strip().lower())
    except ValueError:
        priority = TaskPriority.MEDIUM

    assignee_id = record.get("assigneeId") or None
    if status is TaskStatus.CANCELLED:
        assignee_id = None

    ai_completed = bool(record.get("aiCompleted"))
    description = str(record.get("description") or "")
    return TaskView(
        task_id=task_id,
        title=str(record.get("title") or "Untitled task"),
        description=description,
        original_intent=description,
        requester_id=str(record.get("requesterId") or ""),
        assignee_id=str(assignee_id) if assignee_id else None,
        execution_tier=ExecutionTier.AI_DIRECT if ai_completed else ExecutionTier.HUMAN,
        status=status,
        priority=priority,
        required_skills=[str(skill) for skill in record.get("requiredSkills") or []],
        deadline=_parse_timestamp(record.get("deadline")),
        created_at=_parse_timestamp(record.get("createdAt")) or utc_now(),
        started_at=_parse_timestamp(record.get("assignedAt")),
        completed_at=_parse_timestamp(record.get("completedAt")),
        escalation=EscalationState(),
        result=record.get("aiResult") or None,
        requester_revealed=status is TaskStatus.COMPLETED,
    )


def _parse_timestamp(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, int | float):
        try:
            millis = float(value)
        except OverflowError as error:
            raise ValueError(f"Invalid timestamp: {value!r}") from error
        if not math.isfinite(millis):
            raise ValueError(f"Invalid timestamp: {value!r}")
        try:
            return from_epoch_millis(millis)
        except (OverflowError, OSError) as error:
            raise ValueError(f"Invalid timestamp: {value!r}") from error
    if isinstance(value, str):
        return from_iso(value.strip())
    raise ValueError(f"Invalid timestamp: {value!r}")
