"""Domain models for task coordination and escalation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ExecutionTier(str, Enum):
    """Routing decision for who carries out a task."""

    AI_DIRECT = "ai_direct"
    AI_AGENT = "ai_agent"
    HUMAN = "human"

    @property
    def needs_executor(self) -> bool:
        return self is not ExecutionTier.AI_DIRECT


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REASSIGNED = "reassigned"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class FeedbackQuality(str, Enum):
    THUMBS_UP = "thumbs_up"
    THUMBS_DOWN = "thumbs_down"


class TaskListView(str, Enum):
    """Named task list views served to a single user."""

    ASSIGNED = "assigned"
    REQUESTED = "requested"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS, TaskStatus.REASSIGNED})
STARTABLE_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.REASSIGNED})


@dataclass(slots=True)
class EscalationState:
    """Deadline ladder flags; each flag only ever flips from False to True."""

    checked_at_50: bool = False
    warned_at_75: bool = False
    reassigned_at_90: bool = False
    previous_assignee_ids: list[str] = field(default_factory=list)
    manual_review: bool = False


@dataclass(slots=True)
class TaskFeedback:
    """Quality signal left by the requester after completion."""

    quality: FeedbackQuality | None = None
    kudos: bool | None = None
    feedback_by_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Canonical task record."""

    task_id: str
    title: str
    description: str
    original_intent: str
    requester_id: str
    assignee_id: str | None
    execution_tier: ExecutionTier
    status: TaskStatus
    priority: TaskPriority
    required_skills: list[str]
    deadline: datetime | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    escalation: EscalationState
    result: str | None = None
    feedback: TaskFeedback | None = None
    routing_reason: str | None = None
    estimated_minutes: int | None = None
    is_anonymous: bool = True
    requester_revealed: bool = False

    @property
    def subscriber_ids(self) -> list[str]:
        """Users interested in this task's events, without duplicates."""

        ids: list[str] = []
        for user_id in (self.assignee_id, self.requester_id):
            if user_id and user_id not in ids:
                ids.append(user_id)
        return ids


@dataclass(slots=True)
class ExecutorView:
    """Executor profile with the ids of its active tasks."""

    executor_id: str
    name: str
    role: str
    skills: list[str]
    current_task_ids: list[str]
    max_concurrent_tasks: int

    @property
    def load(self) -> int:
        return len(self.current_task_ids)

    @property
    def has_capacity(self) -> bool:
        return self.load < self.max_concurrent_tasks


@dataclass(slots=True)
class ExecutorUpsert:
    """Input payload for creating or updating an executor."""

    executor_id: str
    name: str
    role: str = ""
    skills: tuple[str, ...] = ()
    max_concurrent_tasks: int = 5


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    description: str
    original_intent: str
    requester_id: str
    execution_tier: ExecutionTier
    priority: TaskPriority = TaskPriority.MEDIUM
    required_skills: tuple[str, ...] = ()
    deadline: datetime | None = None
    routing_reason: str | None = None
    estimated_minutes: int | None = None
    task_id: str | None = None


@dataclass(slots=True)
class AssignmentDecision:
    """Scorer output: the chosen executor and how it was chosen."""

    executor: ExecutorView | None
    reason: str
    skill_score: float = 0.0
    availability_score: float = 0.0
    total_score: float = 0.0
    over_capacity: bool = False
    skill_fallback: bool = False

    @property
    def degraded(self) -> bool:
        return self.over_capacity or self.skill_fallback


@dataclass(slots=True)
class SharedWin:
    """Completion record emitted for feed and notification display."""

    win_id: str
    task_id: str
    task_title: str
    completed_by_id: str | None
    completed_by_name: str
    completed_by_role: str
    execution_tier: ExecutionTier
    completed_at: datetime
    feedback: TaskFeedback | None = None


@dataclass(slots=True)
class TaskMessageView:
    message_id: str
    task_id: str
    author_id: str | None
    role: str
    content: str
    created_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Audit trail entry."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    actor_id: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task with its discussion thread and audit trail."""

    task: TaskView
    messages: list[TaskMessageView]
    events: list[TaskEventView]


@dataclass(slots=True)
class CoordinationEvent:
    """Real-time event delivered to subscribers."""

    type: str
    task_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "taskId": self.task_id, "payload": self.payload}


class EventType(str, Enum):
    TASK_CREATED = "task:created"
    TASK_UPDATED = "task:updated"
    TASK_COMPLETED = "task:completed"
    TASK_REASSIGNED = "task:reassigned"
    MESSAGE_NEW = "message:new"
