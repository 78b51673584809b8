"""In-process real-time fanout of task events to connected subscribers."""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from dispatch_coordinator.coordination.models import (
    CoordinationEvent,
    EventType,
    SharedWin,
    TaskMessageView,
    TaskView,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Subscription:
    """One live connection of a user; events arrive in publish order."""

    connection_id: int
    user_id: str
    events: queue.Queue[CoordinationEvent]
    _registry: NotificationFanout | None = field(default=None, repr=False)

    def get(self, timeout: float | None = None) -> CoordinationEvent | None:
        """Wait for the next event; None on timeout."""

        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[CoordinationEvent]:
        """Return every event queued so far without blocking."""

        drained: list[CoordinationEvent] = []
        while True:
            try:
                drained.append(self.events.get_nowait())
            except queue.Empty:
                return drained

    def close(self) -> None:
        if self._registry is not None:
            self._registry.unsubscribe(self)
            self._registry = None

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def __iter__(self) -> Iterator[CoordinationEvent]:
        return iter(self.drain())


class NotificationFanout:
    """Connection registry keyed by user id.

    Delivery is at-most-once and non-durable: only connections registered at
    publish time receive an event, and a full connection queue drops it.
    Reconnecting clients re-fetch state instead of replaying.
    """

    def __init__(self, *, queue_size: int = 1000) -> None:
        if queue_size <= 0:
            raise ValueError("queue_size must be a positive integer.")
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._connections: dict[str, dict[int, Subscription]] = {}
        self._ids = itertools.count(1)
        self.dropped = 0

    def subscribe(self, user_id: str) -> Subscription:
        """Register a new connection for ``user_id``."""

        if not user_id:
            raise ValueError("user_id must not be empty.")
        subscription = Subscription(
            connection_id=next(self._ids),
            user_id=user_id,
            events=queue.Queue(maxsize=self.queue_size),
            _registry=self,
        )
        with self._lock:
            self._connections.setdefault(user_id, {})[subscription.connection_id] = subscription
        logger.debug("Subscribed connection %d for user %s", subscription.connection_id, user_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            connections = self._connections.get(subscription.user_id)
            if not connections:
                return
            connections.pop(subscription.connection_id, None)
            if not connections:
                del self._connections[subscription.user_id]

    def connection_count(self, user_id: str | None = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._connections.get(user_id, {}))
            return sum(len(connections) for connections in self._connections.values())

    def deliver(self, user_ids: Iterable[str | None], event: CoordinationEvent) -> int:
        """Push ``event`` to every connection of every distinct user id.

        Returns the number of connections that accepted the event.
        """

        recipients: list[str] = []
        for user_id in user_ids:
            if user_id and user_id not in recipients:
                recipients.append(user_id)

        with self._lock:
            targets = [
                subscription
                for user_id in recipients
                for subscription in self._connections.get(user_id, {}).values()
            ]

        delivered = 0
        for subscription in targets:
            try:
                subscription.events.put_nowait(event)
            except queue.Full:
                with self._lock:
                    self.dropped += 1
                logger.warning(
                    "Dropped %s event for task %s: connection %d of user %s is full",
                    event.type,
                    event.task_id,
                    subscription.connection_id,
                    subscription.user_id,
                )
                continue
            delivered += 1
        return delivered

    def publish_task(
        self,
        event_type: EventType,
        task: TaskView,
        *,
        extra_subscriber_ids: Iterable[str | None] = (),
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Notify the task's assignee and requester (plus any extra ids)."""

        event = CoordinationEvent(
            type=event_type.value,
            task_id=task.task_id,
            payload={"task": task_to_payload(task), **(payload or {})},
        )
        return self.deliver([*task.subscriber_ids, *extra_subscriber_ids], event)

    def publish_message(self, task: TaskView, message: TaskMessageView) -> int:
        event = CoordinationEvent(
            type=EventType.MESSAGE_NEW.value,
            task_id=task.task_id,
            payload={"message": message_to_payload(message)},
        )
        return self.deliver(task.subscriber_ids, event)


def task_to_payload(task: TaskView) -> dict[str, Any]:
    """JSON-friendly task snapshot for event payloads and CLI output."""

    return {
        "id": task.task_id,
        "title": task.title,
        "description": task.description,
        "originalIntent": task.original_intent,
        "requesterId": task.requester_id,
        "assigneeId": task.assignee_id,
        "executionTier": task.execution_tier.value,
        "status": task.status.value,
        "priority": task.priority.value,
        "requiredSkills": list(task.required_skills),
        "deadline": _iso(task.deadline),
        "createdAt": _iso(task.created_at),
        "startedAt": _iso(task.started_at),
        "completedAt": _iso(task.completed_at),
        "escalationState": {
            "checkedAt50": task.escalation.checked_at_50,
            "warnedAt75": task.escalation.warned_at_75,
            "reassignedAt90": task.escalation.reassigned_at_90,
            "previousAssigneeIds": list(task.escalation.previous_assignee_ids),
            "manualReview": task.escalation.manual_review,
        },
        "result": task.result,
        "feedback": (
            {
                "quality": task.feedback.quality.value if task.feedback.quality else None,
                "kudos": task.feedback.kudos,
            }
            if task.feedback
            else None
        ),
        "isAnonymous": task.is_anonymous,
        "requesterRevealed": task.requester_revealed,
    }


def message_to_payload(message: TaskMessageView) -> dict[str, Any]:
    return {
        "id": message.message_id,
        "taskId": message.task_id,
        "authorId": message.author_id,
        "role": message.role,
        "content": message.content,
        "createdAt": _iso(message.created_at),
    }


def win_to_payload(win: SharedWin) -> dict[str, Any]:
    return {
        "id": win.win_id,
        "taskId": win.task_id,
        "title": win.task_title,
        "completedBy": win.completed_by_name,
        "completedById": win.completed_by_id,
        "executionTier": win.execution_tier.value,
        "completedAt": _iso(win.completed_at),
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
