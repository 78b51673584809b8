"""Per-task mutual exclusion shared by interactive calls and the deadline monitor."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class TaskLockRegistry:
    """Hands out one re-entrant lock per task id.

    Locks are re-entrant so an escalation holding a task's lock can call back
    into the lifecycle operations that take the same lock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, task_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[task_id] = lock
            return lock

    @contextmanager
    def hold(self, task_id: str) -> Iterator[None]:
        """Serialize mutations of a single task."""

        lock = self.lock_for(task_id)
        with lock:
            yield

    def discard(self, task_id: str) -> None:
        """Forget the lock of a task that reached a terminal status."""

        with self._guard:
            self._locks.pop(task_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
