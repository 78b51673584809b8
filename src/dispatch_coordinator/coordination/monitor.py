"""Periodic deadline monitor driving the 50/75/90 escalation ladder."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from dispatch_coordinator.coordination.errors import CoordinationError
from dispatch_coordinator.coordination.lifecycle import LifecycleController
from dispatch_coordinator.coordination.models import ACTIVE_STATUSES, TaskView
from dispatch_coordinator.storage.common import utc_now

logger = logging.getLogger(__name__)


class CheckInOutcome(str, Enum):
    """Assignee's answer to the deadline check-in."""

    CONFIRMED = "confirmed"
    DECLINED = "declined"
    UNSUPPORTED = "unsupported"


class DeadlineCheckIn(Protocol):
    """Asks the current assignee whether they will make the deadline."""

    def ask(self, task: TaskView, progress: float) -> CheckInOutcome: ...


class InlineCheckIn:
    """Notification-only surface: no way to get an answer, so never confirms."""

    def ask(self, task: TaskView, progress: float) -> CheckInOutcome:  # noqa: ARG002
        return CheckInOutcome.UNSUPPORTED


class ScriptedCheckIn:
    """Answers from a task-id mapping; records every question asked."""

    def __init__(
        self,
        answers: Mapping[str, CheckInOutcome] | None = None,
        *,
        default: CheckInOutcome = CheckInOutcome.DECLINED,
    ) -> None:
        self.answers = dict(answers or {})
        self.default = default
        self.asked: list[tuple[str, str | None]] = []

    def ask(self, task: TaskView, progress: float) -> CheckInOutcome:  # noqa: ARG002
        self.asked.append((task.task_id, task.assignee_id))
        return self.answers.get(task.task_id, self.default)


@dataclass(slots=True)
class MonitorTickSummary:
    """Aggregate monitor counters for CLI reporting."""

    scanned: int = 0
    checks: int = 0
    warnings: int = 0
    check_ins: int = 0
    reassigned: int = 0
    manual_review: int = 0
    skipped: int = 0

    def add(self, other: MonitorTickSummary) -> None:
        self.scanned += other.scanned
        self.checks += other.checks
        self.warnings += other.warnings
        self.check_ins += other.check_ins
        self.reassigned += other.reassigned
        self.manual_review += other.manual_review
        self.skipped += other.skipped


def compute_progress(started_at: datetime, deadline: datetime, now: datetime) -> float:
    """Elapsed share of the start-to-deadline window, clamped to [0, 1]."""

    window = (deadline - started_at).total_seconds()
    if window <= 0:
        return 1.0
    elapsed = (now - started_at).total_seconds()
    return min(1.0, max(0.0, elapsed / window))


class DeadlineMonitor:
    """Scans active tasks with a deadline and escalates the ones at risk.

    Stages are evaluated low to high within one tick, so a task first seen
    past 90% still records its 50% and 75% stages before the check-in. Each
    stage fires at most once per task.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        controller: LifecycleController,
        check_in: DeadlineCheckIn | None = None,
        interval_seconds: float = 30.0,
        check_threshold: float = 0.5,
        warn_threshold: float = 0.75,
        reassign_threshold: float = 0.9,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.controller = controller
        self.repository = controller.repository
        self.check_in = check_in or InlineCheckIn()
        self.interval_seconds = interval_seconds
        self.check_threshold = check_threshold
        self.warn_threshold = warn_threshold
        self.reassign_threshold = reassign_threshold
        self.clock = clock
        self._stop_requested = False
        self._thread: threading.Thread | None = None

    def run_once(self, now: datetime | None = None) -> MonitorTickSummary:
        """Evaluate every monitored task once."""

        tick_at = now or self.clock()
        summary = MonitorTickSummary()
        for task in self.repository.list_active_monitored_tasks():
            if self._stop_requested:
                break
            summary.scanned += 1
            self._evaluate(task.task_id, tick_at, summary)

        if summary.scanned:
            logger.info(
                "Monitor tick: scanned=%d checks=%d warnings=%d check_ins=%d "
                "reassigned=%d manual_review=%d skipped=%d",
                summary.scanned,
                summary.checks,
                summary.warnings,
                summary.check_ins,
                summary.reassigned,
                summary.manual_review,
                summary.skipped,
            )
        return summary

    def run_loop(self, *, max_ticks: int | None = None) -> MonitorTickSummary:
        """Tick every ``interval_seconds`` until stopped or ``max_ticks`` reached."""

        aggregate = MonitorTickSummary()
        ticks = 0
        with self._signal_handlers():
            while not self._stop_requested:
                try:
                    aggregate.add(self.run_once())
                except Exception:
                    logger.exception("Deadline monitor tick failed")
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                self._sleep_with_stop(self.interval_seconds)
        return aggregate

    def start(self) -> None:
        """Run the loop on a daemon thread."""

        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_requested = False
        self._thread = threading.Thread(
            target=self.run_loop,
            name="deadline-monitor",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_requested = True
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _evaluate(self, task_id: str, now: datetime, summary: MonitorTickSummary) -> None:
        with self.controller.locks.hold(task_id):
            task = self.repository.get_task(task_id)
            if (
                task is None
                or task.status not in ACTIVE_STATUSES
                or task.started_at is None
                or task.deadline is None
            ):
                summary.skipped += 1
                return

            progress = compute_progress(task.started_at, task.deadline, now)
            percent = round(progress * 100)
            escalation = task.escalation

            if progress >= self.check_threshold and not escalation.checked_at_50:
                updated = self.controller.record_escalation(
                    task,
                    stage="progress_check",
                    checked_at_50=True,
                    notification={
                        "level": "info",
                        "progress": progress,
                        "message": f"Progress check: {percent}% of the time has passed.",
                    },
                )
                if updated is None:
                    summary.skipped += 1
                    return
                task = updated
                summary.checks += 1
                logger.info("Task %s passed progress check at %d%%", task_id, percent)

            if progress >= self.warn_threshold and not task.escalation.warned_at_75:
                updated = self.controller.record_escalation(
                    task,
                    stage="warning",
                    warned_at_75=True,
                    notification={
                        "level": "warning",
                        "progress": progress,
                        "message": f"Deadline warning: {percent}% of the time has passed.",
                    },
                )
                if updated is None:
                    summary.skipped += 1
                    return
                task = updated
                summary.warnings += 1
                logger.info("Task %s deadline warning at %d%%", task_id, percent)

            if progress >= self.reassign_threshold and not task.escalation.reassigned_at_90:
                self._check_in_and_reassign(task, progress, summary)

    def _check_in_and_reassign(
        self,
        task: TaskView,
        progress: float,
        summary: MonitorTickSummary,
    ) -> None:
        percent = round(progress * 100)
        updated = self.controller.record_escalation(
            task,
            stage="check_in",
            reassigned_at_90=True,
            notification={
                "level": "urgent",
                "progress": progress,
                "message": f"Deadline check-in: {percent}% of the time has passed.",
            },
        )
        if updated is None:
            summary.skipped += 1
            return
        task = updated
        summary.check_ins += 1

        outcome = self.check_in.ask(task, progress)
        logger.info("Task %s check-in with %s: %s", task.task_id, task.assignee_id, outcome.value)
        answered = self.controller.record_check_in(task, outcome.value, progress=progress)
        if answered is None:
            summary.skipped += 1
            return
        task = answered
        if outcome is CheckInOutcome.CONFIRMED:
            return

        decision = self.controller.select_replacement(task)
        if decision.executor is None:
            self.controller.record_escalation(
                task,
                stage="manual_review",
                manual_review=True,
                notification={
                    "level": "urgent",
                    "progress": progress,
                    "message": "No one else can take this task; flagged for manual review.",
                },
            )
            summary.manual_review += 1
            logger.warning(
                "Task %s needs manual review: no replacement for %s",
                task.task_id,
                task.assignee_id,
            )
            return

        reason = (
            f"Deadline at risk ({percent}% elapsed, check-in {outcome.value}). {decision.reason}"
        )
        try:
            self.controller.reassign_task(
                task.task_id,
                decision.executor.executor_id,
                reason,
                decision=decision,
            )
        except CoordinationError as error:
            summary.skipped += 1
            logger.warning("Escalation reassignment of %s skipped: %s", task.task_id, error)
            return
        summary.reassigned += 1

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Deadline monitor stopping on %s", signal.Signals(signum).name)
            self._stop_requested = True

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
